"""Staging directory for cross-host transfers.

Progress is recorded per artifact in ``state.json``, together with the
provisioned target environment, so a rerun after a failure picks up where
it stopped: a failed files import neither re-exports nor re-imports the
database, and no second target is provisioned.
"""

import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dcloud_core.models import utc_now

DATABASE_EXPORTED = "database_exported"
DATABASE_NORMALIZED = "database_normalized"
DATABASE_IMPORTED = "database_imported"
FILES_EXPORTED = "files_exported"
FILES_IMPORTED = "files_imported"

# Stage -> artifact that must still exist for the stage to count as done
_STAGE_ARTIFACTS = {
    DATABASE_EXPORTED: "database_dump",
    DATABASE_NORMALIZED: "normalized_dump",
    FILES_EXPORTED: "files_archive",
}


@dataclass
class TransferWorkspace:
    """Artifacts and progress of one tenant's transfer."""

    path: Path
    source: str

    @property
    def database_dump(self) -> Path:
        return self.path / "database.sql.gz"

    @property
    def normalized_dump(self) -> Path:
        return self.path / "database.normalized.sql.gz"

    @property
    def files_archive(self) -> Path:
        return self.path / "files.tar.gz"

    @property
    def state_file(self) -> Path:
        return self.path / "state.json"

    def prepare(self) -> None:
        """Create the directory; discard progress recorded for another source."""
        self.path.mkdir(parents=True, exist_ok=True)
        os.chmod(self.path, 0o700)
        state = self.load_state()
        if state and state.get("source") != self.source:
            self.reset()

    def load_state(self) -> dict[str, Any]:
        if not self.state_file.exists():
            return {}
        try:
            return json.loads(self.state_file.read_text())
        except json.JSONDecodeError:
            return {}

    def _save_state(self, state: dict[str, Any]) -> None:
        tmp = self.state_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(state, indent=2))
        os.replace(tmp, self.state_file)

    def is_done(self, stage: str, target: str | None = None) -> bool:
        """Whether ``stage`` completed (for ``target``, for import stages)."""
        record = self.load_state().get("stages", {}).get(stage)
        if not record:
            return False
        if target is not None and record.get("target") != target:
            return False
        artifact = _STAGE_ARTIFACTS.get(stage)
        if artifact and not getattr(self, artifact).exists():
            return False
        return True

    def mark(self, stage: str, **info: Any) -> None:
        state = self.load_state()
        state["source"] = self.source
        state.setdefault("stages", {})[stage] = {"completed_at": utc_now(), **info}
        self._save_state(state)

    def stage_info(self, stage: str) -> dict[str, Any]:
        return self.load_state().get("stages", {}).get(stage, {})

    def completed_stages(self) -> list[str]:
        return list(self.load_state().get("stages", {}))

    def record_target(self, environment: dict[str, Any]) -> None:
        """Remember the environment provisioned for this transfer."""
        state = self.load_state()
        state["source"] = self.source
        state["target"] = environment
        self._save_state(state)

    def recorded_target(self) -> dict[str, Any] | None:
        return self.load_state().get("target")

    def forget_target(self) -> None:
        state = self.load_state()
        if state.pop("target", None) is not None:
            self._save_state(state)

    def reset(self) -> None:
        """Forget progress and delete artifacts."""
        for path in (self.database_dump, self.normalized_dump, self.files_archive, self.state_file):
            path.unlink(missing_ok=True)

    def cleanup(self) -> None:
        """Remove the workspace entirely."""
        shutil.rmtree(self.path, ignore_errors=True)
