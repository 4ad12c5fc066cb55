"""Tests for the data transfer engine."""

import gzip
from pathlib import Path

import pytest

from dcloud_core.exceptions import TransferError
from dcloud_core.models import HostingTier, SharedEnvironment
from dcloud_core.transfer import DataTransferEngine, TransferWorkspace, normalize_collation
from dcloud_core.transfer import workspace as stages


class RecordingProvider:
    """Provider double that writes small artifacts and records calls."""

    tier = HostingTier.SHARED

    def __init__(self, dump: bytes = b"CREATE TABLE t (id INT) COLLATE=utf8mb4_uca1400_ai_ci;\n") -> None:
        self.dump = dump
        self.calls: list[str] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise OSError(f"{name} exploded")

    async def export_database(self, env, path: Path) -> None:
        self._maybe_fail("export_database")
        with gzip.open(path, "wb") as f:
            f.write(self.dump)

    async def export_files(self, env, path: Path) -> None:
        self._maybe_fail("export_files")
        path.write_bytes(b"tarball")

    async def import_database(self, env, path: Path) -> None:
        self._maybe_fail("import_database")
        self.imported_dump = gzip.decompress(path.read_bytes())

    async def import_files(self, env, path: Path) -> None:
        self._maybe_fail("import_files")


@pytest.fixture
def engine(tmp_path):
    return DataTransferEngine(tmp_path / "transfer")


@pytest.fixture
def source_env():
    return SharedEnvironment("/srv/sites/acme", "drupal_acme", "/srv/sites/acme/settings.php")


@pytest.fixture
def target_env():
    return SharedEnvironment("/srv/other/acme", "drupal_acme", "/srv/other/acme/settings.php")


async def transfer(engine, source, source_env, target, target_env):
    ws = engine.workspace("acme", source_env)
    report = await engine.export(source, source_env, ws)
    return await engine.import_into(target, target_env, ws, report)


class TestCollation:
    """Tests for normalize_collation."""

    def test_rewrites_collation(self, tmp_path):
        source = tmp_path / "in.sql.gz"
        target = tmp_path / "out.sql.gz"
        with gzip.open(source, "wb") as f:
            f.write(b"a utf8mb4_uca1400_ai_ci b utf8mb4_uca1400_ai_ci\nplain line\n")

        assert normalize_collation(source, target) == 2
        assert gzip.decompress(target.read_bytes()) == (
            b"a utf8mb4_unicode_ci b utf8mb4_unicode_ci\nplain line\n"
        )
        assert not target.with_name("out.sql.gz.partial").exists()

    def test_custom_replacements(self, tmp_path):
        source = tmp_path / "in.sql.gz"
        target = tmp_path / "out.sql.gz"
        with gzip.open(source, "wb") as f:
            f.write(b"latin1_swedish_ci\n")

        assert normalize_collation(source, target, {"latin1_swedish_ci": "utf8mb4_general_ci"}) == 1


class TestWorkspace:
    """Tests for TransferWorkspace bookkeeping."""

    def test_stage_requires_artifact(self, tmp_path):
        ws = TransferWorkspace(tmp_path / "ws", source="shared:/a")
        ws.prepare()
        ws.mark(stages.DATABASE_EXPORTED)

        assert not ws.is_done(stages.DATABASE_EXPORTED)
        ws.database_dump.write_bytes(b"x")
        assert ws.is_done(stages.DATABASE_EXPORTED)

    def test_import_stage_is_per_target(self, tmp_path):
        ws = TransferWorkspace(tmp_path / "ws", source="shared:/a")
        ws.prepare()
        ws.mark(stages.DATABASE_IMPORTED, target="vm:1")

        assert ws.is_done(stages.DATABASE_IMPORTED, target="vm:1")
        assert not ws.is_done(stages.DATABASE_IMPORTED, target="vm:2")

    def test_other_source_resets_progress(self, tmp_path):
        ws = TransferWorkspace(tmp_path / "ws", source="shared:/a")
        ws.prepare()
        ws.files_archive.write_bytes(b"x")
        ws.mark(stages.FILES_EXPORTED)

        other = TransferWorkspace(tmp_path / "ws", source="shared:/b")
        other.prepare()

        assert other.completed_stages() == []
        assert not other.files_archive.exists()

    def test_target_survives_reload(self, tmp_path):
        ws = TransferWorkspace(tmp_path / "ws", source="shared:/a")
        ws.prepare()
        ws.record_target({"tier": "dedicated_vm", "instance_id": "101"})

        again = TransferWorkspace(tmp_path / "ws", source="shared:/a")
        again.prepare()
        assert again.recorded_target() == {"tier": "dedicated_vm", "instance_id": "101"}

        again.forget_target()
        assert again.recorded_target() is None

    def test_other_source_forgets_target(self, tmp_path):
        ws = TransferWorkspace(tmp_path / "ws", source="shared:/a")
        ws.prepare()
        ws.record_target({"tier": "dedicated_vm", "instance_id": "101"})

        other = TransferWorkspace(tmp_path / "ws", source="shared:/b")
        other.prepare()

        assert other.recorded_target() is None


class TestDataTransferEngine:
    """Tests for DataTransferEngine."""

    async def test_transfer_normalizes_and_imports(self, engine, source_env, target_env):
        source, target = RecordingProvider(), RecordingProvider()

        report = await transfer(engine, source, source_env, target, target_env)

        assert report.collation_replacements == 1
        assert b"utf8mb4_unicode_ci" in target.imported_dump
        assert target.calls == ["import_database", "import_files"]
        assert report.files_bytes == len(b"tarball")
        assert report.skipped_stages == []

    async def test_rerun_resumes_after_failed_files_import(self, engine, source_env, target_env):
        """A failed files import does not redo the database."""
        source, target = RecordingProvider(), RecordingProvider()
        target.fail_on.add("import_files")

        with pytest.raises(TransferError, match="Importing files failed"):
            await transfer(engine, source, source_env, target, target_env)

        source.calls.clear()
        target.calls.clear()
        target.fail_on.clear()
        report = await transfer(engine, source, source_env, target, target_env)

        assert source.calls == []
        assert target.calls == ["import_files"]
        assert stages.DATABASE_IMPORTED in report.skipped_stages
        assert report.collation_replacements == 1

    async def test_copy_tree_refuses_existing_target(self, engine, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "dst").mkdir()
        with pytest.raises(TransferError, match="already exists"):
            await engine.copy_tree(tmp_path / "src", tmp_path / "dst")

    async def test_copy_tree_preserves_symlinks(self, engine, tmp_path):
        src = tmp_path / "src"
        src.mkdir()
        (src / "real.txt").write_text("x")
        (src / "link.txt").symlink_to("real.txt")

        await engine.copy_tree(src, tmp_path / "dst")

        assert (tmp_path / "dst" / "link.txt").is_symlink()

    async def test_restore_regenerates_missing_backup(self, engine, database, tmp_path):
        conn = database.connect("drupal")
        conn.execute("CREATE TABLE node (nid INTEGER)")
        conn.commit()
        conn.close()
        await database.recreate("drupal_acme")
        backup = tmp_path / "backups" / "template-backup.sql"

        await engine.restore_database(database, backup, "drupal_acme", regenerate_from="drupal")

        assert backup.exists()
        assert await database.table_count("drupal_acme") == 1

    async def test_restore_without_backup_or_source(self, engine, database, tmp_path):
        with pytest.raises(TransferError, match="not found"):
            await engine.restore_database(database, tmp_path / "missing.sql", "drupal_acme")
