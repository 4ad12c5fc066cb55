"""Routing registry: the domain -> site directory map read by the web tier.

The registry is a PHP file of ``$sites['<domain>'] = '<dir>';`` lines. It is
handled as a structured table: parsed into entries, mutated, validated and
then activated with write-temp-then-rename, so a failed validation leaves
the previous file authoritative.
"""

import os
import re
import shutil
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from dcloud_core.config import Config
from dcloud_core.exceptions import RegistryError
from dcloud_core.models import RoutingEntry
from dcloud_core.observability import get_logger
from dcloud_core.probe import EndpointProbe
from dcloud_core.protocols.runner import CommandRunner
from dcloud_core.utils.validation import DOMAIN_RE

logger = get_logger(__name__)

REGISTRY_HEADER = """<?php

/**
 * @file
 * Multi-site directory aliasing.
 *
 * Maintained by dcloud. Entries are appended in creation order.
 */

// Site mappings"""

ENTRY_RE = re.compile(
    r"""^\s*\$sites\[\s*(['"])(?P<domain>[^'"]+)\1\s*\]\s*=\s*(['"])(?P<directory>[^'"]+)\3\s*;\s*$"""
)
DIRECTORY_RE = re.compile(r"^[A-Za-z0-9._-]+$")
BACKUP_SUFFIX_FORMAT = "%Y%m%d_%H%M%S"


def render_entry(entry: RoutingEntry) -> str:
    return f"$sites['{entry.domain}'] = '{entry.tenant_directory}';"


@dataclass
class RoutingTable:
    """Parsed registry: entries in order, other lines preserved verbatim."""

    lines: list[str | RoutingEntry] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "RoutingTable":
        return cls(lines=REGISTRY_HEADER.splitlines())

    @classmethod
    def parse(cls, text: str) -> "RoutingTable":
        lines: list[str | RoutingEntry] = []
        for line in text.splitlines():
            match = ENTRY_RE.match(line)
            if match:
                lines.append(RoutingEntry(match.group("domain"), match.group("directory")))
            else:
                lines.append(line)
        return cls(lines=lines)

    @property
    def entries(self) -> list[RoutingEntry]:
        return [line for line in self.lines if isinstance(line, RoutingEntry)]

    def get(self, domain: str) -> RoutingEntry | None:
        for entry in self.entries:
            if entry.domain == domain:
                return entry
        return None

    def __contains__(self, domain: object) -> bool:
        return isinstance(domain, str) and self.get(domain) is not None

    def append(self, entry: RoutingEntry) -> None:
        while self.lines and self.lines[-1] == "":
            self.lines.pop()
        self.lines.append(entry)

    def remove(self, domain: str) -> bool:
        before = len(self.lines)
        self.lines = [
            line for line in self.lines
            if not (isinstance(line, RoutingEntry) and line.domain == domain)
        ]
        return len(self.lines) != before

    def render(self) -> str:
        out = [render_entry(line) if isinstance(line, RoutingEntry) else line for line in self.lines]
        return "\n".join(out).rstrip("\n") + "\n"

    def validate(self) -> list[str]:
        """Problems that would make the registry unsafe to activate."""
        errors: list[str] = []
        first = next((line for line in self.lines if isinstance(line, str) and line.strip()), None)
        if not self.lines or first is None or first.strip() != "<?php":
            errors.append("registry must start with '<?php'")

        seen: set[str] = set()
        for number, line in enumerate(self.lines, start=1):
            if isinstance(line, RoutingEntry):
                if line.domain in seen:
                    errors.append(f"line {number}: duplicate domain '{line.domain}'")
                seen.add(line.domain)
                if not DOMAIN_RE.match(line.domain):
                    errors.append(f"line {number}: invalid domain '{line.domain}'")
                if not DIRECTORY_RE.match(line.tenant_directory) or ".." in line.tenant_directory:
                    errors.append(f"line {number}: invalid directory '{line.tenant_directory}'")
            elif "$sites" in line and not line.lstrip().startswith(("//", "#", "*", "/*")):
                errors.append(f"line {number}: unrecognised assignment: {line.strip()}")
        return errors


class RoutingRegistrar:
    """Maintains the routing registry and nudges the serving layer."""

    def __init__(
        self,
        config: Config,
        runner: CommandRunner,
        probe: EndpointProbe | None = None,
        path: Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config
        self.runner = runner
        self.clock = clock
        self.path = Path(path) if path else config.paths.registry_file
        self.probe = probe or EndpointProbe(
            timeout=config.serving.probe_timeout_seconds,
            verify_tls=config.serving.verify_tls,
        )

    def load(self) -> RoutingTable:
        """Current registry; an empty table with header if none exists."""
        if not self.path.exists():
            return RoutingTable.empty()
        return RoutingTable.parse(self.path.read_text())

    def contains(self, domain: str) -> bool:
        return domain in self.load()

    def entries(self) -> list[RoutingEntry]:
        return self.load().entries

    async def register(self, domain: str, directory: str) -> bool:
        """Append ``domain -> directory``.

        Returns:
            False if the domain was already present (nothing written)

        Raises:
            RegistryError: If the candidate registry fails validation
        """
        table = self.load()
        existing = table.get(domain)
        if existing is not None:
            logger.warning(
                "Domain already present in routing registry, skipping",
                context={"domain": domain, "directory": existing.tenant_directory},
            )
            return False

        table.append(RoutingEntry(domain=domain, tenant_directory=directory))
        await self._activate(table)
        logger.info("Routing entry added", context={"domain": domain, "directory": directory})
        await self.reload_serving_layer()
        return True

    async def unregister(self, domain: str) -> bool:
        """Remove the entry for ``domain``. Returns False if it was absent."""
        table = self.load()
        if domain not in table:
            logger.warning("Domain not in routing registry", context={"domain": domain})
            return False

        logger.info("Removing routing entry", context={"domain": domain})
        table.remove(domain)
        await self._activate(table)
        await self.reload_serving_layer()
        return True

    async def reset(self) -> Path | None:
        """Replace the registry with one mapping only the template site.

        The current file is kept as ``<registry>.backup.<timestamp>``.

        Returns:
            Path of the backup, or None if there was no registry to keep
        """
        backup = None
        if self.path.exists():
            backup = self.path.with_name(f"{self.path.name}.backup.{self.clock().strftime(BACKUP_SUFFIX_FORMAT)}")
            shutil.copy2(self.path, backup)
            logger.info("Routing registry backed up", context={"backup": str(backup)})

        template = self.config.paths.template_dir.name
        table = RoutingTable.empty()
        table.append(RoutingEntry(domain=self.config.domain_for(template), tenant_directory=template))
        await self._activate(table)
        logger.warning("Routing registry reset", context={"entries": len(table.entries)})
        await self.reload_serving_layer()
        return backup

    async def _activate(self, table: RoutingTable) -> None:
        errors = table.validate()
        if errors:
            raise RegistryError("Routing registry validation failed: " + "; ".join(errors))

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".sites.", suffix=".php", dir=self.path.parent)
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(table.render())
            os.chmod(tmp, 0o644)
            await self._lint(tmp)
            os.replace(tmp, self.path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

    async def _lint(self, candidate: Path) -> None:
        lint = self.config.serving.lint_command
        if not lint:
            return
        result = await self.runner.run([*lint, str(candidate)], timeout=30)
        if result.exit_code == 127:
            logger.warning("Syntax checker not available, relying on structural validation",
                           context={"command": lint[0]})
            return
        if not result.ok:
            detail = (result.stdout + result.stderr).strip()
            raise RegistryError(f"Routing registry syntax check failed: {detail}")

    async def reload_serving_layer(self) -> bool:
        """Best-effort signal so the web tier drops its cached registry."""
        command = self.config.serving.reload_command
        if not command:
            return False
        result = await self.runner.run(command, timeout=15)
        if not result.ok:
            logger.warning(
                "Could not signal serving layer; relying on cache revalidation",
                context={"command": command[0], "exit_code": result.exit_code},
            )
            return False
        logger.debug("Serving layer reload signalled")
        return True

    async def confirm_propagation(self, domain: str) -> bool:
        """Wait briefly, then probe the tenant to confirm routing is live.

        A failed confirmation is only a warning: the registry change is
        already active and caches revalidate on their own.
        """
        serving = self.config.serving
        if serving.probe_attempts < 1:
            return True
        await self.probe.sleep(serving.probe_wait_seconds)
        url = f"{serving.scheme}://{domain}{serving.probe_path}"
        ok = await self.probe.wait_until_up(url, serving.probe_attempts, serving.probe_wait_seconds)
        if ok:
            logger.info("Routing confirmed", context={"domain": domain})
        else:
            logger.warning("Routing not confirmed yet", context={"domain": domain, "url": url})
        return ok

