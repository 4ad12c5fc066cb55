"""Tests for backup archives."""

import tarfile
from datetime import datetime
from pathlib import Path

import pytest

from dcloud_core.backup import BackupManager, archive_name, parse_archive
from dcloud_core.exceptions import BackupError, TenantNotFoundError
from dcloud_core.models import BackupKind

NOW = datetime(2026, 3, 14, 9, 26, 53)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def backups(config, database, clock):
    return BackupManager(config, database, clock=clock)


@pytest.fixture
def site(config, database):
    """A tenant directory and database with one table."""
    directory = config.paths.sites_dir / "acme"
    (directory / "files").mkdir(parents=True)
    (directory / "files" / "photo.jpg").write_bytes(b"jpeg")
    (directory / "settings.php").write_text("<?php\n")
    conn = database.connect("drupal_acme")
    conn.execute("CREATE TABLE node (nid INTEGER PRIMARY KEY, title TEXT)")
    conn.execute("INSERT INTO node (title) VALUES ('Hello')")
    conn.commit()
    conn.close()
    return directory


class TestArchiveNames:
    def test_round_trip(self, tmp_path):
        path = tmp_path / archive_name("acme", BackupKind.FILES, NOW)
        path.write_bytes(b"x")

        assert path.name == "acme_files_20260314_092653.tar.gz"
        artifact = parse_archive(path)
        assert artifact.tenant_name == "acme"
        assert artifact.kind == BackupKind.FILES
        assert artifact.timestamp == NOW

    def test_foreign_files_ignored(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("x")
        assert parse_archive(path) is None


class TestBackupManager:
    """Tests for BackupManager."""

    async def test_full_backup_contents(self, backups, site):
        artifact = await backups.create("acme", "full")

        assert Path(artifact.archive_path).name == "acme_full_20260314_092653.tar.gz"
        with tarfile.open(artifact.archive_path) as tar:
            names = tar.getnames()
        assert "acme/files/photo.jpg" in names
        assert "acme_database.sql" in names
        assert "MANIFEST.txt" in names

    async def test_database_only(self, backups, site):
        artifact = await backups.create("acme", BackupKind.DATABASE)
        with tarfile.open(artifact.archive_path) as tar:
            assert not any(n.startswith("acme/") for n in tar.getnames())

    async def test_same_second_never_overwrites(self, backups, site):
        first = await backups.create("acme")
        second = await backups.create("acme")

        assert first.archive_path != second.archive_path
        assert Path(second.archive_path).name == "acme_full_20260314_092654.tar.gz"

    async def test_missing_tenant(self, backups):
        with pytest.raises(TenantNotFoundError):
            await backups.create("ghost")

    async def test_files_backup_without_database(self, backups, config):
        (config.paths.sites_dir / "static" / "files").mkdir(parents=True)
        artifact = await backups.create("static", BackupKind.FILES)
        assert artifact.kind == BackupKind.FILES

    async def test_list_newest_first_and_filter(self, backups, site, clock):
        await backups.create("acme")
        clock.now = datetime(2026, 3, 15, 10, 0, 0)
        await backups.create("acme", BackupKind.DATABASE)

        listed = backups.list_backups("acme")
        assert [a.kind for a in listed] == [BackupKind.DATABASE, BackupKind.FULL]
        assert backups.list_backups("other") == []

    async def test_render_formats(self, backups, site):
        artifact = await backups.create("acme")

        table = backups.render([artifact], "table")
        assert table.splitlines()[0].split() == ["TENANT_NAME", "KIND", "TIMESTAMP", "SIZE", "ARCHIVE_PATH"]
        assert "acme" in table
        csv = backups.render([artifact], "csv")
        assert csv.splitlines()[1].startswith("acme,full,2026-03-14 09:26:53,")

    async def test_cleanup_deletes_only_old(self, backups, site, clock):
        old = await backups.create("acme")
        clock.now = datetime(2026, 4, 30, 0, 0, 0)
        recent = await backups.create("acme")

        deleted = backups.cleanup(30)

        assert [a.archive_path for a in deleted] == [old.archive_path]
        assert not Path(old.archive_path).exists()
        assert Path(recent.archive_path).exists()

    def test_cleanup_rejects_negative(self, backups):
        with pytest.raises(ValueError):
            backups.cleanup(-1)

    async def test_restore_round_trip(self, backups, site, database, config):
        artifact = await backups.create("acme")
        target = config.paths.sites_dir / "restored"

        await backups.restore(artifact, target_directory=target, target_database="drupal_restored")

        assert (target / "files" / "photo.jpg").read_bytes() == b"jpeg"
        conn = database.connect("drupal_restored")
        assert conn.execute("SELECT title FROM node").fetchall() == [("Hello",)]
        conn.close()

    async def test_restore_refuses_existing_directory(self, backups, site):
        artifact = await backups.create("acme")
        with pytest.raises(BackupError, match="already exists"):
            await backups.restore(artifact)
