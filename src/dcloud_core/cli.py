"""Command-line dispatcher: ``dcloud <verb> ...``.

Exit codes: 0 on success (warnings included), 1 when an operation fails,
2 on usage errors. Listings go to stdout, logs to stderr.
"""

import argparse
import asyncio
import os
import sys
from collections.abc import Callable, Sequence
from typing import Any

from dcloud_core.app import DrupalCloud
from dcloud_core.backup import BackupManager
from dcloud_core.config import Config
from dcloud_core.exceptions import DcloudError, MigrationError
from dcloud_core.inventory import STATUS_FORMATS, Inventory
from dcloud_core.models import BackupKind, DedicatedVMEnvironment, HostingEnvironment, ManagedPlatformEnvironment
from dcloud_core.observability import LogLevel, configure_logging, get_logger
from dcloud_core.utils.formatting import OUTPUT_FORMATS

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

BACKUP_FLAGS = {"true": True, "yes": True, "false": False, "no": False, "no-backup": False}

CloudFactory = Callable[[Config], DrupalCloud]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dcloud", description="Drupal tenant lifecycle orchestrator")
    parser.add_argument("--config", help="YAML or JSON configuration file (default: $DCLOUD_CONFIG)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=[level.value for level in LogLevel],
    )
    parser.add_argument("--log-format", default="text", choices=["text", "json"])
    verbs = parser.add_subparsers(dest="verb", required=True, metavar="<verb>")

    create = verbs.add_parser("create", help="Create a tenant from the template or another tenant")
    create.add_argument("name")
    create.add_argument("token")
    create.add_argument("source", nargs="?", help="Source tenant (default: template)")
    create.add_argument("admin_password", nargs="?")

    delete = verbs.add_parser("delete", help="Delete a tenant, taking a backup first")
    delete.add_argument("name")
    delete.add_argument("backup", nargs="?", default="true", choices=sorted(BACKUP_FLAGS))
    delete.add_argument("--destroy-remote", action="store_true", help="Also destroy a migrated tenant's environment")

    listing = verbs.add_parser("list", help="List tenants")
    listing.add_argument("format", nargs="?", default="table", choices=OUTPUT_FORMATS)

    backup = verbs.add_parser("backup", help="Back up a tenant")
    backup.add_argument("name")
    backup.add_argument("kind", nargs="?", default=BackupKind.FULL.value, choices=[k.value for k in BackupKind])

    backups = verbs.add_parser("backups", help="List backup archives")
    backups.add_argument("args", nargs="*", metavar="[name] [format]")

    cleanup = verbs.add_parser("cleanup-backups", help="Delete backups older than N days")
    cleanup.add_argument("days", type=int)
    cleanup.add_argument("name", nargs="?")

    status = verbs.add_parser("status", help="Show a tenant's health")
    status.add_argument("name")
    status.add_argument("format", nargs="?", default="table", choices=STATUS_FORMATS)

    migrate = verbs.add_parser("migrate", help="Move a tenant off the shared host")
    migrate.add_argument("name")
    migrate.add_argument("tier", help="dedicated_vm (droplet) or managed_platform (upsun)")
    migrate.add_argument("--size", help="Instance size (dedicated VM)")
    migrate.add_argument("--region")

    clone = verbs.add_parser("clone-remote", help="Create a tenant from a site on a VM or a managed platform")
    clone.add_argument("name")
    clone.add_argument("token")
    clone.add_argument("admin_password", nargs="?")
    origin = clone.add_mutually_exclusive_group(required=True)
    origin.add_argument("--host", help="Address of a standalone or dedicated VM reachable over SSH")
    origin.add_argument("--upsun-project", help="Managed platform project ID")
    clone.add_argument("--droplet-id", help="Instance ID of the VM (default: the address)")
    clone.add_argument("--upsun-environment", default="main")

    verbs.add_parser("reset-sites-php", help="Back up the routing registry and reset it to the template entry")
    return parser


def load_config(path: str | None) -> Config:
    path = path or os.environ.get("DCLOUD_CONFIG")
    if path:
        return Config.from_file(path)
    return Config.from_env()


def print_summary(title: str, details: dict[str, Any], warnings: Sequence[str] = ()) -> None:
    """Closing block printed after every mutating verb."""
    print(f"=== {title} ===")
    for key, value in details.items():
        if value is not None:
            print(f"{key}: {value}")
    for warning in warnings:
        print(f"warning: {warning}")


def remote_source(config: Config, args: argparse.Namespace) -> HostingEnvironment:
    """Environment description of the site ``clone-remote`` reads from."""
    if args.upsun_project:
        return ManagedPlatformEnvironment(
            project_id=args.upsun_project,
            project_url=f"{config.upsun.console_url}/{args.upsun_project}",
            region=config.upsun.region,
            environment=args.upsun_environment,
        )
    return DedicatedVMEnvironment(
        instance_id=args.droplet_id or args.host,
        public_address=args.host,
        region=config.digitalocean.region,
        database_name=config.digitalocean.database_name,
    )


def _split_backups_args(
parser: argparse.ArgumentParser, args: list[str]) -> tuple[str | None, str]:
    if len(args) > 2:
        parser.error("backups takes at most a tenant name and a format")
    if len(args) == 2:
        name, fmt = args
    elif args and args[0] in OUTPUT_FORMATS:
        name, fmt = None, args[0]
    else:
        name, fmt = (args[0] if args else None), "table"
    if fmt not in OUTPUT_FORMATS:
        parser.error(f"unknown format '{fmt}' (choose from {', '.join(OUTPUT_FORMATS)})")
    return name, fmt


async def dispatch(cloud: DrupalCloud, args: argparse.Namespace) -> int:
    async with cloud:
        if args.verb == "create":
            created = await cloud.tenants.create(args.name, args.token, args.source, args.admin_password)
            print_summary(
                "create: success",
                {
                    "tenant": created.tenant.name,
                    "url": cloud.config.uri_for(created.tenant.name),
                    "source": created.tenant.source_tenant,
                    "duration": f"{created.duration_ms / 1000:.1f}s",
                },
                created.warnings,
            )
        elif args.verb == "delete":
            deleted = await cloud.tenants.delete(
                args.name, backup=BACKUP_FLAGS[args.backup], destroy_remote=args.destroy_remote
            )
            print_summary(
                "delete: success",
                {
                    "tenant": deleted.name,
                    "backup": deleted.backup.archive_path if deleted.backup else "none",
                    "removed": ", ".join(deleted.removed),
                },
                deleted.warnings,
            )
        elif args.verb == "list":
            print(Inventory.render_sites(await cloud.inventory.list_sites(), args.format))
        elif args.verb == "backup":
            artifact = await cloud.backups.create(args.name, args.kind)
            print_summary(
                "backup: success",
                {"tenant": artifact.tenant_name, "kind": artifact.kind.value, "archive": artifact.archive_path},
            )
        elif args.verb == "backups":
            print(BackupManager.render(cloud.backups.list_backups(args.backup_name), args.format))
        elif args.verb == "cleanup-backups":
            removed = cloud.backups.cleanup(args.days, args.name)
            print_summary(
                "cleanup-backups: success",
                {"deleted": len(removed), "older_than_days": args.days},
            )
        elif args.verb == "status":
            report = await cloud.inventory.status(args.name)
            print(Inventory.render_status(report, args.format))
        elif args.verb == "migrate":
            job = await cloud.migrations.migrate(args.name, args.tier, size=args.size, region=args.region)
            print_summary(
                "migrate: success",
                {
                    "tenant": job.tenant,
                    "tier": job.target_tier.value,
                    "environment": job.target_environment.to_dict() if job.target_environment else None,
                    "steps": ", ".join(job.steps_completed),
                },
                job.warnings,
            )
        elif args.verb == "clone-remote":
            cloned = await cloud.tenants.clone_remote(
                args.name, args.token, remote_source(cloud.config, args), args.admin_password
            )
            print_summary(
                "clone-remote: success",
                {
                    "tenant": cloned.tenant.name,
                    "url": cloud.config.uri_for(cloned.tenant.name),
                    "source": cloned.tenant.source_tenant,
                    "duration": f"{cloned.duration_ms / 1000:.1f}s",
                },
                cloned.warnings,
            )
        elif args.verb == "reset-sites-php":
            backup_path = await cloud.registrar.reset()
            print_summary(
                "reset-sites-php: success",
                {"registry": cloud.registrar.path, "backup": backup_path or "none"},
            )
    return EXIT_OK


def main(argv: Sequence[str] | None = None, cloud_factory: CloudFactory = DrupalCloud) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verb == "backups":
        args.backup_name, args.format = _split_backups_args(parser, args.args)
    configure_logging(args.log_level, args.log_format)

    try:
        cloud = cloud_factory(load_config(args.config))
        return asyncio.run(dispatch(cloud, args))
    except MigrationError as e:
        logger.error("Migration failed", error=e)
        job = e.job
        details = {"error": str(e)}
        if job is not None:
            details.update(
                status=job.status.value,
                completed=", ".join(job.steps_completed) or "none",
                target=job.target_environment.to_dict() if job.target_environment else None,
            )
        print_summary(f"{args.verb}: failed", details, job.warnings if job else ())
        return EXIT_FAILURE
    except DcloudError as e:
        logger.error(f"{args.verb} failed", error=e)
        print_summary(f"{args.verb}: failed", {"error": str(e)})
        return EXIT_FAILURE
    except ValueError as e:
        print_summary(f"{args.verb}: failed", {"error": str(e)})
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
