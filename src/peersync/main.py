"""Command line entry point: sync two local folders over a loopback connection."""

import argparse
import asyncio
import sys
from typing import List, Optional

from .config import (
    ConfigLoader,
    ConfigurationError,
    PeerSyncConfig,
    SyncProfile,
    get_settings,
    load_config_from_env
)
from .config.settings import SyncSettings
from .core.catalog import CatalogError
from .core.errors import SessionError
from .core.events import EventChannel, EventType, SyncEvent
from .core.orchestrator import SyncOrchestrator
from .core.session import SessionStatus
from .filesystem import LocalFileSystem
from .transport import LoopbackTransport, TransportError
from .utils.logging import setup_logging, get_logger


class LocalSyncApp:
    """Runs one session between two in-process peers.

    The ``source`` side initiates and the ``target`` side accepts, writing
    into the target folder, exactly as two devices would over a real link.
    """

    def __init__(self, source_path: str, target_path: str, two_way: bool, settings: SyncSettings, quiet: bool = False):
        self.source_path = source_path
        self.target_path = target_path
        self.two_way = two_way
        self.settings = settings
        self.quiet = quiet
        self.logger = get_logger("LocalSyncApp")

        self.events = EventChannel()
        self.events.subscribe_all(self._print_event)

    def _print_event(self, event: SyncEvent) -> None:
        if self.quiet:
            return
        if event.type is EventType.FILE_COMPLETED and event.data.get("direction") == "outgoing":
            mark = "ok" if event.data["success"] else "FAILED"
            print(f"  [{mark}] {event.data['path']}")
        elif event.type is EventType.STATUS_CHANGED:
            print(f"status: {event.data['old_status']} -> {event.data['new_status']}")
        elif event.type is EventType.CONFLICT and "resolution" in event.data:
            print(f"  conflict on {event.data['path']}: {event.data['resolution']}")
        elif event.type is EventType.ERROR:
            info = event.data["error"]
            print(f"  error [{info.category}/{info.code}] {info.message}", file=sys.stderr)

    async def run(self) -> SessionStatus:
        filesystem = LocalFileSystem(hash_algorithm=self.settings.hash_algorithm)
        source_link, target_link = LoopbackTransport.pair(
            filesystem, filesystem,
            peer_a="source", peer_b="target",
            timeout=self.settings.transport_timeout_seconds
        )

        initiator = SyncOrchestrator(
            source_link, filesystem,
            events=self.events,
            settings=self.settings,
            display_name="source"
        )
        responder = SyncOrchestrator(
            target_link, filesystem,
            settings=self.settings,
            target_path=self.target_path,
            display_name="target"
        )
        initiator.connect_peer("target")
        responder.connect_peer("source")

        try:
            await initiator.start_sync(self.source_path, two_way=self.two_way, target_path=self.target_path)
            status = await initiator.wait_until_finished(timeout=self.settings.transport_timeout_seconds * 10)
            await responder.wait_until_finished(timeout=self.settings.transport_timeout_seconds)
        finally:
            await initiator.close()
            await responder.close()
            await source_link.close()
            await target_link.close()

        snapshot = initiator.status_snapshot()
        if not self.quiet:
            print(
                f"{status.value}: {snapshot.get('processed_files', 0)}/{snapshot.get('total_files', 0)} files, "
                f"{snapshot.get('transferred_bytes', 0)} bytes"
            )
        if responder.status is not SessionStatus.COMPLETED:
            return responder.status
        return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="peersync",
        description="Sync a source folder into a target folder using the peer protocol",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ./photos ./backup                  # One-way sync
  %(prog)s ./a ./b --two-way                  # Exchange changes both ways
  %(prog)s --config peersync.yaml --profile docs
  %(prog)s --profile docs                     # Profile from PEERSYNC_CONFIG_FILE or ./peersync.yaml
        """
    )
    parser.add_argument("source", nargs="?", help="Folder to send")
    parser.add_argument("target", nargs="?", help="Folder to receive into (default: the sync directory)")
    parser.add_argument("--two-way", action="store_true", help="Send changes in both directions")
    parser.add_argument(
        "--strategy",
        choices=["keep_local", "keep_remote", "keep_newest"],
        help="Conflict resolution strategy (default: keep_newest)"
    )
    parser.add_argument("--hashes", action="store_true", help="Compare files by checksum")
    parser.add_argument("--mirror-deletions", action="store_true", help="Delete target files missing from the source")
    parser.add_argument(
        "--config",
        help="Profile configuration file (YAML or JSON); also sets logging, sync directory and timeout"
    )
    parser.add_argument("--profile", help="Name of the profile to run")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print errors")
    return parser


def _settings_for(
    args: argparse.Namespace,
    profile: Optional[SyncProfile],
    config: Optional[PeerSyncConfig] = None
) -> SyncSettings:
    base = get_settings().sync
    update = {}
    if config is not None:
        if config.sync_directory:
            update["sync_directory"] = config.sync_directory
        if config.transport_timeout_seconds is not None:
            update["transport_timeout_seconds"] = config.transport_timeout_seconds
    if profile is not None:
        update.update(
            compute_hashes=profile.compute_hashes,
            mirror_deletions=profile.mirror_deletions,
            conflict_strategy=profile.conflict_strategy.value,
            exclude_patterns=list(profile.exclude_patterns),
        )
    if args.hashes:
        update["compute_hashes"] = True
    if args.mirror_deletions:
        update["mirror_deletions"] = True
    if args.strategy:
        update["conflict_strategy"] = args.strategy
    return base.model_copy(update=update)


def _requested_log_level(args: argparse.Namespace) -> Optional[str]:
    if args.verbose:
        return "DEBUG"
    if args.quiet:
        return "ERROR"
    return None


def _load_config(args: argparse.Namespace) -> PeerSyncConfig:
    """The --config file, or the PEERSYNC_CONFIG_FILE/default locations for a bare --profile."""
    if args.config:
        return ConfigLoader().load_from_file(args.config)
    return load_config_from_env()


async def main(argv: Optional[List[str]] = None) -> int:
    """Run one sync and return the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(log_level=_requested_log_level(args) or "WARNING", log_format="console")
    logger = get_logger("main")

    config: Optional[PeerSyncConfig] = None
    if args.config or args.profile:
        try:
            config = _load_config(args)
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return 1
        # The file's logging settings apply unless -v/-q asked otherwise
        setup_logging(log_level=_requested_log_level(args) or config.log_level, log_format=config.log_format)
        ConfigLoader().validate_config(config)

    profile: Optional[SyncProfile] = None
    if args.profile:
        profile = config.get_profile(args.profile)
        if profile is None:
            print(f"Unknown profile: {args.profile}", file=sys.stderr)
            return 1

    source = profile.source_path if profile else args.source
    if not source:
        parser.error("a source folder or --profile is required")

    settings = _settings_for(args, profile, config)
    target = args.target or (profile.target_path if profile else None) or settings.sync_directory
    two_way = args.two_way or (profile.two_way if profile else False)

    logger.info(
        "Running local sync",
        source=source,
        target=target,
        two_way=two_way,
        profile=profile.name if profile else None,
        environment=get_settings().environment
    )

    app = LocalSyncApp(source, target, two_way, settings, quiet=args.quiet)
    try:
        status = await app.run()
    except (SessionError, CatalogError, TransportError) as e:
        print(f"Sync failed: {e}", file=sys.stderr)
        return 1
    except asyncio.TimeoutError:
        print("Sync timed out", file=sys.stderr)
        return 1

    return 0 if status is SessionStatus.COMPLETED else 1


def cli() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nSync interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    cli()
