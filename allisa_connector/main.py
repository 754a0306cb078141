"""WiseTime Allisa Connector - Main entry point."""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, NoReturn, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import __version__
from .auth import KeychainManager
from .config import Config, setup_logging
from .errors import ConfigError, StateStoreError
from .sync import (
    AllisaClient,
    Dispatcher,
    Poller,
    PostingMapper,
    RetryConfig,
    StateStore,
    SyncEngine,
    TagSync,
    WiseTimeClient,
)
from .sync.models import SyncState

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_STATE_STORE_ERROR = 3
EXIT_ALLISA_UNREACHABLE = 4


class SyncCoordinator:
    """Owns the scheduler and the periodic jobs.

    Jobs never overlap themselves (max_instances=1) and missed runs are
    coalesced. A StateStoreError in any job is fatal and reported through
    `on_fatal`; every other job error is logged and the job runs again on
    its next tick.
    """

    def __init__(
        self,
        config: Config,
        engine: SyncEngine,
        store: StateStore,
        allisa: AllisaClient,
        wisetime: Optional[WiseTimeClient] = None,
        tag_sync: Optional[TagSync] = None,
        on_fatal: Optional[Callable[[Exception], None]] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.store = store
        self.allisa = allisa
        self.wisetime = wisetime
        self.tag_sync = tag_sync
        self._on_fatal = on_fatal

        self.scheduler = scheduler or BackgroundScheduler()
        self.state: SyncState = store.load_state(config.connector_id)

    def start(self) -> None:
        """Start the periodic jobs."""
        self._add_job(self.do_sync, self.config.sync.interval_seconds, "sync_job")
        if self.tag_sync is not None and self.config.tags.enabled:
            self._add_job(self.do_tag_sync, self.config.tags.interval_seconds, "tag_sync_job")
            self._add_job(
                self.do_tag_refresh,
                self.config.tags.refresh_interval_seconds,
                "tag_refresh_job",
            )
        # Health check every 5 minutes
        self._add_job(self.do_health_check, 300, "health_check_job")
        self.scheduler.start()
        logger.info(
            f"Sync loop started (interval: {self.config.sync.interval_seconds}s, "
            f"watermark: {self.state.watermark})"
        )

    def _add_job(self, func: Callable[[], None], seconds: int, job_id: str) -> None:
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def stop(self) -> None:
        """Shut down the scheduler if running."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def do_sync(self) -> None:
        """Run one posting sync cycle."""
        try:
            report = self.engine.run_cycle(self.state)
            self.state = report.state
            if report.postings_fetched:
                logger.info(
                    f"Sync complete: {report.accepted} accepted, "
                    f"{report.rejected_permanent} rejected, "
                    f"{report.rejected_retryable} to retry, "
                    f"{report.dead_lettered} dead-lettered"
                )
        except StateStoreError as e:
            self._fatal(e)
        except Exception as e:
            logger.exception(f"Sync error: {e}")

    def do_tag_sync(self) -> None:
        """Upsert tags for new Allisa cases."""
        try:
            self.tag_sync.sync_new_cases()
        except StateStoreError as e:
            self._fatal(e)
        except Exception as e:
            logger.exception(f"Tag sync error: {e}")

    def do_tag_refresh(self) -> None:
        """Refresh one page of existing tags."""
        try:
            self.tag_sync.refresh_cases()
        except StateStoreError as e:
            self._fatal(e)
        except Exception as e:
            logger.exception(f"Tag refresh error: {e}")

    def do_health_check(self) -> bool:
        """Log whether Allisa and WiseTime are reachable."""
        checks = {"Allisa": self.allisa.can_connect}
        if self.wisetime is not None:
            checks["WiseTime"] = self.wisetime.is_reachable

        healthy = True
        for name, check in checks.items():
            if check():
                logger.debug(f"{name} health check passed")
            else:
                logger.warning(f"{name} health check failed")
                healthy = False
        return healthy

    def _fatal(self, error: Exception) -> None:
        logger.critical(f"State store failure, stopping connector: {error}")
        if self._on_fatal:
            self._on_fatal(error)


class ConnectorApp:
    """Main application class.

    Wires components together and handles lifecycle (start / shutdown).
    """

    def __init__(self, config: Config):
        """Initialize the application from a validated config."""
        self.config = config

        retry_config = RetryConfig(
            max_retries=config.sync.max_retries,
            base_delay=config.sync.retry_base_delay,
            max_delay=config.sync.retry_max_delay,
        )
        timeout = config.sync.request_timeout_seconds

        self.wisetime = WiseTimeClient(
            api_key=config.wisetime.api_key,
            api_url=config.wisetime.api_url,
            timeout=timeout,
            retry_config=retry_config,
        )
        self.allisa = AllisaClient(
            base_url=config.allisa.base_url,
            api_key=config.allisa.api_key,
            case_type=config.allisa.case_type,
            post_type=config.allisa.post_type,
            field_mapping=config.field_mapping,
            timeout=timeout,
            retry_config=retry_config,
        )
        self.store = StateStore(config.state_db_path)

        self.engine = SyncEngine(
            poller=Poller(self.wisetime),
            mapper=PostingMapper(config.mapping, tag_upsert_path=config.tags.upsert_path),
            dispatcher=Dispatcher(
                self.allisa,
                self.store,
                retry_config=retry_config,
                workers=config.sync.workers,
                max_delivery_attempts=config.sync.max_delivery_attempts,
            ),
            store=self.store,
            batch_size=config.sync.batch_size,
            cycle_timeout=config.sync.cycle_timeout_seconds,
        )
        self.tag_sync = TagSync(
            allisa=self.allisa,
            wisetime=self.wisetime,
            store=self.store,
            tag_upsert_path=config.tags.upsert_path,
            case_url_prefix=config.allisa.case_url_prefix,
            batch_size=config.tags.batch_size,
        )
        self.coordinator = SyncCoordinator(
            config=config,
            engine=self.engine,
            store=self.store,
            allisa=self.allisa,
            wisetime=self.wisetime,
            tag_sync=self.tag_sync,
            on_fatal=self._on_fatal,
        )

        self.exit_code = 0
        self._shutdown_done = False
        self._shutdown_event = threading.Event()

    def run(self) -> int:
        """Run until a shutdown signal or a fatal error. Returns the exit code."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        if not self.allisa.can_connect():
            logger.error("Allisa is not reachable with the configured settings")
            self.exit_code = EXIT_ALLISA_UNREACHABLE
            return self.exit_code

        self.coordinator.start()
        logger.info(f"WiseTime Allisa Connector {__version__} running")

        while not self._shutdown_event.wait(timeout=1):
            pass
        return self.exit_code

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    def _on_fatal(self, error: Exception) -> None:
        self.exit_code = EXIT_STATE_STORE_ERROR
        self._shutdown_event.set()

    def _shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.coordinator.stop()
        self.wisetime.close()
        self.allisa.close()
        self.store.close()

        logger.info("Shutdown complete")

    def __enter__(self) -> "ConnectorApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


class SingleInstanceLock:
    """File-based single-instance lock using advisory locking.

    The lock lives in the state directory, so two connectors may run on
    one host as long as they keep their state apart.
    """

    def __init__(self, lock_dir: Path):
        self._file = None
        self._path = os.path.join(lock_dir, ".wisetime-allisa-connector.lock")

    def acquire(self) -> bool:
        """Try to acquire the lock. Returns True on success."""
        os.makedirs(os.path.dirname(self._path), exist_ok=True)
        self._file = open(self._path, "a+")  # noqa: SIM115
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self._file.seek(0)
            self._file.truncate(0)
            self._file.write(str(os.getpid()))
            self._file.flush()
            return True
        except OSError:
            self._file.close()
            self._file = None
            return False

    def release(self) -> None:
        """Release the lock and clean up."""
        if self._file:
            try:
                if sys.platform == "win32":
                    import msvcrt
                    try:
                        msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
                    except OSError:
                        pass
                else:
                    import fcntl
                    fcntl.flock(self._file, fcntl.LOCK_UN)
                self._file.close()
                os.unlink(self._path)
            except OSError:
                pass
            self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def run(config: Config) -> NoReturn:
    """Run the connector until shut down, then exit the process.

    Raises:
        SystemExit: Always; non-zero on config, connectivity or state errors
    """
    try:
        config.validate()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    lock = SingleInstanceLock(config.state_dir)
    if not lock.acquire():
        logger.error(f"Another connector is already using {config.state_dir}")
        sys.exit(0)

    try:
        with ConnectorApp(config) as app:
            exit_code = app.run()
    except StateStoreError as e:
        logger.critical(f"State store failure: {e}")
        exit_code = EXIT_STATE_STORE_ERROR
    finally:
        lock.release()
    sys.exit(exit_code)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wisetime-allisa-connector",
        description="Post WiseTime time to Allisa and keep tags in sync.",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--config", type=Path, help="Config file (default: platform config dir)")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("run", help="Run the connector (default)")

    reset = commands.add_parser(
        "reset-watermark", help="Move the posting watermark, e.g. to re-post time"
    )
    reset.add_argument("watermark", type=int, nargs="?", default=0)

    letters = commands.add_parser("dead-letters", help="List postings that were set aside")
    letters.add_argument("--limit", type=int, default=100)

    remove = commands.add_parser(
        "remove-dead-letters", help="Forget dead letters after handling them by hand"
    )
    remove.add_argument("posting_ids", nargs="+")
    return parser


def _run_admin(args: argparse.Namespace, config: Config) -> int:
    """Run an operator command against the state store. Returns the exit code."""
    try:
        store = StateStore(config.state_db_path)
    except StateStoreError as e:
        print(f"State store error: {e}", file=sys.stderr)
        return EXIT_STATE_STORE_ERROR

    try:
        if args.command == "reset-watermark":
            # A running connector would overwrite the reset with its own state
            lock = SingleInstanceLock(config.state_dir)
            if not lock.acquire():
                print("Stop the running connector before resetting the watermark", file=sys.stderr)
                return 1
            with lock:
                store.reset_watermark(config.connector_id, args.watermark)
            print(f"Watermark for {config.connector_id} set to {args.watermark}")

        elif args.command == "dead-letters":
            letters = store.dead_letters(limit=args.limit)
            for letter in letters:
                print(
                    f"{letter.posting_id}\t{letter.sequence}\t"
                    f"{letter.created_at.isoformat()}\t{letter.reason}"
                )
            print(f"{store.dead_letter_count()} dead letters")

        elif args.command == "remove-dead-letters":
            removed = store.remove_dead_letters(args.posting_ids)
            print(f"Removed {removed} dead letters")
    except StateStoreError as e:
        print(f"State store error: {e}", file=sys.stderr)
        return EXIT_STATE_STORE_ERROR
    finally:
        store.close()
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    args = _build_parser().parse_args(argv)
    try:
        config = Config.load(path=args.config, keychain=KeychainManager())
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    if args.command not in (None, "run"):
        sys.exit(_run_admin(args, config))

    setup_logging(config.debug_mode)
    logger.info(f"WiseTime Allisa Connector {__version__} starting...")
    run(config)


if __name__ == "__main__":
    main()
