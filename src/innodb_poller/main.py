"""
Command-line entry point for the InnoDB metrics poller.

Exit codes:
    0   stopped cleanly (SIGTERM)
    1   unrecoverable runtime error (connection, bootstrap, query, commit)
    2   invalid configuration
    130 interrupted (SIGINT)
"""

from __future__ import annotations

import asyncio
import signal
import sys

import yaml
from pydantic import ValidationError

from innodb_poller.config import AppConfig, load_config
from innodb_poller.errors import PollerError
from innodb_poller.logging import get_logger, setup_logging
from innodb_poller.metrics.poller import MetricsPoller
from innodb_poller.metrics.source import SourceReader, mask_dsn
from innodb_poller.metrics.storage import MetricsStorage

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


async def run(config: AppConfig) -> int:
    """
    Open both databases, bootstrap the catalog and poll until stopped.

    Returns:
        Process exit code.

    Raises:
        PollerError: On any unrecoverable error.
    """
    logger.info("dsn: %s", mask_dsn(config.source.dsn))

    storage = MetricsStorage(config.storage.path)
    await storage.initialize()

    source = SourceReader.from_dsn(
        config.source.dsn,
        connect_timeout_seconds=config.source.connect_timeout_seconds,
        engine_metrics_view=config.source.engine_metrics_view,
        status_view=config.source.status_view,
    )
    try:
        await asyncio.get_event_loop().run_in_executor(None, source.check_connection)

        poller = MetricsPoller(source, storage, config.poller)
        interrupted = False

        def _on_signal(signum: int) -> None:
            nonlocal interrupted
            interrupted = signum == signal.SIGINT
            logger.info("Stop requested", extra={"signal": signal.Signals(signum).name})
            poller.stop()

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, _on_signal, signum)

        try:
            await poller.run()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
        return EXIT_INTERRUPTED if interrupted else EXIT_OK
    finally:
        source.dispose()


def main(argv: list[str] | None = None) -> int:
    """
    Run the poller with configuration from file, environment and `argv`.

    Returns:
        Process exit code.
    """
    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"innodb-poller: invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(config.logging)

    try:
        return asyncio.run(run(config))
    except PollerError as e:
        logger.critical(
            "Unrecoverable error, exiting",
            extra={"error_code": e.error_code, "error": e.message, "details": e.details},
        )
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
