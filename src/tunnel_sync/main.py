"""Main entry point for the tunnel IP synchronizer.

Meant to be started by a scheduler (cron, systemd timer, Kubernetes CronJob)
in once mode, or left running in watch mode.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .aggregate import SyncRunError
from .alerts import AlertNotifier, SmtpMailSender
from .config import Config, ConfigurationError, RunMode
from .engine import RunTimeoutError
from .providers import CloudflareProviders
from .runner import Runner
from .tunnel_loader import ConfigValidationError, TunnelConfigLoadError

# LogRecord attributes that are not user-supplied extras
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_logging: bool = True) -> None:
    """Configure the root logger with a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    if json_logging:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Reduce noise from the HTTP and mail stacks
    for noisy in ("cloudflare", "httpx", "httpcore", "aiosmtplib"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


async def main(mode: RunMode | None = None) -> int:
    """Run the synchronizer.

    Args:
        mode: Overrides RUN_MODE from the environment when given.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
        if mode is not None:
            config = dataclasses.replace(config, mode=mode)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level, config.json_logging)
    logger.info(
        "Starting tunnel IP sync",
        extra={"mode": config.mode.value, "alerts_enabled": config.smtp.enabled},
    )

    providers = CloudflareProviders.from_config(config)
    notifier = (
        AlertNotifier(SmtpMailSender(config.smtp), config.smtp.sender_name)
        if config.smtp.enabled
        else None
    )
    runner = Runner(config, providers, notifier)

    try:
        if config.mode == RunMode.WATCH:
            return await run_watch(runner, logger)
        return await run_single(runner, logger)
    finally:
        await providers.aclose()


async def run_single(runner: Runner, logger: logging.Logger) -> int:
    """Run once and translate the outcome into an exit code."""
    try:
        await runner.run_once()
    except (TunnelConfigLoadError, ConfigValidationError) as e:
        logger.error("Tunnel configuration rejected", extra={"error": str(e)})
        return 1
    except SyncRunError as e:
        logger.error(
            "Run failed",
            extra={"error": str(e), "failed_tunnels": len(e.errors)},
        )
        return 1
    except RunTimeoutError as e:
        logger.error(
            "Run timed out",
            extra={"error": str(e), "failed_tunnels": len(e.errors), "pending_tunnels": e.pending},
        )
        return 1
    except Exception as e:
        logger.exception("Run failed unexpectedly", extra={"error": str(e)})
        return 1
    return 0


async def run_watch(runner: Runner, logger: logging.Logger) -> int:
    """Run until SIGTERM or SIGINT."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        runner.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await runner.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Synchronizer stopped")
    return 0


def run() -> None:
    """Entry point for the scheduled job."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
