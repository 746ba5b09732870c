"""Drives the engine on a schedule.

In once mode a single run decides the exit status. In watch mode runs repeat
every interval until shutdown; a failed run is logged and the loop goes on.
The tunnel document is re-read before every run.
"""

from __future__ import annotations

import asyncio
import logging

from .aggregate import SyncRunError
from .alerts import AlertNotifier
from .config import Config
from .engine import Engine, RunResult, RunTimeoutError
from .providers import Providers
from .tunnel_loader import ConfigValidationError, TunnelConfigLoadError

logger = logging.getLogger(__name__)


class Runner:
    """Runs the engine once or on an interval."""

    def __init__(
        self,
        config: Config,
        providers: Providers,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self._config = config
        self._providers = providers
        self._notifier = notifier
        self._shutdown_event = asyncio.Event()

    async def run_once(self) -> RunResult:
        """Execute one run, bounded by the configured timeout.

        Raises:
            TunnelConfigLoadError: If the tunnel document cannot be read.
            ConfigValidationError: If the tunnel document is invalid.
            SyncRunError: If any tunnel failed.
            RunTimeoutError: If the run did not finish in time.
        """
        engine = Engine(self._providers, self._config.read_tunnel_document(), self._notifier)
        timeout = self._config.run_timeout_seconds or None

        try:
            result = await engine.run(timeout=timeout)
        finally:
            # Alerts outlive the run they were raised in, but not the process
            if self._notifier is not None:
                await self._notifier.drain()

        logger.info(
            "Run completed",
            extra={
                "tunnels": result.tunnels_processed,
                "updates_applied": result.updates_applied,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def run(self) -> None:
        """Run on the configured interval until shutdown."""
        logger.info(
            "Starting watch loop",
            extra={"interval_seconds": self._config.run_interval_seconds},
        )

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except (TunnelConfigLoadError, ConfigValidationError) as e:
                logger.error("Tunnel configuration rejected", extra={"error": str(e)})
            except (SyncRunError, RunTimeoutError) as e:
                logger.error("Run failed", extra={"error": str(e)})

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.run_interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, continue to next run
                pass

        logger.info("Watch loop stopped")

    def shutdown(self) -> None:
        """Signal the watch loop to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
