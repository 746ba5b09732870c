"""One synchronization run across every declared tunnel.

The run:
1. Validates the tunnel document (nothing external happens if it is invalid)
2. Discovers each tunnel's live IPs, all tunnels concurrently
3. Alerts on and fails tunnels with no live connections
4. Reconciles the declared resources of every live tunnel
5. Reports every failure, per tunnel, once everything has settled or the
   run's time limit cancelled the tunnels still in progress
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .aggregate import Settled, SyncRunError, itemize_errors, run_all
from .alerts import AlertNotifier, describe_tunnel_down
from .discovery import discover_ips
from .models import TunnelConfig
from .providers import Providers
from .reconciler import TunnelReconciler
from .tunnel_loader import load_tunnel_configs

logger = logging.getLogger(__name__)


class TunnelDownError(Exception):
    """Raised for a tunnel whose discovery found no live connection."""

    def __init__(self, tunnel: TunnelConfig) -> None:
        self.tunnel_id = tunnel.tunnel_id
        super().__init__(describe_tunnel_down(tunnel))


@dataclass
class RunResult:
    """Summary of a single run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    tunnels_processed: int = 0
    updates_applied: int = 0
    errors: list[BaseException] = field(default_factory=list)

    @property
    def tunnels_failed(self) -> int:
        return len(self.errors)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return not self.errors


class RunTimeoutError(Exception):
    """Raised when a run exceeds its time limit.

    ``result`` holds what settled in time: its ``errors`` are the failures of
    tunnels that finished. ``pending`` lists the tunnels that were cancelled.
    """

    def __init__(self, timeout: float, result: RunResult, pending: list[str]) -> None:
        self.timeout = timeout
        self.result = result
        self.errors = list(result.errors)
        self.pending = list(pending)
        message = (
            f"Run did not finish within {timeout:g} seconds, "
            f"{len(self.pending)} tunnel(s) still pending: {', '.join(self.pending)}"
        )
        if self.errors:
            message += (
                f"\n{len(self.errors)} tunnel(s) failed:\n{itemize_errors(self.errors)}"
            )
        super().__init__(message)


class Engine:
    """Reconciles every tunnel in a document against its live connections."""

    def __init__(
        self,
        providers: Providers,
        tunnel_document: Any,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self._providers = providers
        self._document = tunnel_document
        self._notifier = notifier

    async def run(self, timeout: float | None = None) -> RunResult:
        """Run once and raise if anything failed.

        Raises:
            ConfigValidationError: Before any external call, if the document is invalid.
            SyncRunError: Listing each failed tunnel's error.
            RunTimeoutError: If tunnels were still running after ``timeout`` seconds.
        """
        result = await self.run_once(timeout)
        if not result.success:
            raise SyncRunError(result.errors)
        return result

    async def run_once(self, timeout: float | None = None) -> RunResult:
        """Run once and report failures in the result instead of raising.

        Args:
            timeout: Seconds to wait for every tunnel; None waits indefinitely.

        Raises:
            ConfigValidationError: If the document is invalid.
            RunTimeoutError: If tunnels were still running when ``timeout``
                elapsed. Tunnels that had settled are reported on the error.
        """
        tunnels = load_tunnel_configs(self._document)
        result = RunResult(tunnels_processed=len(tunnels))

        settled: Settled[Settled[str]] = await run_all(
            (self.sync_tunnel(tunnel) for tunnel in tunnels), timeout=timeout
        )

        result.updates_applied = sum(len(s.successes) for s in settled.successes)
        result.errors = settled.failures
        result.end_time = datetime.now(UTC)

        if settled.pending and timeout is not None:
            raise RunTimeoutError(
                timeout, result, [tunnels[index].tunnel_id for index in settled.pending]
            )
        return result

    async def sync_tunnel(self, tunnel: TunnelConfig) -> Settled[str]:
        """Discover and reconcile one tunnel.

        Raises:
            DiscoveryError: If the connections could not be listed.
            TunnelDownError: If the tunnel has no live connection.
            TunnelSyncError: If any resource update failed.
        """
        ips = await discover_ips(self._providers, tunnel.tunnel_id)

        if not ips:
            logger.warning(
                "Tunnel is down, skipping updates",
                extra={"tunnel_id": tunnel.tunnel_id, "sections": tunnel.declared_sections},
            )
            if tunnel.failure_email:
                if self._notifier is not None:
                    self._notifier.notify_tunnel_down(tunnel)
                else:
                    logger.warning(
                        "Alerting is not configured, tunnel down alert not sent",
                        extra={"tunnel_id": tunnel.tunnel_id},
                    )
            raise TunnelDownError(tunnel)

        logger.info(
            "Reconciling tunnel",
            extra={"tunnel_id": tunnel.tunnel_id, "ip_count": len(ips)},
        )
        return await TunnelReconciler(self._providers, tunnel, ips).reconcile()
