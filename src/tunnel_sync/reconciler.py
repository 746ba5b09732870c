"""Reconcile a tunnel's declared resources to its discovered IP set.

Desired state is recomputed from scratch on every run: each declared
resource should expose exactly the discovered addresses. Three independent
sub-reconcilers do the work, all concurrently:

- Gateway locations: the network allow-list is replaced wholesale with one
  /32 per address. Stale addresses disappear because they are not in the
  new list.
- DNS records: matching A records are deleted and one record per address is
  created in a single batch request. The provider applies deletes and posts
  as one request; whether resolvers can observe an empty or doubled record
  set in between depends on the provider's batch atomicity.
- Spectrum apps: the origin-direct list is rebuilt from the first existing
  entry with only the hostname swapped for each address.

Every optional attribute of an existing resource is carried over only when
the provider returned it. A failed task is recorded and never stops its
siblings; the tunnel fails as a whole once everything has settled.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable, Sequence
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from .aggregate import Settled, TunnelSyncError, run_all
from .models import (
    AUTOMATIC_TTL,
    DnsRecord,
    GatewayLocation,
    LocationNetwork,
    LocationUpdate,
    RecordBatch,
    RecordDelete,
    RecordPost,
    SpectrumApp,
    SpectrumAppUpdate,
    TunnelConfig,
    ZoneTarget,
)
from .providers import Providers

logger = logging.getLogger(__name__)

# Location attributes passed through unchanged when present
LOCATION_PASSTHROUGH_FIELDS = (
    "client_default",
    "dns_destination_ips_id",
    "ecs_support",
    "endpoints",
)

# Spectrum attributes passed through unchanged when present
SPECTRUM_PASSTHROUGH_FIELDS = (
    "traffic_type",
    "argo_smart_routing",
    "edge_ips",
    "ip_firewall",
    "origin_dns",
    "origin_port",
    "proxy_protocol",
    "tls",
)


# =============================================================================
# Errors
# =============================================================================


class LocationSyncError(Exception):
    """Raised when a gateway location cannot be updated."""

    def __init__(self, location_id: str, message: str) -> None:
        self.location_id = location_id
        super().__init__(message)


class LocationNotFoundError(LocationSyncError):
    """Raised when a declared gateway location does not exist."""

    def __init__(self, location_id: str) -> None:
        super().__init__(location_id, f"Gateway location {location_id} not found")


class DnsSyncError(Exception):
    """Raised when a record name in a zone cannot be synced."""

    def __init__(self, zone_id: str, record_name: str, message: str) -> None:
        self.zone_id = zone_id
        self.record_name = record_name
        super().__init__(message)


class SpectrumSyncError(Exception):
    """Raised when Spectrum apps of a zone cannot be fetched or updated."""

    def __init__(self, zone_id: str, message: str, app_id: str | None = None) -> None:
        self.zone_id = zone_id
        self.app_id = app_id
        super().__init__(message)


# =============================================================================
# Patch Builders
# =============================================================================


def sorted_ips(ips: Iterable[str]) -> list[str]:
    """Numeric order, so identical IP sets always produce identical calls."""
    return sorted(ips, key=ipaddress.IPv4Address)


def build_location_update(location: GatewayLocation, ips: Sequence[str]) -> LocationUpdate:
    fields: dict[str, Any] = {
        "name": location.name,
        "networks": [LocationNetwork(network=f"{ip}/32") for ip in ips],
    }
    for name in LOCATION_PASSTHROUGH_FIELDS:
        if name in location.model_fields_set:
            fields[name] = getattr(location, name)
    return LocationUpdate(**fields)


def build_record_batch(
    record_name: str, existing: Sequence[DnsRecord], ips: Sequence[str]
) -> RecordBatch:
    """Delete every existing record, post one record per address.

    ttl, comment, proxied, settings and tags come from the first existing
    record. Without one, ttl is automatic and the rest is left out.
    """
    template = existing[0] if existing else None

    posts = []
    for ip in ips:
        fields: dict[str, Any] = {
            "name": record_name,
            "type": "A",
            "content": ip,
            "ttl": AUTOMATIC_TTL,
        }
        if template is not None:
            if template.ttl is not None:
                fields["ttl"] = template.ttl
            if template.comment:
                fields["comment"] = template.comment
            if template.proxied:
                fields["proxied"] = template.proxied
            if template.settings is not None:
                fields["settings"] = template.settings
            if template.tags is not None:
                fields["tags"] = template.tags
        posts.append(RecordPost(**fields))

    if existing:
        return RecordBatch(deletes=[RecordDelete(id=r.id) for r in existing], posts=posts)
    return RecordBatch(posts=posts)


def _swap_host(netloc: str, host: str) -> str:
    userinfo, at, hostport = netloc.rpartition("@")
    if hostport.startswith("["):
        port = hostport[hostport.find("]") + 1 :]
    else:
        _, colon, port_number = hostport.partition(":")
        port = colon + port_number
    return f"{userinfo}{at}{host}{port}"


def rewrite_origin_direct(origin_direct: Sequence[str], ips: Sequence[str]) -> list[str]:
    """One origin URL per address, shaped like the first existing entry.

    Scheme, userinfo, port, path and query are kept verbatim; only the
    hostname changes.

    Raises:
        ValueError: If there is no usable existing entry to copy.
    """
    if not origin_direct:
        raise ValueError("origin_direct is empty, nothing to rewrite")

    parts = urlsplit(origin_direct[0])
    if not parts.netloc:
        raise ValueError(f"origin_direct entry has no host: {origin_direct[0]}")

    return [urlunsplit(parts._replace(netloc=_swap_host(parts.netloc, ip))) for ip in ips]


def build_app_update(app: SpectrumApp, ips: Sequence[str]) -> SpectrumAppUpdate:
    fields: dict[str, Any] = {"dns": app.dns, "protocol": app.protocol}
    for name in SPECTRUM_PASSTHROUGH_FIELDS:
        if name in app.model_fields_set:
            fields[name] = getattr(app, name)
    if "origin_direct" in app.model_fields_set:
        fields["origin_direct"] = rewrite_origin_direct(app.origin_direct or [], ips)
    return SpectrumAppUpdate(**fields)


# =============================================================================
# Sub-reconcilers
# =============================================================================


class LocationReconciler:
    """Replaces the network allow-list of each declared gateway location."""

    def __init__(
        self, providers: Providers, tunnel_id: str, location_ids: Sequence[str], ips: Sequence[str]
    ) -> None:
        self._providers = providers
        self._tunnel_id = tunnel_id
        self._location_ids = location_ids
        self._ips = ips

    async def reconcile(self) -> Settled[str]:
        return await run_all(self._sync_location(lid) for lid in self._location_ids)

    async def _sync_location(self, location_id: str) -> str:
        try:
            location = await self._providers.get_location(location_id)
        except Exception as e:
            raise LocationSyncError(
                location_id, f"Failed to fetch gateway location {location_id}: {e}"
            ) from e

        if location is None:
            raise LocationNotFoundError(location_id)
        if not location.name:
            # The update endpoint requires a name; none to carry over
            raise LocationSyncError(location_id, f"Gateway location {location_id} has no name")

        update = build_location_update(location, self._ips)
        try:
            await self._providers.update_location(location_id, update)
        except Exception as e:
            raise LocationSyncError(
                location_id, f"Failed to update gateway location {location_id}: {e}"
            ) from e

        logger.info(
            "Updated gateway location networks",
            extra={
                "tunnel_id": self._tunnel_id,
                "location_id": location_id,
                "ip_count": len(self._ips),
            },
        )
        return f"location {location_id}"


class DnsReconciler:
    """Recreates the A records of each declared record name."""

    def __init__(
        self,
        providers: Providers,
        tunnel_id: str,
        targets: Sequence[ZoneTarget],
        ips: Sequence[str],
    ) -> None:
        self._providers = providers
        self._tunnel_id = tunnel_id
        self._targets = targets
        self._ips = ips

    async def reconcile(self) -> Settled[str]:
        return await run_all(
            self._sync_record(target.zone_id, record_name)
            for target in self._targets
            for record_name in target.record_name or []
        )

    async def _sync_record(self, zone_id: str, record_name: str) -> str:
        try:
            existing = await self._providers.list_records(zone_id, "A", record_name)
            batch = build_record_batch(record_name, existing, self._ips)
            await self._providers.batch_records(zone_id, batch)
        except Exception as e:
            raise DnsSyncError(
                zone_id, record_name, f"Failed to sync {record_name} in zone {zone_id}: {e}"
            ) from e

        logger.info(
            "Replaced DNS records",
            extra={
                "tunnel_id": self._tunnel_id,
                "zone_id": zone_id,
                "record_name": record_name,
                "deleted": len(existing),
                "ip_count": len(self._ips),
            },
        )
        return f"dns {zone_id}/{record_name}"


class SpectrumReconciler:
    """Rewrites the origins of Spectrum apps bound to declared record names.

    Apps are fetched once per zone before any update starts. A zone whose
    fetch failed is reported once and its updates are skipped. Pre-fetch and
    dispatch both read the zones from the same tunnel config, so every zone
    with Spectrum names is either fetched or failed.
    """

    def __init__(
        self,
        providers: Providers,
        tunnel: TunnelConfig,
        ips: Sequence[str],
    ) -> None:
        self._providers = providers
        self._tunnel = tunnel
        self._ips = ips

    async def reconcile(self) -> Settled[str]:
        apps_by_zone, failed_zones, settled = await self._prefetch_apps()

        tasks = []
        for target in self._tunnel.dns_records or []:
            if not target.spectrum_record_name or target.zone_id in failed_zones:
                continue
            tasks.extend(
                self._sync_app(target.zone_id, app)
                for app in apps_by_zone[target.zone_id]
                if app.dns_name in target.spectrum_record_name
            )

        settled.extend(await run_all(tasks))
        return settled

    async def _prefetch_apps(
        self,
    ) -> tuple[dict[str, list[SpectrumApp]], set[str], Settled[str]]:
        names_by_zone = self._tunnel.spectrum_names_by_zone()
        zones = list(names_by_zone)
        fetched = await run_all(
            self._fetch_zone_apps(zone_id, names_by_zone[zone_id]) for zone_id in zones
        )

        apps_by_zone = dict(fetched.successes)
        failed_zones = {z for z in zones if z not in apps_by_zone}
        logger.debug(
            "Fetched Spectrum apps",
            extra={
                "tunnel_id": self._tunnel.tunnel_id,
                "apps": {zone: [a.id for a in apps] for zone, apps in apps_by_zone.items()},
            },
        )
        return apps_by_zone, failed_zones, Settled(failures=fetched.failures)

    async def _fetch_zone_apps(
        self, zone_id: str, names: set[str]
    ) -> tuple[str, list[SpectrumApp]]:
        try:
            apps = await self._providers.list_apps(zone_id)
        except Exception as e:
            raise SpectrumSyncError(
                zone_id, f"Failed to list Spectrum apps in zone {zone_id}: {e}"
            ) from e
        return zone_id, [app for app in apps if app.dns_name in names]

    async def _sync_app(self, zone_id: str, app: SpectrumApp) -> str:
        try:
            update = build_app_update(app, self._ips)
            await self._providers.update_app(zone_id, app.id, update)
        except Exception as e:
            raise SpectrumSyncError(
                zone_id, f"Failed to update Spectrum app {app.id} in zone {zone_id}: {e}", app.id
            ) from e

        logger.info(
            "Updated Spectrum app origins",
            extra={
                "tunnel_id": self._tunnel.tunnel_id,
                "zone_id": zone_id,
                "app_id": app.id,
                "ip_count": len(self._ips),
            },
        )
        return f"spectrum {zone_id}/{app.id}"


# =============================================================================
# Tunnel
# =============================================================================


class TunnelReconciler:
    """Runs every sub-reconciler a tunnel declares, concurrently."""

    def __init__(self, providers: Providers, tunnel: TunnelConfig, ips: Iterable[str]) -> None:
        self._providers = providers
        self._tunnel = tunnel
        self._ips = sorted_ips(ips)

    def sub_reconcilers(self) -> list[LocationReconciler | DnsReconciler | SpectrumReconciler]:
        tunnel = self._tunnel
        subs: list[LocationReconciler | DnsReconciler | SpectrumReconciler] = []
        if tunnel.zt_locations:
            subs.append(
                LocationReconciler(self._providers, tunnel.tunnel_id, tunnel.zt_locations, self._ips)
            )
        if tunnel.dns_records:
            if any(t.record_name for t in tunnel.dns_records):
                subs.append(
                    DnsReconciler(self._providers, tunnel.tunnel_id, tunnel.dns_records, self._ips)
                )
            if any(t.spectrum_record_name for t in tunnel.dns_records):
                subs.append(SpectrumReconciler(self._providers, tunnel, self._ips))
        return subs

    async def reconcile(self) -> Settled[str]:
        """Apply the tunnel's desired state.

        Returns:
            Descriptions of the updates applied.

        Raises:
            TunnelSyncError: If any update failed, after all have settled.
        """
        outer = await run_all(sub.reconcile() for sub in self.sub_reconcilers())

        settled: Settled[str] = Settled(failures=list(outer.failures))
        for inner in outer.successes:
            settled.extend(inner)

        if not settled.ok:
            raise TunnelSyncError(self._tunnel.tunnel_id, settled.failures)
        return settled
