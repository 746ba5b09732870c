"""Provider interfaces and their Cloudflare implementation.

The engine only talks to the ``Providers`` protocol. ``CloudflareProviders``
maps it onto the official async SDK and converts SDK objects into the local
models, keeping only the fields the API actually returned.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

from cloudflare import AsyncCloudflare, NotFoundError

from .config import Config
from .models import (
    ConnectorEntry,
    DnsRecord,
    GatewayLocation,
    LocationUpdate,
    RecordBatch,
    SpectrumApp,
    SpectrumAppUpdate,
    dump_patch,
)

logger = logging.getLogger(__name__)

# Page sizes for list endpoints; pagination is followed to the end regardless
DNS_RECORDS_PER_PAGE = 5000
SPECTRUM_APPS_PER_PAGE = 100


class Providers(Protocol):
    """Everything the engine needs from the outside world, minus mail."""

    def list_connections(self, tunnel_id: str) -> AsyncIterator[ConnectorEntry]: ...

    async def list_records(self, zone_id: str, record_type: str, name: str) -> list[DnsRecord]: ...

    async def batch_records(self, zone_id: str, batch: RecordBatch) -> Any: ...

    async def get_location(self, location_id: str) -> GatewayLocation | None: ...

    async def update_location(self, location_id: str, update: LocationUpdate) -> Any: ...

    async def list_apps(self, zone_id: str) -> list[SpectrumApp]: ...

    async def update_app(self, zone_id: str, app_id: str, update: SpectrumAppUpdate) -> Any: ...


def _present_fields(obj: Any) -> dict[str, Any]:
    """Fields the API returned for an SDK object (unset fields dropped)."""
    return obj.model_dump(exclude_unset=True)


class CloudflareProviders:
    """Providers backed by the Cloudflare v4 API."""

    def __init__(self, client: AsyncCloudflare, account_id: str) -> None:
        self._client = client
        self._account_id = account_id

    @classmethod
    def from_config(cls, config: Config) -> CloudflareProviders:
        client = AsyncCloudflare(api_token=config.api_token)
        return cls(client, config.account_id)

    async def aclose(self) -> None:
        await self._client.close()

    async def list_connections(self, tunnel_id: str) -> AsyncIterator[ConnectorEntry]:
        paginator = self._client.zero_trust.tunnels.cloudflared.connections.get(
            tunnel_id, account_id=self._account_id
        )
        async for entry in paginator:
            yield ConnectorEntry.model_validate(_present_fields(entry))

    async def list_records(self, zone_id: str, record_type: str, name: str) -> list[DnsRecord]:
        records: list[DnsRecord] = []
        async for record in self._client.dns.records.list(
            zone_id=zone_id,
            type=record_type,
            name={"exact": name},
            per_page=DNS_RECORDS_PER_PAGE,
        ):
            records.append(DnsRecord.model_validate(_present_fields(record)))
        logger.debug(
            "Listed DNS records",
            extra={"zone_id": zone_id, "record_name": name, "record_ids": [r.id for r in records]},
        )
        return records

    async def batch_records(self, zone_id: str, batch: RecordBatch) -> Any:
        return await self._client.dns.records.batch(zone_id=zone_id, **dump_patch(batch))

    async def get_location(self, location_id: str) -> GatewayLocation | None:
        try:
            location = await self._client.zero_trust.gateway.locations.get(
                location_id, account_id=self._account_id
            )
        except NotFoundError:
            return None
        if location is None:
            return None
        return GatewayLocation.model_validate(_present_fields(location))

    async def update_location(self, location_id: str, update: LocationUpdate) -> Any:
        return await self._client.zero_trust.gateway.locations.update(
            location_id, account_id=self._account_id, **dump_patch(update)
        )

    async def list_apps(self, zone_id: str) -> list[SpectrumApp]:
        apps: list[SpectrumApp] = []
        async for app in self._client.spectrum.apps.list(
            zone_id=zone_id, per_page=SPECTRUM_APPS_PER_PAGE
        ):
            # The list endpoint types its items as optional
            if app is None:
                continue
            apps.append(SpectrumApp.model_validate(_present_fields(app)))
        logger.debug("Listed Spectrum apps", extra={"zone_id": zone_id, "count": len(apps)})
        return apps

    async def update_app(self, zone_id: str, app_id: str, update: SpectrumAppUpdate) -> Any:
        return await self._client.spectrum.apps.update(
            app_id, zone_id=zone_id, **dump_patch(update)
        )
