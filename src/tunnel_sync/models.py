"""Pydantic models for the tunnel document and the provider resources.

These models provide:
1. Strict parsing of the operator-supplied tunnel document
2. Normalization of identifiers at the boundary
3. Typed views of provider resources and the patches sent back to them

Provider resources keep track of which optional fields the API actually
returned (``model_fields_set``); patches are dumped with ``exclude_unset`` so
an attribute that was never present is never sent.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, Field, model_validator
from pydantic_core import PydanticCustomError

# =============================================================================
# Validation Patterns
# =============================================================================

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
HEX_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)
DOMAIN_PATTERN = re.compile(
    r"^([a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$"
)
# WHATWG (HTML5) practical email address pattern
EMAIL_PATTERN = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)

MAX_ZONE_ID_LENGTH = 32

# Cloudflare treats ttl=1 as "automatic"
AUTOMATIC_TTL = 1

TUNNEL_TARGETS_MESSAGE = "at least one of 'zt_locations' or 'dns_records' is required"
ZONE_TARGETS_MESSAGE = "at least one of 'record_name' or 'spectrum_record_name' is required"


def _canonical_uuid(value: str) -> str:
    if not UUID_PATTERN.match(value):
        raise ValueError("must be a hyphenated UUID")
    return value.lower()


def _location_id(value: str) -> str:
    value = value.strip()
    if UUID_PATTERN.match(value):
        return value.replace("-", "").lower()
    if HEX_ID_PATTERN.match(value):
        return value.lower()
    raise ValueError("must be a UUID, with or without hyphens")


def _domain_name(value: str) -> str:
    value = value.strip()
    if not DOMAIN_PATTERN.match(value):
        raise ValueError(f"'{value}' is not a valid domain name")
    return value


def _zone_id(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    if len(value) > MAX_ZONE_ID_LENGTH:
        raise ValueError(f"must be at most {MAX_ZONE_ID_LENGTH} characters")
    return value


def _email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValueError(f"'{value}' is not a valid email address")
    return value


def _unique(values: list[str]) -> list[str]:
    # Sets in the document, first-seen order kept for stable call ordering
    return list(dict.fromkeys(values))


TunnelId = Annotated[str, AfterValidator(_canonical_uuid)]
LocationId = Annotated[str, AfterValidator(_location_id)]
DomainName = Annotated[str, AfterValidator(_domain_name)]
ZoneId = Annotated[str, AfterValidator(_zone_id)]
EmailAddress = Annotated[str, AfterValidator(_email)]
DomainNameSet = Annotated[list[DomainName], Field(min_length=1), AfterValidator(_unique)]
LocationIdSet = Annotated[list[LocationId], Field(min_length=1), AfterValidator(_unique)]


# =============================================================================
# Tunnel Document
# =============================================================================


class ZoneTarget(BaseModel):
    """Records in one zone that should track a tunnel."""

    model_config = {"extra": "forbid"}

    zone_id: ZoneId
    record_name: DomainNameSet | None = None
    spectrum_record_name: DomainNameSet | None = None

    @model_validator(mode="after")
    def _require_target(self) -> ZoneTarget:
        if self.record_name is None and self.spectrum_record_name is None:
            raise PydanticCustomError("missing_targets", ZONE_TARGETS_MESSAGE)
        return self


class TunnelConfig(BaseModel):
    """One tunnel and the resources that follow its egress IPs."""

    model_config = {"extra": "forbid"}

    tunnel_id: TunnelId
    failure_email: EmailAddress | None = None
    zt_locations: LocationIdSet | None = None
    dns_records: Annotated[list[ZoneTarget], Field(min_length=1)] | None = None

    @model_validator(mode="after")
    def _require_target(self) -> TunnelConfig:
        if self.zt_locations is None and self.dns_records is None:
            raise PydanticCustomError("missing_targets", TUNNEL_TARGETS_MESSAGE)
        return self

    @property
    def declared_sections(self) -> list[str]:
        """Names of the resource sections present in the document."""
        return [
            key for key in ("zt_locations", "dns_records") if getattr(self, key) is not None
        ]

    def spectrum_names_by_zone(self) -> dict[str, set[str]]:
        """Union of Spectrum record names per zone, across all zone entries."""
        names: dict[str, set[str]] = {}
        for target in self.dns_records or []:
            if target.spectrum_record_name:
                names.setdefault(target.zone_id, set()).update(target.spectrum_record_name)
        return names


# =============================================================================
# Provider Resources
# =============================================================================


class Connection(BaseModel):
    """A single cloudflared connection; only the origin address matters here."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    # Left untyped: discovery decides what counts as a usable address
    origin_ip: Any = None


class ConnectorEntry(BaseModel):
    """One connector of a tunnel and its live connections."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    conns: list[Connection] | None = None


class GatewayLocation(BaseModel):
    """Zero Trust gateway location."""

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: str | None = None
    client_default: bool | None = None
    dns_destination_ips_id: str | None = None
    ecs_support: bool | None = None
    endpoints: dict[str, Any] | None = None
    networks: list[dict[str, Any]] | None = None


class DnsRecord(BaseModel):
    """An existing DNS record."""

    model_config = {"extra": "ignore"}

    id: str
    name: str | None = None
    type: str | None = None
    content: str | None = None
    ttl: int | None = None
    proxied: bool | None = None
    comment: str | None = None
    settings: dict[str, Any] | None = None
    tags: list[str] | None = None


class SpectrumApp(BaseModel):
    """A Spectrum application."""

    model_config = {"extra": "ignore"}

    id: str
    protocol: str | None = None
    dns: dict[str, Any] | None = None
    traffic_type: str | None = None
    argo_smart_routing: bool | None = None
    edge_ips: dict[str, Any] | None = None
    ip_firewall: bool | None = None
    origin_direct: list[str] | None = None
    origin_dns: dict[str, Any] | None = None
    origin_port: Any = None
    proxy_protocol: str | None = None
    tls: str | None = None

    @property
    def dns_name(self) -> str | None:
        name = (self.dns or {}).get("name")
        return name if isinstance(name, str) else None


# =============================================================================
# Patches
# =============================================================================


class LocationNetwork(BaseModel):
    network: str


class LocationUpdate(BaseModel):
    """Full location update: pass-through attributes plus the new networks."""

    name: str
    client_default: bool | None = None
    dns_destination_ips_id: str | None = None
    ecs_support: bool | None = None
    endpoints: dict[str, Any] | None = None
    networks: list[LocationNetwork]


class RecordPost(BaseModel):
    """A record to create in a batch."""

    name: str
    type: Literal["A"] = "A"
    content: str
    ttl: int = AUTOMATIC_TTL
    proxied: bool | None = None
    comment: str | None = None
    settings: dict[str, Any] | None = None
    tags: list[str] | None = None


class RecordDelete(BaseModel):
    id: str


class RecordBatch(BaseModel):
    """One atomic DNS batch request for a zone."""

    deletes: list[RecordDelete] | None = None
    posts: list[RecordPost] = Field(default_factory=list)


class SpectrumAppUpdate(BaseModel):
    """Spectrum app update: every configured attribute, rewritten origins."""

    dns: dict[str, Any] | None
    protocol: str | None
    traffic_type: str | None = None
    argo_smart_routing: bool | None = None
    edge_ips: dict[str, Any] | None = None
    ip_firewall: bool | None = None
    origin_direct: list[str] | None = None
    origin_dns: dict[str, Any] | None = None
    origin_port: Any = None
    proxy_protocol: str | None = None
    tls: str | None = None


def dump_patch(patch: BaseModel) -> dict[str, Any]:
    """Serialize a patch, leaving out every field that was never assigned."""
    return patch.model_dump(mode="json", exclude_unset=True)
