"""Tunnel document loading with validation.

SECURITY: File reads enforce a size limit. Validation happens entirely at
the boundary; nothing downstream ever sees an unvalidated document.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import Field, TypeAdapter, ValidationError

from .config import MAX_TUNNEL_CONFIG_FILE_SIZE_BYTES
from .models import TUNNEL_TARGETS_MESSAGE, ZONE_TARGETS_MESSAGE, TunnelConfig

logger = logging.getLogger(__name__)

_DOCUMENT_ADAPTER: TypeAdapter[list[TunnelConfig]] = TypeAdapter(
    Annotated[list[TunnelConfig], Field(min_length=1)]
)


class TunnelConfigLoadError(Exception):
    """Raised when the tunnel document cannot be read or parsed."""

    pass


class ConfigValidationError(Exception):
    """Raised when the tunnel document violates the schema.

    Carries every violation, not just the first one found.
    """

    def __init__(self, issues: Sequence[tuple[str, str]]) -> None:
        self.issues = list(issues)
        lines = "\n".join(f"  - {loc}: {msg}" for loc, msg in self.issues)
        super().__init__(f"Tunnel configuration is invalid:\n{lines}")


def _format_loc(loc: Sequence[int | str]) -> str:
    return ".".join(str(x) for x in loc) or "<root>"


def _missing_target_issues(raw: Any) -> list[tuple[str, str]]:
    """Shape violations, found even when an element also has field errors.

    Pydantic only runs model validators once every field is valid, so the
    "nothing to reconcile" checks are repeated here on the raw document.
    """
    issues: list[tuple[str, str]] = []
    if not isinstance(raw, list):
        return issues

    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            continue
        if "zt_locations" not in item and "dns_records" not in item:
            issues.append((str(i), TUNNEL_TARGETS_MESSAGE))
        zones = item.get("dns_records")
        if not isinstance(zones, list):
            continue
        for j, zone in enumerate(zones):
            if not isinstance(zone, dict):
                continue
            if "record_name" not in zone and "spectrum_record_name" not in zone:
                issues.append((f"{i}.dns_records.{j}", ZONE_TARGETS_MESSAGE))
    return issues


def load_tunnel_configs(raw: Any) -> list[TunnelConfig]:
    """Validate a tunnel document.

    Args:
        raw: The already-deserialized document, or a JSON string of it.

    Returns:
        Validated tunnel configs, identifiers normalized.

    Raises:
        ConfigValidationError: Listing every violated constraint.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigValidationError([("<root>", f"invalid JSON: {e}")]) from e

    try:
        tunnels = _DOCUMENT_ADAPTER.validate_python(raw)
    except ValidationError as e:
        issues = [(_format_loc(error["loc"]), error["msg"]) for error in e.errors()]
        issues.extend(_missing_target_issues(raw))
        # Same shape violation may be reported by both passes
        raise ConfigValidationError(list(dict.fromkeys(issues))) from e

    logger.debug(
        "Parsed tunnel configuration",
        extra={"tunnel_ids": [t.tunnel_id for t in tunnels]},
    )
    return tunnels


def read_tunnel_config_file(path: Path) -> Any:
    """Read a YAML or JSON tunnel document from disk without validating it.

    Raises:
        TunnelConfigLoadError: If the file is missing, too large, or unparsable.
    """
    if not path.exists():
        raise TunnelConfigLoadError(f"Tunnel config file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise TunnelConfigLoadError(f"Failed to stat tunnel config file {path}: {e}") from e

    if file_size > MAX_TUNNEL_CONFIG_FILE_SIZE_BYTES:
        raise TunnelConfigLoadError(
            f"Tunnel config file exceeds maximum size of "
            f"{MAX_TUNNEL_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TunnelConfigLoadError(f"Failed to read tunnel config file {path}: {e}") from e

    # JSON is a subset of YAML, one parser covers both
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise TunnelConfigLoadError(f"Invalid YAML in {path}: {e}") from e


def load_tunnel_config_file(path: Path) -> list[TunnelConfig]:
    """Read and validate a tunnel document file."""
    tunnels = load_tunnel_configs(read_tunnel_config_file(path))
    logger.info("Loaded %d tunnel(s) from %s", len(tunnels), path)
    return tunnels
