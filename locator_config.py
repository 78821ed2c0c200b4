"""
Route locator configuration.

Owns the defaults every query and linear-referencing call falls back to
when the caller does not pass an explicit value: route ID field, spatial
references, proximity search tolerance, HTTP timeout/retry policy, and
the measure unit.

Frozen dataclasses give type checking without a YAML/JSON config file.
Environment overrides (optionally loaded from a .env file) are applied
by load_config(); nothing reads the environment at import time.
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "ROUTE_LOCATOR_"


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class LocatorConfig:
    """Defaults for Feature Service queries and measure resolution."""
    route_id_field: str = "RouteID"
    in_sr: int = 4326              # WKID of input points for proximity search
    out_sr: int = 4326             # WKID requested for geometry used in geodesic math
    search_distance_ft: float = 50.0
    timeout: int = 30              # seconds per HTTP request
    max_retries: int = 0           # extra attempts on 5xx / timeouts
    retry_backoff: Tuple[float, ...] = (2.0, 4.0)  # seconds, indexed by attempt
    measure_units: str = "miles"


DEFAULT_CONFIG = LocatorConfig()


# =============================================================================
# Environment overrides
# =============================================================================

def _parse_backoff(raw: str) -> Tuple[float, ...]:
    return tuple(float(part) for part in raw.split(",") if part.strip())


# env var suffix -> (field name, parser)
_ENV_FIELDS = {
    "ROUTE_ID_FIELD": ("route_id_field", str),
    "IN_SR": ("in_sr", int),
    "OUT_SR": ("out_sr", int),
    "SEARCH_DISTANCE_FT": ("search_distance_ft", float),
    "TIMEOUT": ("timeout", int),
    "MAX_RETRIES": ("max_retries", int),
    "RETRY_BACKOFF": ("retry_backoff", _parse_backoff),
    "MEASURE_UNITS": ("measure_units", str),
}


def load_config(
    env_file: Optional[str] = None,
    base: LocatorConfig = DEFAULT_CONFIG,
) -> LocatorConfig:
    """Build a LocatorConfig from ``base`` plus ROUTE_LOCATOR_* overrides.

    A .env file (``env_file`` or the nearest one found by python-dotenv)
    is loaded first without overriding variables already set in the
    process environment.

    Raises:
        ValueError: if an override cannot be parsed into its field type.
    """
    load_dotenv(env_file, override=False)

    overrides = {}
    for suffix, (field_name, parser) in _ENV_FIELDS.items():
        raw = os.environ.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            overrides[field_name] = parser(raw)
        except ValueError as e:
            raise ValueError(
                f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}"
            ) from e

    if overrides:
        logger.debug("Config overrides from environment: %s", sorted(overrides))
    return replace(base, **overrides)
