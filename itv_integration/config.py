"""Region and runtime configuration for the ITV integration pipeline.

Defines typed configuration for the three regional ITV registries:
Comunitat Valenciana (JSON), Galicia (semicolon-delimited CSV) and
Catalunya (XML). Each region is bound to one source file under the data
root; file locations and the geocoding provider can be overridden through
environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final


class SourceFormat(Enum):
    """Source file formats, detected from the file extension."""

    DELIMITED = "csv"
    MARKUP = "xml"
    STRUCTURED = "json"


class GeocoderProvider(Enum):
    """Geocoding backends selectable at deployment time."""

    NOMINATIM = "nominatim"
    OPENCAGE = "opencage"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class RegionConfig:
    """Immutable configuration for a single regional registry.

    Attributes:
        id: Machine-readable region identifier (``cv``, ``gal``, ``cat``).
        name: Human-readable region name used in messages.
        source_path: Location of the region's source file.
        source_format: Expected format of the source file.
        encodings: Candidate text encodings, tried in order. ``"auto"``
            delegates to charset-normalizer detection.
        delimiter: Field delimiter for delimited-text sources.
    """

    id: str
    name: str
    source_path: Path
    source_format: SourceFormat
    encodings: tuple[str, ...]
    delimiter: str = ","


@dataclass(frozen=True, slots=True)
class GeocodingSettings:
    """Runtime settings for the geocoding collaborator.

    Attributes:
        provider: Backend used for address lookups.
        api_key: API key (OpenCage only).
        min_delay_seconds: Floor between successive lookups. None uses the
            provider's own default.
        timeout_seconds: Per-request HTTP timeout.
    """

    provider: GeocoderProvider
    api_key: str | None = None
    min_delay_seconds: float | None = None
    timeout_seconds: float = 10.0


_DEFAULT_DATA_DIR: Final[Path] = Path("data/raw")

# Latin-1 decodes any byte sequence, so UTF-8 must be tried first.
_LEGACY_ENCODINGS: Final[tuple[str, ...]] = (
    "utf-8",
    "windows-1252",
    "iso-8859-1",
    "iso-8859-15",
)
_UTF8_ONLY: Final[tuple[str, ...]] = ("utf-8", "auto")


def data_dir() -> Path:
    """Return the data root, honouring ``ITV_DATA_DIR``."""
    override = os.environ.get("ITV_DATA_DIR", "")
    return Path(override) if override else _DEFAULT_DATA_DIR


def _source_path(region_id: str, default_relative: str) -> Path:
    override = os.environ.get(f"ITV_SOURCE_{region_id.upper()}", "")
    if override:
        return Path(override)
    return data_dir() / default_relative


def build_regions() -> tuple[RegionConfig, ...]:
    """Build the region registry from the current environment."""
    return (
        RegionConfig(
            id="cv",
            name="Comunitat Valenciana",
            source_path=_source_path("cv", "cv/estaciones.json"),
            source_format=SourceFormat.STRUCTURED,
            encodings=_UTF8_ONLY,
        ),
        RegionConfig(
            id="gal",
            name="Galicia",
            source_path=_source_path("gal", "gal/estaciones.csv"),
            source_format=SourceFormat.DELIMITED,
            encodings=_LEGACY_ENCODINGS,
            delimiter=";",
        ),
        RegionConfig(
            id="cat",
            name="Catalunya",
            source_path=_source_path("cat", "cat/estaciones.xml"),
            source_format=SourceFormat.MARKUP,
            encodings=_UTF8_ONLY,
        ),
    )


REGION_IDS: Final[tuple[str, ...]] = ("cv", "gal", "cat")


def get_region_by_id(region_id: str) -> RegionConfig:
    """Look up a region configuration by its identifier.

    Args:
        region_id: Region identifier matching RegionConfig.id.

    Returns:
        Matching RegionConfig instance.

    Raises:
        KeyError: If no region matches the given identifier.
    """
    for region in build_regions():
        if region.id == region_id:
            return region
    valid_ids = ", ".join(REGION_IDS)
    raise KeyError(f"Unknown region '{region_id}'. Valid regions: {valid_ids}")


def load_geocoding_settings() -> GeocodingSettings:
    """Resolve geocoding settings from environment variables.

    Reads ``ITV_GEOCODER`` (nominatim, opencage or none),
    ``OPENCAGE_API_KEY``, ``ITV_GEOCODER_DELAY`` and
    ``ITV_GEOCODER_TIMEOUT``.

    Raises:
        ValueError: If the provider name or a numeric value is invalid.
    """
    raw_provider = os.environ.get("ITV_GEOCODER", GeocoderProvider.NOMINATIM.value)
    try:
        provider = GeocoderProvider(raw_provider.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in GeocoderProvider)
        raise ValueError(
            f"Unknown geocoder '{raw_provider}'. Valid: {valid}"
        ) from None

    raw_delay = os.environ.get("ITV_GEOCODER_DELAY", "")
    raw_timeout = os.environ.get("ITV_GEOCODER_TIMEOUT", "")
    return GeocodingSettings(
        provider=provider,
        api_key=os.environ.get("OPENCAGE_API_KEY") or None,
        min_delay_seconds=float(raw_delay) if raw_delay else None,
        timeout_seconds=float(raw_timeout) if raw_timeout else 10.0,
    )
