"""Canonical entities produced by the ITV integration pipeline.

Three linked entities leave every integration run: Province, Locality and
Station. They are created fresh per run from one source file and remain
transient until handed to the persistence boundary in load.py.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Final, TypeAlias

from itv_integration.normalize import fold

# Station index (input order) -> municipality name used to build it.
LinkMap: TypeAlias = dict[int, str]

LocalityKey: TypeAlias = tuple[str, int]

MIN_PROVINCE_CODE: Final[int] = 1
MAX_PROVINCE_CODE: Final[int] = 52


class StationType(enum.Enum):
    """Kind of inspection facility, stored with the registry's labels."""

    FIXED = "Estación_fija"
    MOBILE = "Estación_móvil"
    OTHER = "Otros"

    @classmethod
    def from_text(cls, text: str | None) -> StationType:
        """Classify free text such as ``"Estación Fija"`` or ``"MÓVIL"``.

        Matching is case- and diacritic-insensitive. Anything that is
        neither fixed nor mobile, including a missing value, is OTHER.
        """
        if text is None:
            return cls.OTHER
        folded = fold(text)
        if "fija" in folded or "fixed" in folded:
            return cls.FIXED
        if "movil" in folded or "mobile" in folded:
            return cls.MOBILE
        return cls.OTHER


@dataclass(frozen=True, slots=True)
class Province:
    """Top-level administrative region keyed by its official 1-52 code."""

    code: int
    name: str


@dataclass(slots=True)
class Locality:
    """Municipality, unique by (name, province_code).

    Attributes:
        name: Municipality name exactly as published by the source.
        province_code: Code of the owning Province.
        code: Persisted identifier, None until the persistence boundary
            assigns one.
    """

    name: str
    province_code: int
    code: int | None = None

    @property
    def key(self) -> LocalityKey:
        return (self.name, self.province_code)


@dataclass(slots=True)
class Station:
    """Vehicle-inspection facility, the unit persisted and geolocated.

    Attributes:
        name: Display name, never empty for extracted stations.
        type: FIXED, MOBILE or OTHER.
        address: Street address as published.
        postal_code: Numeric postal code (leading zeros dropped).
        longitude: WGS84 longitude, None when unknown or rejected.
        latitude: WGS84 latitude, None when unknown or rejected.
        description: Free-text description.
        schedule: Opening hours as published.
        contact: Contact e-mail.
        url: Appointment or information URL.
        locality_code: Persisted Locality code, set only by the resolver.
    """

    name: str
    type: StationType
    address: str | None = None
    postal_code: int | None = None
    longitude: float | None = None
    latitude: float | None = None
    description: str | None = None
    schedule: str | None = None
    contact: str | None = None
    url: str | None = None
    locality_code: int | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(slots=True)
class ExtractionResult:
    """Everything one region extractor produced for one source file."""

    provinces: list[Province] = field(default_factory=list)
    localities: list[Locality] = field(default_factory=list)
    stations: list[Station] = field(default_factory=list)
    link_map: LinkMap = field(default_factory=dict)
