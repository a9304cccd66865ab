"""Identity resolution: province/locality dedup and station linking.

Runs in two strictly ordered phases per region:

1. Provinces are merged by code. Localities whose province is not in the
   merged set are dropped (one ``UnresolvedReferenceError`` each); the rest
   are deduplicated by (name, province_code) and receive their codes from
   the persistence boundary, either an existing one or a freshly saved one.
2. Stations are linked to locality codes through the extractor's link map.
   A miss leaves ``locality_code`` None and records a ``LinkageWarning``;
   rejection is left to the validator.

Phase 2 only starts once the name -> code map is complete.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Final, Protocol

from itv_integration.models import (
    MAX_PROVINCE_CODE,
    MIN_PROVINCE_CODE,
    ExtractionResult,
    LinkMap,
    Locality,
    LocalityKey,
    Province,
    Station,
)

logger: Final[logging.Logger] = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class UnresolvedReferenceError(Exception):
    """A locality references a province code missing from the run.

    Collected, not raised: the locality is dropped and the run continues.

    Attributes:
        locality_name: Name of the dropped locality.
        province_code: The code that could not be resolved.
    """

    def __init__(self, locality_name: str, province_code: int) -> None:
        self.locality_name: Final[str] = locality_name
        self.province_code: Final[int] = province_code
        super().__init__(
            f"Locality '{locality_name}' references missing province "
            f"code {province_code}"
        )


class LinkageWarning(UserWarning):
    """A station could not be matched to a resolved locality.

    Attributes:
        station_index: Position of the station in extraction order.
        station_name: Display name of the station.
        locality_name: Municipality named by the link map.
    """

    def __init__(self, station_index: int, station_name: str, locality_name: str) -> None:
        self.station_index: Final[int] = station_index
        self.station_name: Final[str] = station_name
        self.locality_name: Final[str] = locality_name
        super().__init__(
            f"Station '{station_name}' (#{station_index}) has no resolved "
            f"locality '{locality_name}'"
        )


class LocalityRegistry(Protocol):
    """Subset of the persistence boundary the resolver needs."""

    def find_locality(self, name: str, province_code: int) -> int | None: ...

    def save_locality(self, locality: Locality) -> int: ...


@dataclass(slots=True)
class ResolutionResult:
    """Resolved entities for one region run.

    Attributes:
        provinces: Provinces merged by code.
        localities: Surviving localities, each with its assigned code.
        stations: Stations with ``locality_code`` set where linking hit.
        name_to_code: Locality name -> assigned code used for linking.
        unresolved: One error per dropped locality.
        linkage_warnings: One warning per station whose link missed.
    """

    provinces: list[Province]
    localities: list[Locality]
    stations: list[Station]
    name_to_code: dict[str, int] = field(default_factory=dict)
    unresolved: list[UnresolvedReferenceError] = field(default_factory=list)
    linkage_warnings: list[LinkageWarning] = field(default_factory=list)

    @property
    def linked_count(self) -> int:
        return sum(1 for s in self.stations if s.locality_code is not None)


# ---------------------------------------------------------------------------
# Phase 1: provinces and localities
# ---------------------------------------------------------------------------


def merge_provinces(provinces: Iterable[Province]) -> list[Province]:
    """Deduplicate provinces by code; the first name seen wins.

    Provinces whose code is outside 1..52 are dropped and logged.
    """
    merged: dict[int, Province] = {}
    for province in provinces:
        if not MIN_PROVINCE_CODE <= province.code <= MAX_PROVINCE_CODE:
            logger.error(
                "Dropping province %r: code %d outside %d..%d",
                province.name,
                province.code,
                MIN_PROVINCE_CODE,
                MAX_PROVINCE_CODE,
            )
            continue
        if province.code not in merged:
            merged[province.code] = province
    return list(merged.values())


def resolve_localities(
    localities: Iterable[Locality],
    provinces: Sequence[Province],
) -> tuple[list[Locality], list[UnresolvedReferenceError]]:
    """Drop localities with unknown provinces and dedupe the rest.

    Returns:
        Tuple of (unique surviving localities in first-seen order, one
        UnresolvedReferenceError per dropped locality).
    """
    known_codes = {p.code for p in provinces}
    survivors: dict[LocalityKey, Locality] = {}
    unresolved: list[UnresolvedReferenceError] = []

    for locality in localities:
        if locality.province_code not in known_codes:
            error = UnresolvedReferenceError(locality.name, locality.province_code)
            logger.error("%s; known codes: %s", error, sorted(known_codes))
            unresolved.append(error)
            continue
        survivors.setdefault(locality.key, locality)

    return list(survivors.values()), unresolved


def assign_locality_codes(
    localities: Sequence[Locality],
    registry: LocalityRegistry,
) -> dict[str, int]:
    """Give each unique locality its persisted code.

    Existing localities keep the code the registry already holds; new ones
    are saved and receive the code the registry returns. ``Locality.code``
    is set in place.

    Returns:
        Locality name -> code. When one name exists in two provinces the
        first key wins.
    """
    name_to_code: dict[str, int] = {}
    for locality in localities:
        code = registry.find_locality(locality.name, locality.province_code)
        if code is None:
            code = registry.save_locality(locality)
            logger.debug(
                "Saved locality %s (province %d) as %d",
                locality.name,
                locality.province_code,
                code,
            )
        else:
            logger.debug("Locality %s already exists as %d", locality.name, code)
        locality.code = code

        if locality.name in name_to_code:
            logger.warning(
                "Locality name %r exists in several provinces; linking by "
                "name keeps code %d",
                locality.name,
                name_to_code[locality.name],
            )
            continue
        name_to_code[locality.name] = code
    return name_to_code


# ---------------------------------------------------------------------------
# Phase 2: station linking
# ---------------------------------------------------------------------------


def link_stations(
    stations: Sequence[Station],
    link_map: LinkMap,
    name_to_code: dict[str, int],
) -> list[LinkageWarning]:
    """Set ``locality_code`` on stations whose municipality was resolved.

    Returns:
        One LinkageWarning per link-map entry that missed.
    """
    warnings: list[LinkageWarning] = []
    for index, station in enumerate(stations):
        locality_name = link_map.get(index)
        if locality_name is None:
            logger.debug("Station '%s' has no municipality to link", station.name)
            continue
        code = name_to_code.get(locality_name)
        if code is None:
            warning = LinkageWarning(index, station.name, locality_name)
            logger.warning("%s", warning)
            warnings.append(warning)
            continue
        station.locality_code = code
    return warnings


def resolve(extraction: ExtractionResult, registry: LocalityRegistry) -> ResolutionResult:
    """Run both resolution phases over one extractor's output."""
    provinces = merge_provinces(extraction.provinces)
    localities, unresolved = resolve_localities(extraction.localities, provinces)
    name_to_code = assign_locality_codes(localities, registry)

    linkage_warnings = link_stations(
        extraction.stations, extraction.link_map, name_to_code
    )

    result = ResolutionResult(
        provinces=provinces,
        localities=localities,
        stations=extraction.stations,
        name_to_code=name_to_code,
        unresolved=unresolved,
        linkage_warnings=linkage_warnings,
    )
    logger.info(
        "Resolved %d provinces, %d localities (%d dropped), %d/%d stations linked",
        len(provinces),
        len(localities),
        len(unresolved),
        result.linked_count,
        len(extraction.stations),
    )
    return result
