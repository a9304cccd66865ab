"""Station validation engine with one regional relaxation.

Every rule is evaluated independently and all violations are collected;
``validate_station`` never mutates its input.

Rules:
  1. Coordinates required, and inside the global range when present.
  2. Postal code required; when present it must be 5 digits zero-padded,
     with a province prefix in 1..52 and a value in 1000..52999.
  3. Contact required (non-blank).
  4. Locality link required for FIXED stations only.
  5. Name and type always required.

Rules 1-3 are waived by the regional mobile exception: MOBILE or OTHER
stations attributable to the Comunitat Valenciana, whose mobile units
legitimately lack a fixed address. The attribution heuristics are pinned
to the observed registry (postal prefixes 03/12/46, the ``@sitval.com``
contact domain, province names in the address or name) and are not
generalized.

Coordinates outside the usual Spanish bounds are logged, never rejected.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Final

from itv_integration.models import Station, StationType
from itv_integration.normalize import zero_padded_postal

logger: Final[logging.Logger] = logging.getLogger(__name__)

_MIN_POSTAL_CODE: Final[int] = 1_000
_MAX_POSTAL_CODE: Final[int] = 52_999
_MIN_PROVINCE_PREFIX: Final[int] = 1
_MAX_PROVINCE_PREFIX: Final[int] = 52

_SPAIN_LATITUDE: Final[tuple[float, float]] = (27.0, 44.0)
_SPAIN_LONGITUDE: Final[tuple[float, float]] = (-19.0, 5.0)

_EXCEPTION_PROVINCE_CODES: Final[frozenset[int]] = frozenset({3, 12, 46})
_EXCEPTION_EMAIL_DOMAIN: Final[str] = "@sitval.com"
_EXCEPTION_PLACE_NAMES: Final[tuple[str, ...]] = (
    "valencia",
    "alicante",
    "castellón",
    "castellon",
)


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


class ViolationRule(enum.Enum):
    """Identifies which rule a violation broke."""

    MISSING_COORDINATES = "missing_coordinates"
    COORDINATES_OUT_OF_RANGE = "coordinates_out_of_range"
    MISSING_POSTAL_CODE = "missing_postal_code"
    INVALID_POSTAL_CODE = "invalid_postal_code"
    MISSING_CONTACT = "missing_contact"
    MISSING_LOCALITY = "missing_locality"
    MISSING_NAME = "missing_name"
    MISSING_TYPE = "missing_type"


MANDATORY_FIELD_RULES: Final[frozenset[ViolationRule]] = frozenset(
    {
        ViolationRule.MISSING_COORDINATES,
        ViolationRule.MISSING_POSTAL_CODE,
        ViolationRule.MISSING_CONTACT,
    }
)


@dataclass(frozen=True, slots=True)
class ValidationViolation:
    """One broken rule for one station.

    Attributes:
        rule: The rule that failed.
        message: Human-readable detail for the operational log.
    """

    rule: ViolationRule
    message: str


@dataclass(slots=True)
class ScreeningResult:
    """Stations split into those fit to persist and those rejected.

    Attributes:
        accepted: Stations with no violations.
        rejected: (station, violations) pairs, in input order.
        corrected: Number of stations changed by auto-correction.
    """

    accepted: list[Station] = field(default_factory=list)
    rejected: list[tuple[Station, list[ValidationViolation]]] = field(
        default_factory=list
    )
    corrected: int = 0


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_regional_mobile_exception(station: Station) -> bool:
    """Return True for MOBILE/OTHER stations attributable to Valencia."""
    if station.type not in (StationType.MOBILE, StationType.OTHER):
        return False

    postal = station.postal_code
    if postal is not None and 0 <= postal <= 99_999:
        if int(zero_padded_postal(postal)[:2]) in _EXCEPTION_PROVINCE_CODES:
            return True

    if station.contact and _EXCEPTION_EMAIL_DOMAIN in station.contact:
        logger.debug("'%s' attributed to Valencia by contact domain", station.name)
        return True

    text = f"{station.address or ''} {station.name or ''}".lower()
    if any(place in text for place in _EXCEPTION_PLACE_NAMES):
        logger.debug("'%s' attributed to Valencia by place name", station.name)
        return True
    return False


def coordinates_in_range(latitude: float, longitude: float) -> bool:
    """Global WGS84 range check."""
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def postal_code_problem(postal_code: int) -> str | None:
    """Describe why a postal code is invalid, or None if it is valid."""
    if postal_code < 0:
        return f"negative postal code {postal_code}"
    padded = zero_padded_postal(postal_code)
    if len(padded) != 5:
        return f"postal code {postal_code} has more than 5 digits"
    prefix = int(padded[:2])
    if not _MIN_PROVINCE_PREFIX <= prefix <= _MAX_PROVINCE_PREFIX:
        return f"postal code {padded} has invalid province prefix {prefix:02d}"
    if not _MIN_POSTAL_CODE <= postal_code <= _MAX_POSTAL_CODE:
        return f"postal code {padded} outside 01000-52999"
    return None


def _warn_outside_spain(station: Station) -> None:
    lat, lon = station.latitude, station.longitude
    if lat is None or lon is None:
        return
    if not _SPAIN_LATITUDE[0] <= lat <= _SPAIN_LATITUDE[1]:
        logger.warning(
            "'%s': latitude %s outside typical Spanish range %s",
            station.name,
            lat,
            _SPAIN_LATITUDE,
        )
    if not _SPAIN_LONGITUDE[0] <= lon <= _SPAIN_LONGITUDE[1]:
        logger.warning(
            "'%s': longitude %s outside typical Spanish range %s",
            station.name,
            lon,
            _SPAIN_LONGITUDE,
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_station(station: Station) -> list[ValidationViolation]:
    """Evaluate every rule against a station.

    Args:
        station: Station to check; never modified.

    Returns:
        All violations found, empty when the station is valid.
    """
    violations: list[ValidationViolation] = []
    exempt = is_regional_mobile_exception(station)

    if station.latitude is None or station.longitude is None:
        if not exempt:
            violations.append(
                ValidationViolation(
                    ViolationRule.MISSING_COORDINATES,
                    f"coordinates missing (lat={station.latitude}, "
                    f"lon={station.longitude})",
                )
            )
    elif not coordinates_in_range(station.latitude, station.longitude):
        violations.append(
            ValidationViolation(
                ViolationRule.COORDINATES_OUT_OF_RANGE,
                f"coordinates out of range (lat={station.latitude}, "
                f"lon={station.longitude})",
            )
        )
    else:
        _warn_outside_spain(station)

    if station.postal_code is None:
        if not exempt:
            violations.append(
                ValidationViolation(
                    ViolationRule.MISSING_POSTAL_CODE, "postal code missing"
                )
            )
    else:
        problem = postal_code_problem(station.postal_code)
        if problem is not None:
            violations.append(
                ValidationViolation(ViolationRule.INVALID_POSTAL_CODE, problem)
            )

    if not (station.contact and station.contact.strip()) and not exempt:
        violations.append(
            ValidationViolation(ViolationRule.MISSING_CONTACT, "contact missing")
        )

    if station.locality_code is None and station.type is StationType.FIXED:
        violations.append(
            ValidationViolation(
                ViolationRule.MISSING_LOCALITY,
                "fixed station not linked to any locality",
            )
        )

    if not (station.name and station.name.strip()):
        violations.append(
            ValidationViolation(ViolationRule.MISSING_NAME, "station name empty")
        )
    if station.type is None:
        violations.append(
            ValidationViolation(ViolationRule.MISSING_TYPE, "station type missing")
        )

    return violations


def auto_correct(
    station: Station, violations: Iterable[ValidationViolation]
) -> Station:
    """Null out-of-range coordinates; change nothing else.

    Returns:
        A corrected copy when a coordinate-range violation is present,
        otherwise the station itself.
    """
    if not any(
        v.rule is ViolationRule.COORDINATES_OUT_OF_RANGE for v in violations
    ):
        return station
    logger.warning(
        "'%s': nulling out-of-range coordinates (lat=%s, lon=%s)",
        station.name,
        station.latitude,
        station.longitude,
    )
    return dataclasses.replace(station, latitude=None, longitude=None)


def format_violation_report(
    station: Station, violations: list[ValidationViolation]
) -> str:
    """Render a multi-line rejection report for the operational log."""
    postal = (
        zero_padded_postal(station.postal_code)
        if station.postal_code is not None
        else "NULL"
    )
    station_type = station.type.value if station.type is not None else "NULL"
    lines = [
        f"REJECTED STATION: {station.name}",
        f"   Type: {station_type}",
        f"   Address: {station.address}",
        f"   Postal code: {postal}",
        f"   Coordinates: lat={station.latitude}, lon={station.longitude}",
        f"   Contact: {station.contact}",
        f"   Locality code: {station.locality_code}",
        f"   Violations ({len(violations)}):",
    ]
    lines.extend(
        f"     {number}. {violation.message}"
        for number, violation in enumerate(violations, start=1)
    )
    return "\n".join(lines)


def screen_stations(
    stations: Iterable[Station], *, correct: bool = False
) -> ScreeningResult:
    """Validate a batch, optionally running the auto-correct pre-pass.

    With ``correct`` set, each station is validated, corrected if it has a
    coordinate-range violation, then validated again; only the second
    verdict counts.
    """
    result = ScreeningResult()
    for station in stations:
        violations = validate_station(station)
        if correct and violations:
            corrected = auto_correct(station, violations)
            if corrected is not station:
                result.corrected += 1
                station = corrected
                violations = validate_station(station)

        if violations:
            logger.warning("%s", format_violation_report(station, violations))
            result.rejected.append((station, violations))
        else:
            result.accepted.append(station)

    logger.info(
        "Validation: %d accepted, %d rejected, %d auto-corrected",
        len(result.accepted),
        len(result.rejected),
        result.corrected,
    )
    return result
