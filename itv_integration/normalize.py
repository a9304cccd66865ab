"""Normalization helpers shared by every region extractor.

Covers four recurring problems in the regional registries:

1. Diacritic- and case-insensitive text matching (province names, station
   types, mobile-unit addresses).
2. Postal-code parsing and province inference from the two-digit prefix.
3. Province-name typo correction before deduplication.
4. Coordinate parsing for decimal and degree-minute pairs, fixed-point
   rescaling, range checks and 6-decimal rounding.

Parsing failures never raise: they are logged and degrade to None.
"""

from __future__ import annotations

import logging
import math
import re
import unicodedata
from typing import Final, NamedTuple

logger: Final[logging.Logger] = logging.getLogger(__name__)

_POSTAL_CODE_WIDTH: Final[int] = 5
_MIN_PROVINCE_PREFIX: Final[int] = 1
_MAX_PROVINCE_PREFIX: Final[int] = 52

_MAX_LATITUDE: Final[float] = 90.0
_MAX_LONGITUDE: Final[float] = 180.0
# Latitudes this large are a dropped/duplicated digit in the source
# (412.13 for 42.13), not a merely out-of-range value.
_SOURCE_ERROR_LATITUDE: Final[float] = 100.0
_COORDINATE_DECIMALS: Final[int] = 6

_FIXED_POINT_THRESHOLD: Final[float] = 1_000_000.0
_FIXED_POINT_SCALE: Final[float] = 1_000_000.0

_DEGREE_MINUTE_GLYPHS: Final[re.Pattern[str]] = re.compile(r"[°º'\"’′″]")
_NON_NUMERIC: Final[re.Pattern[str]] = re.compile(r"[^0-9.\-]")

_MOBILE_ADDRESS_TOKENS: Final[tuple[str, ...]] = ("movil", "agricola")

# Known spelling variants keyed by their folded form.
_PROVINCE_NAME_FIXES: Final[dict[str, str]] = {
    "aligante": "Alicante",
    "aliacnte": "Alicante",
    "valencia": "Valencia",
    "castello": "Castellón",
    "castellon": "Castellón",
}


class Coordinates(NamedTuple):
    """Latitude/longitude pair; both None when unknown or rejected."""

    latitude: float | None
    longitude: float | None


NO_COORDINATES: Final[Coordinates] = Coordinates(None, None)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def strip_accents(text: str) -> str:
    """Remove combining diacritics (``"Castellón"`` -> ``"Castellon"``)."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fold(text: str) -> str:
    """Lower-case, accent-free, trimmed form used for all text matching."""
    return strip_accents(text).casefold().strip()


def clean_text(value: object) -> str | None:
    """Return a trimmed string, or None for missing/blank values."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_mobile_or_agricultural(address: str | None) -> bool:
    """Return True for addresses describing mobile or agricultural units.

    Such stations have no fixed location, so coordinate lookup is skipped.
    """
    if address is None:
        return False
    folded = fold(address)
    return any(token in folded for token in _MOBILE_ADDRESS_TOKENS)


def normalize_province_name(name: str | None) -> str | None:
    """Collapse known regional spellings of a province to one name.

    Idempotent: canonical names map to themselves, unknown names are only
    trimmed.
    """
    if name is None:
        return None
    trimmed = name.strip()
    return _PROVINCE_NAME_FIXES.get(fold(trimmed), trimmed)


# ---------------------------------------------------------------------------
# Postal codes
# ---------------------------------------------------------------------------


def parse_postal_code(value: object) -> int | None:
    """Parse a postal code published as text, int or float.

    Returns:
        Integer postal code, or None when blank or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text) if "." in text else int(text)
    except ValueError:
        logger.warning("Unparseable postal code: %r", value)
        return None
    if isinstance(number, float):
        if not number.is_integer():
            logger.warning("Non-integral postal code: %r", value)
            return None
        return int(number)
    return number


def zero_padded_postal(postal_code: int) -> str:
    """Format a postal code with leading zeros (3001 -> ``"03001"``)."""
    return f"{postal_code:0{_POSTAL_CODE_WIDTH}d}"


def province_code_from_postal(postal_code: int | None) -> int | None:
    """Infer the province code from the first two postal-code digits.

    Returns:
        The prefix as an int when it lies in 1..52, otherwise None.
    """
    if postal_code is None or postal_code < 0:
        return None
    padded = zero_padded_postal(postal_code)
    if len(padded) != _POSTAL_CODE_WIDTH:
        return None
    prefix = int(padded[:2])
    if _MIN_PROVINCE_PREFIX <= prefix <= _MAX_PROVINCE_PREFIX:
        return prefix
    return None


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------


def rescale_fixed_point(value: float | None) -> float | None:
    """Convert large integers encoding fixed-point degrees (41385063 -> 41.385063).

    Detection is by magnitude only; ordinary decimal degrees pass through.
    """
    if value is None:
        return None
    if abs(value) > _FIXED_POINT_THRESHOLD:
        return value / _FIXED_POINT_SCALE
    return value


def checked_pair(
    latitude: float | None,
    longitude: float | None,
    source: str = "",
) -> Coordinates:
    """Range-check and round a coordinate pair.

    A pair with either component outside the global bounds is rejected as a
    whole. Accepted values are rounded to 6 decimals (~10 cm).
    """
    for value in (latitude, longitude):
        if value is not None and not math.isfinite(value):
            logger.warning("Non-finite coordinate %s: %r", value, source)
            return NO_COORDINATES
    if latitude is not None and abs(latitude) > _MAX_LATITUDE:
        if abs(latitude) > _SOURCE_ERROR_LATITUDE:
            logger.error(
                "Impossible latitude %s in source data (probable missing "
                "digit): %r",
                latitude,
                source,
            )
        else:
            logger.warning("Latitude %s outside [-90, 90]: %r", latitude, source)
        return NO_COORDINATES
    if longitude is not None and abs(longitude) > _MAX_LONGITUDE:
        logger.warning("Longitude %s outside [-180, 180]: %r", longitude, source)
        return NO_COORDINATES
    return Coordinates(
        latitude=_round(latitude),
        longitude=_round(longitude),
    )


def _round(value: float | None) -> float | None:
    if value is None:
        return None
    return round(value, _COORDINATE_DECIMALS)


def parse_coordinate(text: str) -> float | None:
    """Parse one coordinate in decimal or degree-minute notation.

    ``"43° 18.856'"`` -> 43.314267 and ``"-8° 17.165'"`` -> -8.286083:
    minutes carry the sign of the degrees.

    Raises:
        ValueError: If the text is not a number in either notation.
    """
    text = text.strip()
    if "°" not in text and "º" not in text and "'" not in text:
        return float(text)

    bare = _DEGREE_MINUTE_GLYPHS.sub(" ", text).strip()
    parts = bare.split()
    if len(parts) != 2:
        logger.warning("Malformed degree-minute value %r, reading as decimal", text)
        return float(_NON_NUMERIC.sub("", bare))

    degrees = float(parts[0])
    minutes = float(parts[1])
    if parts[0].startswith("-"):
        return degrees - minutes / 60.0
    return degrees + minutes / 60.0


def parse_coordinate_pair(text: str | None) -> Coordinates:
    """Parse a ``"lat,lon"`` pair in decimal or degree-minute notation.

    Any malformed input, out-of-range value or parse exception yields
    ``Coordinates(None, None)`` and a logged warning.
    """
    if text is None or not text.strip():
        return NO_COORDINATES

    parts = text.split(",")
    if len(parts) != 2:
        logger.warning("Invalid coordinate pair (expected 'lat,lon'): %r", text)
        return NO_COORDINATES

    try:
        latitude = parse_coordinate(parts[0])
        longitude = parse_coordinate(parts[1])
    except ValueError as exc:
        logger.warning("Cannot parse coordinates %r: %s", text, exc)
        return NO_COORDINATES

    return checked_pair(latitude, longitude, source=text)


def parse_float(value: object) -> float | None:
    """Parse a numeric field that may arrive as text with a decimal comma."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(",", ".")
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        logger.warning("Unparseable numeric value: %r", value)
        return None
