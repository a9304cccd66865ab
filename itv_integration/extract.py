"""Region extractors: canonical records to Province, Locality and Station.

One extractor per regional registry, all satisfying the ``RegionExtractor``
protocol and selected at run time by region id through ``EXTRACTORS``.
Adding a region means one class plus one registry entry.

Rules shared by every variant:

1. Localities are emitted once per distinct non-empty municipality, with the
   province derived from the first record that yields one. A municipality
   whose records carry no usable province is skipped and logged.
2. The link map sends each station index (input order) to the municipality
   it was built from.
3. Description is ``"Descripción provisional de <name>"``.
4. Bad field values degrade to None with a warning; they never abort the
   extraction.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Final, Protocol

from itv_integration.geocode import Geocoder, NullGeocoder, resolve_coordinates
from itv_integration.models import (
    ExtractionResult,
    LinkMap,
    Locality,
    Province,
    Station,
    StationType,
)
from itv_integration.normalize import (
    checked_pair,
    clean_text,
    fold,
    normalize_province_name,
    parse_coordinate_pair,
    parse_float,
    parse_postal_code,
    province_code_from_postal,
    rescale_fixed_point,
)
from itv_integration.transform import Record

logger: Final[logging.Logger] = logging.getLogger(__name__)

_UNKNOWN_PROVINCE: Final[str] = "Desconocida"
_GEOCODING_PROGRESS_EVERY: Final[int] = 10

ProvinceOf = Callable[[Record], Province | None]
MunicipalityOf = Callable[[Record], str | None]


class RegionExtractor(Protocol):
    """Capability set every region variant provides."""

    region_id: str

    def extract_provinces(self) -> list[Province]: ...

    def extract_localities(self) -> list[Locality]: ...

    def extract_stations(self) -> list[Station]: ...

    def link_map(self) -> LinkMap: ...

    def extract(self) -> ExtractionResult: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def station_name(prefix_name: str | None, identifier: object, index: int) -> str:
    """Build ``"Estación ITV de X"``, falling back to a synthetic identifier."""
    if prefix_name:
        return f"Estación ITV de {prefix_name}"
    ident = clean_text(identifier)
    return f"Estación ITV {ident}" if ident else f"Estación ITV {index + 1}"


def provisional_description(name: str) -> str:
    return f"Descripción provisional de {name}"


def collect_provinces(
    records: Sequence[Record], province_of: ProvinceOf
) -> list[Province]:
    """Derive one Province per code, first-seen name winning."""
    seen: dict[int, Province] = {}
    for record in records:
        province = province_of(record)
        if province is None:
            continue
        existing = seen.get(province.code)
        if existing is None:
            seen[province.code] = province
        elif existing.name != province.name:
            logger.debug(
                "Province %d seen as %r and %r; keeping first",
                province.code,
                existing.name,
                province.name,
            )
    return list(seen.values())


def collect_localities(
    records: Sequence[Record],
    municipality_of: MunicipalityOf,
    province_of: ProvinceOf,
) -> list[Locality]:
    """Emit at most one Locality per distinct municipality name."""
    localities: list[Locality] = []
    emitted: set[str] = set()
    skipped: set[str] = set()
    for record in records:
        municipality = municipality_of(record)
        if municipality is None or municipality in emitted:
            continue
        province = province_of(record)
        if province is None:
            skipped.add(municipality)
            continue
        localities.append(Locality(name=municipality, province_code=province.code))
        emitted.add(municipality)

    for municipality in sorted(skipped - emitted):
        logger.warning(
            "Skipping locality %r: no province could be derived", municipality
        )
    return localities


def build_link_map(
    records: Sequence[Record], municipality_of: MunicipalityOf
) -> LinkMap:
    """Map station index to municipality for records that name one."""
    link_map: LinkMap = {}
    for index, record in enumerate(records):
        municipality = municipality_of(record)
        if municipality is not None:
            link_map[index] = municipality
    return link_map


def _field(record: Record, name: str) -> str | None:
    return clean_text(record.get(name))


# ---------------------------------------------------------------------------
# Comunitat Valenciana
# ---------------------------------------------------------------------------

_CV_PROVINCES: Final[dict[str, int]] = {
    "Alicante": 3,
    "Castellón": 12,
    "Valencia": 46,
}
CV_SITE_URL: Final[str] = "https://www.sitval.com"


class ValencianExtractor:
    """JSON registry with province names, text postal codes and no coordinates.

    Coordinates are resolved per station through the geocoding strategy.
    """

    region_id = "cv"

    def __init__(
        self, records: Sequence[Record], geocoder: Geocoder | None = None
    ) -> None:
        self._records = list(records)
        self._geocoder = geocoder if geocoder is not None else NullGeocoder()
        self._stations: list[Station] | None = None

    def _municipality(self, record: Record) -> str | None:
        return _field(record, "MUNICIPIO")

    def _province(self, record: Record) -> Province | None:
        raw_name = _field(record, "PROVINCIA")
        name = normalize_province_name(raw_name)
        if name is not None:
            code = _CV_PROVINCES.get(name)
            if code is not None:
                return Province(code=code, name=name)

        code = province_code_from_postal(parse_postal_code(record.get("C.POSTAL")))
        if code is not None:
            return Province(code=code, name=name or _UNKNOWN_PROVINCE)

        logger.debug(
            "No province for CV record %s (PROVINCIA=%r, C.POSTAL=%r)",
            record.get("Nº ESTACIÓN"),
            raw_name,
            record.get("C.POSTAL"),
        )
        return None

    def extract_provinces(self) -> list[Province]:
        return collect_provinces(self._records, self._province)

    def extract_localities(self) -> list[Locality]:
        return collect_localities(self._records, self._municipality, self._province)

    def extract_stations(self) -> list[Station]:
        if self._stations is None:
            self._stations = self._build_stations()
        return self._stations

    def _build_stations(self) -> list[Station]:
        stations: list[Station] = []
        total = len(self._records)
        for index, record in enumerate(self._records):
            municipality = self._municipality(record)
            address = _field(record, "DIRECCIÓN")
            province = normalize_province_name(_field(record, "PROVINCIA"))
            name = station_name(municipality, record.get("Nº ESTACIÓN"), index)

            longitude, latitude = resolve_coordinates(
                self._geocoder, address, municipality, province
            )
            coords = checked_pair(latitude, longitude, source=name)

            stations.append(
                Station(
                    name=name,
                    type=StationType.from_text(_field(record, "TIPO ESTACIÓN")),
                    address=address,
                    postal_code=parse_postal_code(record.get("C.POSTAL")),
                    longitude=coords.longitude,
                    latitude=coords.latitude,
                    description=provisional_description(name),
                    schedule=_field(record, "HORARIOS"),
                    contact=_field(record, "CORREO"),
                    url=CV_SITE_URL,
                )
            )
            if (index + 1) % _GEOCODING_PROGRESS_EVERY == 0:
                logger.info("CV stations processed: %d/%d", index + 1, total)
        return stations

    def link_map(self) -> LinkMap:
        return build_link_map(self._records, self._municipality)

    def extract(self) -> ExtractionResult:
        return ExtractionResult(
            provinces=self.extract_provinces(),
            localities=self.extract_localities(),
            stations=self.extract_stations(),
            link_map=self.link_map(),
        )


# ---------------------------------------------------------------------------
# Galicia
# ---------------------------------------------------------------------------

# Folded substring -> (code, canonical name).
_GAL_PROVINCES: Final[tuple[tuple[str, int, str], ...]] = (
    ("coruna", 15, "A Coruña"),
    ("lugo", 27, "Lugo"),
    ("ourense", 32, "Ourense"),
    ("orense", 32, "Ourense"),
    ("pontevedra", 36, "Pontevedra"),
)
_GAL_NAMES_BY_CODE: Final[dict[int, str]] = {
    code: name for _, code, name in _GAL_PROVINCES
}


def galician_province_code(name: str | None) -> int | None:
    """Map a Galician province name in any spelling to its code."""
    if name is None:
        return None
    folded = fold(name)
    for token, code, _ in _GAL_PROVINCES:
        if token in folded:
            return code
    return None


def strip_query_string(url: str | None) -> str | None:
    """Drop everything from the first ``?`` of an http(s) URL."""
    if url is None:
        return None
    if url.startswith("http"):
        return url.split("?", 1)[0]
    return url


class GalicianExtractor:
    """Semicolon CSV registry with inline degree-minute or decimal coordinates."""

    region_id = "gal"

    def __init__(
        self, records: Sequence[Record], geocoder: Geocoder | None = None
    ) -> None:
        # Coordinates are inline; geocoder unused.
        self._records = list(records)

    def _municipality(self, record: Record) -> str | None:
        return _field(record, "CONCELLO")

    def _province(self, record: Record) -> Province | None:
        raw_name = _field(record, "PROVINCIA")
        code = galician_province_code(raw_name)
        if code is None:
            if raw_name is not None:
                logger.warning("Unrecognized Galician province %r", raw_name)
            code = province_code_from_postal(
                parse_postal_code(record.get("CÓDIGO POSTAL"))
            )
            if code is None:
                return None
        name = _GAL_NAMES_BY_CODE.get(code) or raw_name or _UNKNOWN_PROVINCE
        return Province(code=code, name=name)

    def extract_provinces(self) -> list[Province]:
        return collect_provinces(self._records, self._province)

    def extract_localities(self) -> list[Locality]:
        return collect_localities(self._records, self._municipality, self._province)

    def extract_stations(self) -> list[Station]:
        stations: list[Station] = []
        for index, record in enumerate(self._records):
            name = _field(record, "NOME DA ESTACIÓN") or station_name(
                self._municipality(record), None, index
            )
            coords = parse_coordinate_pair(_field(record, "COORDENADAS GMAPS"))
            stations.append(
                Station(
                    name=name,
                    type=StationType.FIXED,
                    address=_field(record, "ENDEREZO"),
                    postal_code=parse_postal_code(record.get("CÓDIGO POSTAL")),
                    longitude=coords.longitude,
                    latitude=coords.latitude,
                    description=provisional_description(name),
                    schedule=_field(record, "HORARIO"),
                    contact=_field(record, "CORREO ELECTRÓNICO"),
                    url=strip_query_string(_field(record, "SOLICITUDE DE CITA PREVIA")),
                )
            )
        return stations

    def link_map(self) -> LinkMap:
        return build_link_map(self._records, self._municipality)

    def extract(self) -> ExtractionResult:
        return ExtractionResult(
            provinces=self.extract_provinces(),
            localities=self.extract_localities(),
            stations=self.extract_stations(),
            link_map=self.link_map(),
        )


# ---------------------------------------------------------------------------
# Catalunya
# ---------------------------------------------------------------------------


class CatalanExtractor:
    """Socrata XML registry; province by postal prefix, fixed-point coordinates."""

    region_id = "cat"

    def __init__(
        self, records: Sequence[Record], geocoder: Geocoder | None = None
    ) -> None:
        self._records = list(records)

    def _municipality(self, record: Record) -> str | None:
        return _field(record, "municipi")

    def _province(self, record: Record) -> Province | None:
        code = province_code_from_postal(parse_postal_code(record.get("cp")))
        if code is None:
            return None
        name = _field(record, "serveis_territorials") or _UNKNOWN_PROVINCE
        return Province(code=code, name=name)

    def _coordinates(self, record: Record, name: str) -> tuple[float | None, float | None]:
        latitude = rescale_fixed_point(parse_float(record.get("lat")))
        longitude = rescale_fixed_point(parse_float(record.get("long")))
        coords = checked_pair(latitude, longitude, source=name)
        return coords.latitude, coords.longitude

    def extract_provinces(self) -> list[Province]:
        return collect_provinces(self._records, self._province)

    def extract_localities(self) -> list[Locality]:
        return collect_localities(self._records, self._municipality, self._province)

    def extract_stations(self) -> list[Station]:
        stations: list[Station] = []
        for index, record in enumerate(self._records):
            name = station_name(
                _field(record, "denominaci"), record.get("estaci"), index
            )
            latitude, longitude = self._coordinates(record, name)
            web = _field(record, "web")
            stations.append(
                Station(
                    name=name,
                    type=StationType.FIXED,
                    address=_field(record, "adre_a"),
                    postal_code=parse_postal_code(record.get("cp")),
                    longitude=longitude,
                    latitude=latitude,
                    description=provisional_description(name),
                    schedule=_field(record, "horari_de_servei"),
                    contact=_field(record, "correu_electr_nic"),
                    url=web if web is not None and web.startswith("http") else None,
                )
            )
        return stations

    def link_map(self) -> LinkMap:
        return build_link_map(self._records, self._municipality)

    def extract(self) -> ExtractionResult:
        return ExtractionResult(
            provinces=self.extract_provinces(),
            localities=self.extract_localities(),
            stations=self.extract_stations(),
            link_map=self.link_map(),
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ExtractorFactory = Callable[[Sequence[Record], Geocoder | None], RegionExtractor]

EXTRACTORS: Final[dict[str, ExtractorFactory]] = {
    ValencianExtractor.region_id: ValencianExtractor,
    GalicianExtractor.region_id: GalicianExtractor,
    CatalanExtractor.region_id: CatalanExtractor,
}


def get_extractor(
    region_id: str,
    records: Sequence[Record],
    geocoder: Geocoder | None = None,
) -> RegionExtractor:
    """Instantiate the extractor registered for a region.

    Raises:
        KeyError: If no extractor is registered for ``region_id``.
    """
    try:
        extractor_cls = EXTRACTORS[region_id]
    except KeyError:
        valid = ", ".join(EXTRACTORS)
        raise KeyError(
            f"No extractor for region '{region_id}'. Valid regions: {valid}"
        ) from None
    return extractor_cls(records, geocoder)
