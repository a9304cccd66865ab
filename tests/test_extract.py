"""Tests for the region extractors (itv_integration/extract.py)."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from itv_integration.contracts import CAT_CONTRACT, CV_CONTRACT, GAL_CONTRACT
from itv_integration.extract import (
    CV_SITE_URL,
    EXTRACTORS,
    CatalanExtractor,
    GalicianExtractor,
    ValencianExtractor,
    galician_province_code,
    get_extractor,
    station_name,
    strip_query_string,
)
from itv_integration.models import Locality, Province, StationType
from itv_integration.transform import adapt

_LEGACY = ("utf-8", "windows-1252")


def _cv_record(**overrides: object) -> dict[str, object]:
    record: dict[str, object] = {
        "TIPO ESTACIÓN": "Estación Fija",
        "PROVINCIA": "Valencia",
        "MUNICIPIO": "Gandia",
        "C.POSTAL": "46701",
        "DIRECCIÓN": "Calle Mayor 1",
        "Nº ESTACIÓN": 4602,
        "HORARIOS": "L-V",
        "CORREO": "itv4602@sitval.com",
    }
    record.update(overrides)
    return record


class TestRegistry:
    """Tests for extractor selection by region id."""

    def test_all_regions_registered(self) -> None:
        assert set(EXTRACTORS) == {"cv", "gal", "cat"}

    @pytest.mark.parametrize(
        ("region_id", "cls"),
        [
            ("cv", ValencianExtractor),
            ("gal", GalicianExtractor),
            ("cat", CatalanExtractor),
        ],
    )
    def test_get_extractor(self, region_id: str, cls: type) -> None:
        assert isinstance(get_extractor(region_id, []), cls)

    def test_unknown_region(self) -> None:
        with pytest.raises(KeyError, match="Valid regions: cv, gal, cat"):
            get_extractor("mad", [])


class TestSharedRules:
    """Tests for naming and URL helpers shared by the variants."""

    def test_station_name_from_locality(self) -> None:
        assert station_name("Alzira", 4601, 0) == "Estación ITV de Alzira"

    def test_station_name_synthetic_fallback(self) -> None:
        assert station_name(None, 4601, 0) == "Estación ITV 4601"
        assert station_name(None, None, 6) == "Estación ITV 7"

    def test_strip_query_string(self) -> None:
        assert strip_query_string("https://a.gal/cita?x=1&y=2") == "https://a.gal/cita"
        assert strip_query_string("Teléfono 986") == "Teléfono 986"
        assert strip_query_string(None) is None

    @pytest.mark.parametrize(
        ("name", "code"),
        [
            ("A Coruña", 15),
            ("CORUÑA", 15),
            ("Lugo", 27),
            ("Ourense", 32),
            ("Orense", 32),
            ("Pontevedra", 36),
            ("Madrid", None),
        ],
    )
    def test_galician_province_code(self, name: str, code: int | None) -> None:
        assert galician_province_code(name) == code


class TestValencianExtractor:
    """Tests for the Comunitat Valenciana JSON variant."""

    def test_provinces_normalized_and_deduped(self, cv_json: Path) -> None:
        records = adapt(cv_json, CV_CONTRACT).records
        provinces = ValencianExtractor(records).extract_provinces()
        assert provinces == [
            Province(46, "Valencia"),
            Province(3, "Alicante"),
            Province(12, "Castellón"),
        ]

    def test_typo_variants_share_one_code(self) -> None:
        records = [
            _cv_record(PROVINCIA="Aligante", MUNICIPIO="Elche"),
            _cv_record(PROVINCIA="Aliacnte", MUNICIPIO="Elda"),
        ]
        provinces = ValencianExtractor(records).extract_provinces()
        assert provinces == [Province(3, "Alicante")]

    def test_unknown_name_falls_back_to_postal_prefix(self) -> None:
        records = [_cv_record(PROVINCIA="Valènsia del Nord", **{"C.POSTAL": "46001"})]
        provinces = ValencianExtractor(records).extract_provinces()
        assert [p.code for p in provinces] == [46]

    def test_no_province_excluded(self) -> None:
        records = [_cv_record(PROVINCIA="", **{"C.POSTAL": ""})]
        extractor = ValencianExtractor(records)
        assert extractor.extract_provinces() == []
        assert extractor.extract_localities() == []

    def test_stations(self, cv_json: Path, fake_geocoder) -> None:
        fake_geocoder.answers = {
            "Polígono Industrial Tisneres, Alzira, Valencia, España": (
                -0.4351234567,
                39.1512345678,
            ),
        }
        records = adapt(cv_json, CV_CONTRACT).records
        stations = ValencianExtractor(records, fake_geocoder).extract_stations()

        first, second, mobile = stations
        assert first.name == "Estación ITV de Alzira"
        assert first.type is StationType.FIXED
        assert first.postal_code == 46600
        assert first.latitude == 39.151235
        assert first.longitude == -0.435123
        assert first.url == CV_SITE_URL
        assert first.contact == "itv4601@sitval.com"
        assert first.schedule == "L-V 7:00-21:00"
        assert first.description == "Descripción provisional de Estación ITV de Alzira"
        assert first.locality_code is None

        assert second.postal_code == 3203
        assert not second.has_coordinates

        assert mobile.name == "Estación ITV 1299"
        assert mobile.type is StationType.MOBILE
        assert mobile.postal_code is None

    def test_mobile_units_never_geocoded(self, cv_json: Path, fake_geocoder) -> None:
        records = adapt(cv_json, CV_CONTRACT).records
        ValencianExtractor(records, fake_geocoder).extract_stations()
        assert not any("agrícola" in q for q in fake_geocoder.queries)
        # Alzira and Elche: full address miss, then municipality fallback.
        assert len(fake_geocoder.queries) == 4
        assert "Elche, Alicante, España" in fake_geocoder.queries

    def test_stations_computed_once(self, fake_geocoder) -> None:
        extractor = ValencianExtractor([_cv_record()], fake_geocoder)
        extractor.extract()
        extractor.extract()
        assert len(fake_geocoder.queries) == 2

    def test_link_map_skips_records_without_municipality(self, cv_json: Path) -> None:
        records = adapt(cv_json, CV_CONTRACT).records
        assert ValencianExtractor(records).link_map() == {0: "Alzira", 1: "Elche"}


class TestGalicianExtractor:
    """Tests for the Galicia CSV variant."""

    @pytest.fixture()
    def extractor(self, gal_csv: Path) -> GalicianExtractor:
        records = adapt(gal_csv, GAL_CONTRACT, _LEGACY, ";").records
        return GalicianExtractor(records)

    def test_provinces(self, extractor: GalicianExtractor) -> None:
        assert extractor.extract_provinces() == [
            Province(36, "Pontevedra"),
            Province(32, "Ourense"),
        ]

    def test_one_locality_per_municipality(self, extractor: GalicianExtractor) -> None:
        assert extractor.extract_localities() == [
            Locality("Vigo", 36),
            Locality("San Cibrao das Viñas", 32),
        ]

    def test_stations(self, extractor: GalicianExtractor) -> None:
        vigo, balaidos, ourense = extractor.extract_stations()

        assert vigo.name == "Estación ITV de Vigo"
        assert vigo.type is StationType.FIXED
        assert (vigo.latitude, vigo.longitude) == (42.221893, -8.73217)
        assert vigo.url == "https://sycitv.com/cita"
        assert vigo.postal_code == 36211

        assert balaidos.latitude is None
        assert balaidos.longitude is None

        assert ourense.latitude == pytest.approx(42.314267, abs=1e-6)
        assert ourense.longitude == pytest.approx(-7.851667, abs=1e-6)
        assert ourense.url is None

    def test_link_map(self, extractor: GalicianExtractor) -> None:
        assert extractor.link_map() == {
            0: "Vigo",
            1: "Vigo",
            2: "San Cibrao das Viñas",
        }

    def test_province_from_postal_when_name_unknown(self, caplog) -> None:
        record = {
            "NOME DA ESTACIÓN": "ITV Lugo",
            "CONCELLO": "Lugo",
            "CÓDIGO POSTAL": "27003",
            "PROVINCIA": "Luga",
        }
        with caplog.at_level(logging.WARNING):
            provinces = GalicianExtractor([record]).extract_provinces()
        assert provinces == [Province(27, "Lugo")]
        assert "Unrecognized Galician province" in caplog.text

    def test_missing_name_uses_locality(self) -> None:
        record = {"NOME DA ESTACIÓN": "", "CONCELLO": "Lugo", "PROVINCIA": "Lugo"}
        (station,) = GalicianExtractor([record]).extract_stations()
        assert station.name == "Estación ITV de Lugo"


class TestCatalanExtractor:
    """Tests for the Catalunya XML variant."""

    @pytest.fixture()
    def extractor(self, cat_xml: Path) -> CatalanExtractor:
        return CatalanExtractor(adapt(cat_xml, CAT_CONTRACT).records)

    def test_provinces_from_postal_prefix(self, extractor: CatalanExtractor) -> None:
        assert extractor.extract_provinces() == [
            Province(8, "Barcelona"),
            Province(43, "Tarragona"),
        ]

    def test_unknown_province_name(self) -> None:
        record = {"estaci": "1", "cp": "17001", "municipi": "Girona"}
        assert CatalanExtractor([record]).extract_provinces() == [
            Province(17, "Desconocida")
        ]

    def test_fixed_point_coordinates_rescaled(self, extractor: CatalanExtractor) -> None:
        zona_franca, reus = extractor.extract_stations()
        assert zona_franca.latitude == pytest.approx(41.3466)
        assert zona_franca.longitude == pytest.approx(2.1412)
        assert reus.latitude == pytest.approx(41.1498)

    def test_station_fields(self, extractor: CatalanExtractor) -> None:
        zona_franca, reus = extractor.extract_stations()
        assert zona_franca.name == "Estación ITV de Barcelona (Zona Franca)"
        assert zona_franca.postal_code == 8040
        assert zona_franca.url == "https://www.applusitv.cat"
        assert zona_franca.contact == "zonafranca@applus.com"
        assert reus.url is None

    def test_out_of_range_coordinates_nulled(self) -> None:
        record = {"denominaci": "X", "cp": "08001", "lat": "412.1", "long": "2.1"}
        (station,) = CatalanExtractor([record]).extract_stations()
        assert not station.has_coordinates

    @pytest.mark.parametrize(("lat", "long"), [("NaN", "1.1"), ("41.1", "Infinity")])
    def test_non_finite_coordinates_nulled(self, lat: str, long: str) -> None:
        record = {"denominaci": "Reus", "cp": "43206", "lat": lat, "long": long}
        (station,) = CatalanExtractor([record]).extract_stations()
        assert station.latitude is None
        assert station.longitude is None

    def test_extract_bundles_everything(self, extractor: CatalanExtractor) -> None:
        result = extractor.extract()
        assert len(result.stations) == 2
        assert [loc.name for loc in result.localities] == ["Barcelona", "Reus"]
        assert result.link_map == {0: "Barcelona", 1: "Reus"}
