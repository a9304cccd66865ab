"""Shared pytest fixtures for the ITV integration tests.

Generates regional source files programmatically to avoid committing data
files: Valencian JSON, Galician semicolon CSV in Latin-1 bytes and the
Catalan Socrata XML with its nested container row.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest

from itv_integration.models import Station, StationType

if TYPE_CHECKING:
    from pathlib import Path

# ---------------------------------------------------------------------------
# Comunitat Valenciana (JSON)
# ---------------------------------------------------------------------------

CV_RECORDS: list[dict[str, Any]] = [
    {
        "TIPO ESTACIÓN": "Estación Fija",
        "PROVINCIA": "Valencia",
        "MUNICIPIO": "Alzira",
        "C.POSTAL": "46600",
        "DIRECCIÓN": "Polígono Industrial Tisneres",
        "Nº ESTACIÓN": 4601,
        "HORARIOS": "L-V 7:00-21:00",
        "CORREO": "itv4601@sitval.com",
    },
    {
        "TIPO ESTACIÓN": "Estación Fija",
        "PROVINCIA": "Aligante",
        "MUNICIPIO": "Elche",
        "C.POSTAL": 3203,
        "DIRECCIÓN": "Carrer de la Industria 5",
        "Nº ESTACIÓN": 301,
        "HORARIOS": "L-V 8:00-20:00",
        "CORREO": "itv0301@sitval.com",
    },
    {
        "TIPO ESTACIÓN": "Estación Móvil",
        "PROVINCIA": "Castelló",
        "MUNICIPIO": "",
        "C.POSTAL": "",
        "DIRECCIÓN": "Unidad móvil agrícola",
        "Nº ESTACIÓN": 1299,
        "HORARIOS": "",
        "CORREO": "itv1299@sitval.com",
    },
]

# ---------------------------------------------------------------------------
# Galicia (semicolon CSV, Latin-1)
# ---------------------------------------------------------------------------

GAL_HEADERS: list[str] = [
    "NOME DA ESTACIÓN",
    "ENDEREZO",
    "CONCELLO",
    "CÓDIGO POSTAL",
    "PROVINCIA",
    "TELÉFONO",
    "HORARIO",
    "SOLICITUDE DE CITA PREVIA",
    "CORREO ELECTRÓNICO",
    "COORDENADAS GMAPS",
]

GAL_ROWS: list[list[str]] = [
    [
        "Estación ITV de Vigo",
        "Rúa Pedro Alvarado 5",
        "Vigo",
        "36211",
        "Pontevedra",
        "986 000 000",
        "L-V 8:00-20:00",
        "https://sycitv.com/cita?estacion=3601",
        "vigo@sycitv.com",
        "42.221893,-8.732170",
    ],
    [
        "Estación ITV de Vigo-Balaídos",
        "Avda. Citroën s/n",
        "Vigo",
        "36210",
        "Pontevedra",
        "986 000 001",
        "L-V 7:00-21:00",
        "https://sycitv.com/cita?estacion=3602",
        "balaidos@sycitv.com",
        "412.135887,-8.788971",
    ],
    [
        "Estación ITV de Ourense",
        "Polígono San Cibrao",
        "San Cibrao das Viñas",
        "32901",
        "Orense",
        "988 000 000",
        "L-V 8:00-15:00",
        "",
        "ourense@sycitv.com",
        "42° 18.856', -7° 51.100'",
    ],
]


def _delimited_text(headers: list[str], rows: list[list[str]], delimiter: str) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Catalunya (Socrata XML)
# ---------------------------------------------------------------------------

CAT_XML: str = """<?xml version="1.0" encoding="UTF-8"?>
<response>
  <row>
    <row _id="row-1" _uuid="00000000-0000-0000-0000-000000000001">
      <estaci>0801</estaci>
      <denominaci>Barcelona (Zona Franca)</denominaci>
      <operador>Applus</operador>
      <adre_a>Carrer A, 12</adre_a>
      <cp>08040</cp>
      <municipi>Barcelona</municipi>
      <lat>41346600</lat>
      <long>2141200</long>
      <geocoded_column latitude="41.3466" longitude="2.1412"/>
      <serveis_territorials>Barcelona</serveis_territorials>
      <horari_de_servei>L-V 7:00-21:00</horari_de_servei>
      <correu_electr_nic>zonafranca@applus.com</correu_electr_nic>
      <web url="https://www.applusitv.cat"/>
    </row>
    <row _id="row-2" _uuid="00000000-0000-0000-0000-000000000002">
      <estaci>4301</estaci>
      <denominaci>Reus</denominaci>
      <operador>ITV Catalunya</operador>
      <adre_a>Polígon Agroreus</adre_a>
      <cp>43206</cp>
      <municipi>Reus</municipi>
      <lat>41.1498</lat>
      <long>1.1055</long>
      <serveis_territorials>Tarragona</serveis_territorials>
      <horari_de_servei>L-V 8:00-20:00</horari_de_servei>
      <correu_electr_nic>reus@itvcat.cat</correu_electr_nic>
      <web>www.itvcat.cat</web>
    </row>
  </row>
</response>
"""


# ---------------------------------------------------------------------------
# File fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cv_json(tmp_path: Path) -> Path:
    """Valencian registry as a UTF-8 JSON array."""
    path = tmp_path / "estaciones.json"
    path.write_text(json.dumps(CV_RECORDS, ensure_ascii=False), encoding="utf-8")
    return path


@pytest.fixture()
def gal_csv(tmp_path: Path) -> Path:
    """Galician registry as a semicolon CSV encoded in ISO-8859-1."""
    path = tmp_path / "estaciones.csv"
    text = _delimited_text(GAL_HEADERS, GAL_ROWS, ";")
    path.write_bytes(text.encode("iso-8859-1"))
    return path


@pytest.fixture()
def cat_xml(tmp_path: Path) -> Path:
    """Catalan registry as a Socrata XML export with a container row."""
    path = tmp_path / "estaciones.xml"
    path.write_text(CAT_XML, encoding="utf-8")
    return path


@pytest.fixture()
def gal_e2e_csv(tmp_path: Path) -> Path:
    """Three Galician records: shared municipality, bad coordinates, no province."""
    rows = [
        [
            "ITV Vigo Norte",
            "Rúa 1",
            "Vigo",
            "36211",
            "Pontevedra",
            "",
            "L-V",
            "",
            "norte@itv.gal",
            "42.135887,-8.788971",
        ],
        [
            "ITV Vigo Sur",
            "Rúa 2",
            "Vigo",
            "36210",
            "Pontevedra",
            "",
            "L-V",
            "",
            "sur@itv.gal",
            "not-a-coordinate",
        ],
        [
            "ITV Sen Provincia",
            "Rúa 3",
            "Lalín",
            "",
            "",
            "",
            "L-V",
            "",
            "lalin@itv.gal",
            "42.661000,-8.110000",
        ],
    ]
    path = tmp_path / "e2e.csv"
    path.write_bytes(_delimited_text(GAL_HEADERS, rows, ";").encode("utf-8"))
    return path


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_station() -> Callable[..., Station]:
    """Factory for a valid FIXED station; override fields by keyword."""

    def _make(**overrides: Any) -> Station:
        values: dict[str, Any] = {
            "name": "Estación ITV de Vigo",
            "type": StationType.FIXED,
            "address": "Rúa Pedro Alvarado 5",
            "postal_code": 36211,
            "longitude": -8.73217,
            "latitude": 42.221893,
            "description": "Descripción provisional de Estación ITV de Vigo",
            "schedule": "L-V 8:00-20:00",
            "contact": "vigo@sycitv.com",
            "url": "https://sycitv.com/cita",
            "locality_code": 1,
        }
        values.update(overrides)
        return Station(**values)

    return _make


class FakeGeocoder:
    """Geocoder double returning canned answers and recording queries."""

    def __init__(
        self,
        answers: dict[str, tuple[float | None, float | None]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.answers = answers or {}
        self.error = error
        self.queries: list[str] = []

    def lookup(self, text: str) -> tuple[float | None, float | None]:
        self.queries.append(text)
        if self.error is not None:
            raise self.error
        return self.answers.get(text, (None, None))


@pytest.fixture()
def fake_geocoder() -> FakeGeocoder:
    """Geocoder that misses every lookup unless answers are added."""
    return FakeGeocoder()
