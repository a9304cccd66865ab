"""Field contract definitions for the regional ITV registries.

Each contract names the source fields the region extractor reads and the
minimal field set that identifies a genuine station record. The adapter
uses the marker fields to discard container nodes in nested markup (the
Catalan XML wraps its station rows inside a parent ``<row>``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final


@dataclass(frozen=True, slots=True)
class RecordContract:
    """Source field layout for one regional registry.

    Attributes:
        region_id: Region identifier matching config.py ids.
        fields: Source field names read by the extractor.
        marker_fields: At least one must be present for a node to count as
            a station record rather than a container.
        record_tag: Element name of repeatable record nodes (markup only).
        skipped_tags: Child elements that never carry station data.
        wrapper_key: Key holding the record array when a structured source
            wraps it in an object.
    """

    region_id: str
    fields: tuple[str, ...]
    marker_fields: frozenset[str]
    record_tag: str = "row"
    skipped_tags: frozenset[str] = frozenset()
    wrapper_key: str | None = None


# ---------------------------------------------------------------------------
# Comunitat Valenciana: JSON array exported from the regional open-data
# portal. Postal codes arrive as text; there are no coordinates.
# ---------------------------------------------------------------------------
CV_CONTRACT: Final[RecordContract] = RecordContract(
    region_id="cv",
    fields=(
        "TIPO ESTACIÓN",
        "PROVINCIA",
        "MUNICIPIO",
        "C.POSTAL",
        "DIRECCIÓN",
        "Nº ESTACIÓN",
        "HORARIOS",
        "CORREO",
    ),
    marker_fields=frozenset({"Nº ESTACIÓN", "MUNICIPIO", "DIRECCIÓN"}),
)

# ---------------------------------------------------------------------------
# Galicia: semicolon-delimited CSV in a legacy code page. Coordinates are a
# single "lat, lon" text field in decimal or degree-minute notation.
# ---------------------------------------------------------------------------
GAL_CONTRACT: Final[RecordContract] = RecordContract(
    region_id="gal",
    fields=(
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
    ),
    marker_fields=frozenset({"NOME DA ESTACIÓN", "CONCELLO"}),
)

# ---------------------------------------------------------------------------
# Catalunya: Socrata XML export, <response><row><row>...</row></row>.
# Coordinates may be fixed-point integers (degrees * 1e6).
# ---------------------------------------------------------------------------
CAT_CONTRACT: Final[RecordContract] = RecordContract(
    region_id="cat",
    fields=(
        "estaci",
        "denominaci",
        "operador",
        "adre_a",
        "cp",
        "municipi",
        "codi_municipi",
        "tel_atenc_public",
        "lat",
        "long",
        "serveis_territorials",
        "horari_de_servei",
        "correu_electr_nic",
        "web",
    ),
    marker_fields=frozenset({"estaci", "denominaci", "municipi"}),
    skipped_tags=frozenset({"geocoded_column"}),
)

# ---------------------------------------------------------------------------
# Contract registry keyed by region id. Keys match RegionConfig.id values.
# ---------------------------------------------------------------------------
CONTRACTS: Final[dict[str, RecordContract]] = {
    CV_CONTRACT.region_id: CV_CONTRACT,
    GAL_CONTRACT.region_id: GAL_CONTRACT,
    CAT_CONTRACT.region_id: CAT_CONTRACT,
}
