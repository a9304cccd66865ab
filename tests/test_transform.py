"""Tests for the canonical record adapter (itv_integration/transform.py)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from itv_integration.config import SourceFormat
from itv_integration.contracts import (
    CAT_CONTRACT,
    CV_CONTRACT,
    GAL_CONTRACT,
    RecordContract,
)
from itv_integration.transform import (
    EncodingError,
    FormatError,
    adapt,
    build_parser,
    decode_payload,
    detect_format,
    parse_delimited,
    parse_markup,
    parse_structured,
)

_LEGACY = ("utf-8", "windows-1252", "iso-8859-1")


class TestDetectFormat:
    """Tests for extension-based format detection."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("a.csv", SourceFormat.DELIMITED),
            ("a.XML", SourceFormat.MARKUP),
            ("a.json", SourceFormat.STRUCTURED),
        ],
    )
    def test_supported_extensions(self, name: str, expected: SourceFormat) -> None:
        assert detect_format(Path(name)) is expected

    def test_unsupported_extension(self) -> None:
        with pytest.raises(FormatError, match="Unsupported file format 'xlsx'"):
            detect_format(Path("estaciones.xlsx"))

    def test_missing_extension(self) -> None:
        with pytest.raises(FormatError, match="no extension"):
            detect_format(Path("estaciones"))


class TestParseDelimited:
    """Tests for header-plus-delimiter parsing."""

    def test_semicolon_records_in_order(self) -> None:
        text = "A;B;C\n1;2;3\n4;;6\n"
        records = parse_delimited(text, ";")
        assert records == [
            {"A": "1", "B": "2", "C": "3"},
            {"A": "4", "B": "", "C": "6"},
        ]

    def test_blank_rows_skipped(self) -> None:
        records = parse_delimited("A,B,C\n\n1,2,3\n,,\n", ",")
        assert len(records) == 1

    def test_wrong_delimiter_yields_single_field(self) -> None:
        records = parse_delimited("A;B;C\n1;2;3\n", ",")
        assert len(records[0]) == 1


class TestParseMarkup:
    """Tests for flattening Socrata-style nested rows."""

    def test_container_rows_dropped(self, cat_xml: Path) -> None:
        records = parse_markup(cat_xml.read_text(encoding="utf-8"), CAT_CONTRACT)
        assert [r["estaci"] for r in records] == ["0801", "4301"]

    def test_url_attribute_and_skipped_tags(self, cat_xml: Path) -> None:
        records = parse_markup(cat_xml.read_text(encoding="utf-8"), CAT_CONTRACT)
        first = records[0]
        assert first["web"] == "https://www.applusitv.cat"
        assert "geocoded_column" not in first
        assert "row" not in first

    def test_metadata_children_skipped(self) -> None:
        text = (
            "<response><row><_meta>x</_meta><estaci>1</estaci>"
            "<denominaci>A</denominaci><municipi>B</municipi></row></response>"
        )
        records = parse_markup(text, CAT_CONTRACT)
        assert records == [{"estaci": "1", "denominaci": "A", "municipi": "B"}]

    def test_malformed_xml(self) -> None:
        with pytest.raises(FormatError, match="Malformed markup"):
            parse_markup("<response><row>", CAT_CONTRACT)


class TestParseStructured:
    """Tests for JSON array parsing."""

    def test_array_of_objects(self) -> None:
        records = parse_structured('[{"a": 1, " b ": "x"}]', CV_CONTRACT)
        assert records == [{"a": 1, "b": "x"}]

    def test_non_array_rejected(self) -> None:
        with pytest.raises(FormatError, match="array of objects"):
            parse_structured('{"a": 1}', CV_CONTRACT)

    def test_non_object_item_rejected(self) -> None:
        with pytest.raises(FormatError, match="expected object"):
            parse_structured("[1, 2]", CV_CONTRACT)

    def test_invalid_json(self) -> None:
        with pytest.raises(FormatError, match="Malformed structured"):
            parse_structured("[{", CV_CONTRACT)

    def test_wrapped_array_unwrapped(self) -> None:
        contract = RecordContract(
            region_id="cv",
            fields=("MUNICIPIO",),
            marker_fields=frozenset({"MUNICIPIO"}),
            wrapper_key="estaciones",
        )
        text = '{"estaciones": [{"MUNICIPIO": "Alzira"}], "total": 1}'
        assert parse_structured(text, contract) == [{"MUNICIPIO": "Alzira"}]

    def test_wrapper_key_missing(self) -> None:
        contract = RecordContract(
            region_id="cv",
            fields=("MUNICIPIO",),
            marker_fields=frozenset({"MUNICIPIO"}),
            wrapper_key="estaciones",
        )
        with pytest.raises(FormatError, match="array of objects"):
            parse_structured('{"data": []}', contract)


class TestDecodePayload:
    """Tests for candidate-encoding negotiation."""

    def test_legacy_encoding_falls_through_utf8(self) -> None:
        raw = "NOME;CONCELLO;CÓDIGO\nEstación;Ourense;32001\n".encode("iso-8859-1")
        parse = build_parser(SourceFormat.DELIMITED, GAL_CONTRACT, ";")
        records, encoding = decode_payload(raw, _LEGACY, parse)
        assert encoding == "windows-1252"
        assert records[0]["CÓDIGO"] == "32001"

    def test_utf8_bom_stripped(self) -> None:
        raw = b"\xef\xbb\xbf" + "A,B,C\n1,2,3\n".encode("utf-8")
        parse = build_parser(SourceFormat.DELIMITED, GAL_CONTRACT, ",")
        records, encoding = decode_payload(raw, ("utf-8",), parse)
        assert encoding == "utf-8"
        assert "A" in records[0]

    def test_replacement_characters_rejected(self) -> None:
        raw = "A,B,C\nx\ufffd,2,3\n".encode("utf-8")
        parse = build_parser(SourceFormat.DELIMITED, GAL_CONTRACT, ",")
        with pytest.raises(EncodingError) as exc_info:
            decode_payload(raw, ("utf-8",), parse)
        assert exc_info.value.tried == ("utf-8",)

    def test_no_candidate_decodes(self) -> None:
        raw = "A,B,C\nÓ,2,3\n".encode("iso-8859-1")
        parse = build_parser(SourceFormat.DELIMITED, GAL_CONTRACT, ",")
        with pytest.raises(EncodingError, match="Tried encodings: utf-8"):
            decode_payload(raw, ("utf-8",), parse)

    def test_too_few_fields_is_format_error(self) -> None:
        raw = b"A;B;C\n1;2;3\n"
        parse = build_parser(SourceFormat.DELIMITED, GAL_CONTRACT, ",")
        with pytest.raises(FormatError, match="only 1 field"):
            decode_payload(raw, ("utf-8",), parse)

    def test_empty_array_is_format_error(self) -> None:
        parse = build_parser(SourceFormat.STRUCTURED, CV_CONTRACT)
        with pytest.raises(FormatError, match="no records"):
            decode_payload(b"[]", ("utf-8",), parse)

    def test_auto_candidate_uses_detection(self) -> None:
        text = "A;B;C\n" + "Estación de inspección técnica;Ourense;32001\n" * 20
        raw = text.encode("utf-8")
        parse = build_parser(SourceFormat.DELIMITED, GAL_CONTRACT, ";")
        records, encoding = decode_payload(raw, ("auto",), parse)
        assert encoding.replace("_", "-").lower() in {"utf-8", "utf8"}
        assert records[0]["A"] == "Estación de inspección técnica"


class TestAdapt:
    """Tests for the adapter entry point."""

    def test_gal_latin1_csv(self, gal_csv: Path) -> None:
        result = adapt(gal_csv, GAL_CONTRACT, _LEGACY, ";")
        assert result.source_format is SourceFormat.DELIMITED
        assert result.encoding == "windows-1252"
        assert [r["CONCELLO"] for r in result.records] == [
            "Vigo",
            "Vigo",
            "San Cibrao das Viñas",
        ]

    def test_cat_xml(self, cat_xml: Path) -> None:
        result = adapt(cat_xml, CAT_CONTRACT)
        assert len(result.records) == 2
        assert result.records[1]["municipi"] == "Reus"

    def test_cv_json(self, cv_json: Path) -> None:
        result = adapt(cv_json, CV_CONTRACT)
        assert len(result.records) == 3
        assert result.records[1]["C.POSTAL"] == 3203

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FormatError, match="not found"):
            adapt(tmp_path / "missing.json", CV_CONTRACT)

    def test_unsupported_extension_checked_first(self, tmp_path: Path) -> None:
        path = tmp_path / "estaciones.txt"
        path.write_text(json.dumps([{"a": 1}]))
        with pytest.raises(FormatError, match="Unsupported"):
            adapt(path, CV_CONTRACT)
