"""Canonical record adapter for regional ITV source files.

Turns a raw source file into an ordered list of flat field-name -> value
records, whatever the source format:

1. Delimited text (Galicia): header row plus configurable delimiter.
2. Markup (Catalunya): repeatable ``<row>`` nodes flattened one record per
   leaf occurrence; container rows holding only nested rows are dropped.
3. Structured text (Comunitat Valenciana): a JSON array of objects.

Text decoding walks a list of candidate encodings and keeps the first that
parses cleanly, has at least three fields and contains no U+FFFD
replacement characters. The ``"auto"`` candidate asks charset-normalizer.
Record order is preserved: later stages correlate stations and localities
by position.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final, TypeAlias

from charset_normalizer import from_bytes

from itv_integration.config import SourceFormat
from itv_integration.contracts import RecordContract

logger: Final[logging.Logger] = logging.getLogger(__name__)

Record: TypeAlias = dict[str, object]
RecordParser: TypeAlias = Callable[[str], list[Record]]

_MIN_FIELD_COUNT: Final[int] = 3
_REPLACEMENT_CHAR: Final[str] = "\ufffd"
_BOM_CHAR: Final[str] = "\ufeff"
AUTO_ENCODING: Final[str] = "auto"

_EXTENSION_FORMATS: Final[dict[str, SourceFormat]] = {
    ".csv": SourceFormat.DELIMITED,
    ".xml": SourceFormat.MARKUP,
    ".json": SourceFormat.STRUCTURED,
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class FormatError(Exception):
    """Raised when a source file's structure is unreadable or unsupported."""


class EncodingError(FormatError):
    """Raised when no candidate encoding decodes a source cleanly.

    Attributes:
        tried: Candidate encodings attempted, in order.
    """

    def __init__(self, message: str, tried: Sequence[str]) -> None:
        self.tried: Final[tuple[str, ...]] = tuple(tried)
        super().__init__(f"{message}. Tried encodings: {', '.join(self.tried)}")


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AdaptResult:
    """Outcome of adapting one source file.

    Attributes:
        source_path: File that was read.
        source_format: Format detected from the file extension.
        encoding: Encoding that decoded the file cleanly.
        records: Flat records in source order.
        elapsed_seconds: Wall-clock duration of the adaptation.
    """

    source_path: Path
    source_format: SourceFormat
    encoding: str
    records: list[Record]
    elapsed_seconds: float


# ---------------------------------------------------------------------------
# Format detection
# ---------------------------------------------------------------------------


def detect_format(path: Path) -> SourceFormat:
    """Detect the source format from the file extension.

    Raises:
        FormatError: If the extension is missing or unsupported.
    """
    suffix = path.suffix.lower()
    if not suffix:
        raise FormatError(f"File has no extension: '{path}'")
    source_format = _EXTENSION_FORMATS.get(suffix)
    if source_format is None:
        valid = ", ".join(ext.lstrip(".") for ext in _EXTENSION_FORMATS)
        raise FormatError(
            f"Unsupported file format '{suffix.lstrip('.')}' for '{path}'. "
            f"Valid formats: {valid}"
        )
    return source_format


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_delimited(text: str, delimiter: str = ",") -> list[Record]:
    """Parse delimited text with a header row into records.

    Raises:
        FormatError: If the text has no header row or malformed quoting.
    """
    reader = csv.DictReader(
        io.StringIO(text, newline=""),
        delimiter=delimiter,
        quotechar='"',
        strict=True,
    )
    try:
        if reader.fieldnames is None:
            raise FormatError("Delimited source has no header row")
        records: list[Record] = []
        for row in reader:
            record: Record = {
                key.strip(): (value.strip() if isinstance(value, str) else "")
                for key, value in row.items()
                if key is not None
            }
            if any(record.values()):
                records.append(record)
    except csv.Error as exc:
        raise FormatError(f"Malformed delimited source: {exc}") from exc
    return records


def parse_markup(text: str, contract: RecordContract) -> list[Record]:
    """Flatten repeatable record nodes of an XML document.

    Every element named ``contract.record_tag`` becomes a candidate record.
    Rows carrying none of the contract's marker fields are containers and
    are dropped.

    Raises:
        FormatError: If the document is not well-formed XML.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise FormatError(f"Malformed markup source: {exc}") from exc

    records: list[Record] = []
    dropped = 0
    for node in root.iter(contract.record_tag):
        record = _flatten_node(node, contract)
        if contract.marker_fields.isdisjoint(record):
            dropped += 1
            continue
        records.append(record)

    logger.debug(
        "Flattened %d <%s> records, dropped %d containers",
        len(records),
        contract.record_tag,
        dropped,
    )
    return records


def _flatten_node(node: ET.Element, contract: RecordContract) -> Record:
    """Collect direct leaf children of a record node into a flat record."""
    record: Record = {}
    for child in node:
        tag = child.tag
        if tag == contract.record_tag or tag.startswith("_"):
            continue
        if tag in contract.skipped_tags:
            continue
        url = child.get("url")
        if url is not None:
            record[tag] = url
            continue
        value = "".join(child.itertext()).strip()
        if value:
            record[tag] = value
    return record


def parse_structured(text: str, contract: RecordContract) -> list[Record]:
    """Parse a JSON array of flat objects.

    Raises:
        FormatError: If the document is not JSON or not an array of objects.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FormatError(f"Malformed structured source: {exc}") from exc

    if isinstance(data, dict) and contract.wrapper_key is not None:
        data = data.get(contract.wrapper_key)
    if not isinstance(data, list):
        raise FormatError(
            f"Structured source must be an array of objects, got "
            f"{type(data).__name__}"
        )

    records: list[Record] = []
    for position, item in enumerate(data):
        if not isinstance(item, dict):
            raise FormatError(
                f"Structured record {position} is {type(item).__name__}, "
                f"expected object"
            )
        records.append({str(key).strip(): value for key, value in item.items()})
    return records


def build_parser(
    source_format: SourceFormat,
    contract: RecordContract,
    delimiter: str = ",",
) -> RecordParser:
    """Return the record parser for a source format."""
    match source_format:
        case SourceFormat.DELIMITED:
            return lambda text: parse_delimited(text, delimiter)
        case SourceFormat.MARKUP:
            return lambda text: parse_markup(text, contract)
        case SourceFormat.STRUCTURED:
            return lambda text: parse_structured(text, contract)


# ---------------------------------------------------------------------------
# Encoding negotiation
# ---------------------------------------------------------------------------


def _resolve_candidate(candidate: str, raw: bytes) -> str | None:
    """Map ``"auto"`` to charset-normalizer's best guess."""
    if candidate.lower() != AUTO_ENCODING:
        return candidate
    best = from_bytes(raw).best()
    if best is None:
        logger.debug("charset-normalizer returned no candidates")
        return None
    logger.debug(
        "charset-normalizer suggests %s (chaos %.2f)", best.encoding, best.chaos
    )
    return str(best.encoding)


def _check_structure(records: list[Record]) -> str | None:
    """Return a description of the structural problem, if any."""
    if not records:
        return "no records found"
    field_count = len(records[0])
    if field_count < _MIN_FIELD_COUNT:
        return (
            f"only {field_count} field(s) in first record; wrong delimiter "
            f"or encoding"
        )
    return None


def _has_replacement_chars(records: list[Record]) -> bool:
    for record in records:
        for key, value in record.items():
            if _REPLACEMENT_CHAR in key:
                return True
            if isinstance(value, str) and _REPLACEMENT_CHAR in value:
                return True
    return False


def decode_payload(
    raw: bytes,
    encodings: Sequence[str],
    parse: RecordParser,
    source: str = "<payload>",
) -> tuple[list[Record], str]:
    """Decode and parse a payload with the first clean candidate encoding.

    Args:
        raw: Undecoded file content.
        encodings: Candidate encodings in priority order.
        parse: Parser turning decoded text into records.
        source: Label used in log and error messages.

    Returns:
        Tuple of (records, encoding that succeeded).

    Raises:
        FormatError: If some candidate decoded cleanly but the structure
            was unusable.
        EncodingError: If no candidate decoded cleanly.
    """
    structural_problem: str | None = None

    for candidate in encodings:
        encoding = _resolve_candidate(candidate, raw)
        if encoding is None:
            continue
        try:
            text = raw.decode(encoding).lstrip(_BOM_CHAR)
        except (UnicodeDecodeError, LookupError) as exc:
            logger.debug("%s: %s failed to decode: %s", source, encoding, exc)
            continue

        try:
            records = parse(text)
        except FormatError as exc:
            logger.debug("%s: %s parse failed: %s", source, encoding, exc)
            structural_problem = str(exc)
            continue

        problem = _check_structure(records)
        if problem is not None:
            logger.debug("%s: %s rejected: %s", source, encoding, problem)
            structural_problem = problem
            continue

        if _has_replacement_chars(records):
            logger.debug("%s: %s produced replacement characters", source, encoding)
            continue

        return records, encoding

    if structural_problem is not None:
        raise FormatError(f"Cannot read '{source}': {structural_problem}")
    raise EncodingError(f"No candidate encoding decoded '{source}' cleanly", encodings)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def adapt(
    path: Path,
    contract: RecordContract,
    encodings: Sequence[str] = ("utf-8",),
    delimiter: str = ",",
) -> AdaptResult:
    """Read a source file into canonical flat records.

    Args:
        path: Source file; its extension selects the parser.
        contract: Field contract of the region the file belongs to.
        encodings: Candidate encodings in priority order.
        delimiter: Field delimiter for delimited-text sources.

    Returns:
        AdaptResult with records in source order.

    Raises:
        FormatError: If the file is missing, has an unsupported extension
            or an unusable structure.
        EncodingError: If no candidate encoding decodes it cleanly.
    """
    start = time.monotonic()
    source_format = detect_format(path)
    if not path.is_file():
        raise FormatError(f"Source file not found: '{path}'")

    raw = path.read_bytes()
    parser = build_parser(source_format, contract, delimiter)
    records, encoding = decode_payload(raw, encodings, parser, source=path.name)

    elapsed = time.monotonic() - start
    logger.info(
        "Adapted %s (%s, %s): %d records in %.2fs",
        path.name,
        source_format.value,
        encoding,
        len(records),
        elapsed,
    )
    return AdaptResult(
        source_path=path,
        source_format=source_format,
        encoding=encoding,
        records=records,
        elapsed_seconds=round(elapsed, 3),
    )
