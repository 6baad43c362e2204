"""Renderers for portability exports.

The export document is built once as plain JSON-compatible data and then
rendered in the requested format:

    JSON  canonical JSON (sorted keys, no whitespace)
    CSV   one row per leaf value: record_id, field path, value
    XML   nested elements mirroring the document, lists as <item>

The SHA-256 checksum handed to the subject is computed over the rendered
text, so it matches the file they receive.
"""

from __future__ import annotations

import csv
import hashlib
import io
import json
from collections.abc import Iterator
from enum import StrEnum
from typing import Any
from xml.etree import ElementTree as ET  # output only, nothing is parsed here

CSV_HEADER = ("record_id", "field", "value")


class ExportFormat(StrEnum):
    JSON = "JSON"
    CSV = "CSV"
    XML = "XML"


CONTENT_TYPES: dict[ExportFormat, str] = {
    ExportFormat.JSON: "application/json",
    ExportFormat.CSV: "text/csv",
    ExportFormat.XML: "application/xml",
}


def render_export(document: dict[str, Any], export_format: ExportFormat) -> str:
    if export_format == ExportFormat.CSV:
        return export_to_csv(document)
    if export_format == ExportFormat.XML:
        return export_to_xml(document)
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def export_to_csv(document: dict[str, Any]) -> str:
    """Flatten the export to ``record_id, field, value`` rows.

    Export metadata comes first with an empty record id. Nested fields use
    dotted paths (``profile.email``, ``review_requests.0.message``); a
    missing value is an empty cell.
    """
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)

    for name, value in sorted(document.items()):
        if name != "records":
            writer.writerow(["", name, _cell(value)])

    for record in document.get("records", []):
        record_id = record.get("customer_id", "")
        for path, value in _flatten(record):
            writer.writerow([record_id, path, _cell(value)])

    return output.getvalue()


def export_to_xml(document: dict[str, Any]) -> str:
    root = ET.Element("data_export")
    for name, value in sorted(document.items()):
        if name == "records":
            continue
        root.set(name, _cell(value))
    records = ET.SubElement(root, "records")
    for record in document.get("records", []):
        _append(records, "record", record)
    return ET.tostring(root, encoding="unicode")


def _flatten(value: Any, prefix: str = "") -> Iterator[tuple[str, Any]]:
    if isinstance(value, dict):
        for key in sorted(value):
            yield from _flatten(value[key], f"{prefix}.{key}" if prefix else key)
    elif isinstance(value, list):
        if not value:
            yield prefix, ""
        for index, item in enumerate(value):
            yield from _flatten(item, f"{prefix}.{index}")
    else:
        yield prefix, value


def _append(parent: ET.Element, tag: str, value: Any) -> None:
    element = ET.SubElement(parent, tag)
    if isinstance(value, dict):
        for key in sorted(value):
            _append(element, key, value[key])
    elif isinstance(value, list):
        for item in value:
            _append(element, "item", item)
    elif value is not None:
        element.text = _cell(value)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
