from __future__ import annotations

import base64
import binascii
import re
import xml.etree.ElementTree as ET
from typing import Any, Mapping

from orderdesk.carrier.errors import CarrierFaultError, UnrecognizedLabelResponse

BINARY_CONTENT_TYPES = ("application/pdf", "application/octet-stream")
PREVIEW_CHARS = 300

_RESULT = re.compile(r"<result>\s*([A-Za-z0-9+/=\s]+?)\s*</result>", re.DOTALL)
_FAULT_STATUS = re.compile(r"<status>\s*fault\s*</status>", re.IGNORECASE)
_FAULT_NAME = re.compile(r"<fault>\s*(.*?)\s*</fault>", re.DOTALL)
_FAULT_STRING = re.compile(r"<string>\s*(.*?)\s*</string>", re.DOTALL)


def _append(parent: ET.Element, tag: str, value: Any) -> None:
    if value is None:
        return
    node = ET.SubElement(parent, tag)
    if isinstance(value, Mapping):
        for key, child in value.items():
            _append(node, key, child)
    elif isinstance(value, (list, tuple)):
        for child in value:
            _append(node, "id", child)
    else:
        node.text = str(value)


def build_request(root_tag: str, api_password: str, fields: Mapping[str, Any]) -> bytes:
    root = ET.Element(root_tag)
    ET.SubElement(root, "apiPassword").text = api_password
    for key, value in fields.items():
        _append(root, key, value)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def label_request(api_password: str, shipment_id: str, fmt: str, offset: int = 0) -> bytes:
    return build_request("packetLabelPdf", api_password, {"packetId": shipment_id, "format": fmt, "offset": offset})


def batch_label_request(api_password: str, shipment_ids: list[str], fmt: str, offset: int = 0) -> bytes:
    return build_request(
        "packetsLabelsPdf",
        api_password,
        {"packetIds": list(shipment_ids), "format": fmt, "offset": offset},
    )


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _preview(text: str) -> str:
    return text[:PREVIEW_CHARS]


def is_fault(text: str) -> bool:
    return bool(_FAULT_STATUS.search(text))


def raise_fault(text: str) -> None:
    name = _FAULT_NAME.search(text)
    detail = _FAULT_STRING.search(text)
    raise CarrierFaultError(
        fault=name.group(1) if name else None,
        detail=detail.group(1) if detail else None,
    )


def decode_label(status: int, content_type: str, body: bytes) -> bytes:
    """Decode a label response: raw PDF, base64 inside ``<result>``, or a fault."""
    if _media_type(content_type) in BINARY_CONTENT_TYPES:
        return body

    text = body.decode("utf-8", errors="replace")
    match = _RESULT.search(text)
    if match:
        encoded = "".join(match.group(1).split())
        try:
            return base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise UnrecognizedLabelResponse(status, content_type, _preview(text)) from exc

    if is_fault(text):
        raise_fault(text)
    raise UnrecognizedLabelResponse(status, content_type, _preview(text))


def parse_envelope(status: int, content_type: str, body: bytes) -> ET.Element:
    """Parse a non-label XML reply and return its ``<result>`` node."""
    text = body.decode("utf-8", errors="replace")
    if is_fault(text):
        raise_fault(text)
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise UnrecognizedLabelResponse(status, content_type, _preview(text)) from exc
    if (root.findtext("status") or "").strip().lower() != "ok":
        raise UnrecognizedLabelResponse(status, content_type, _preview(text))
    result = root.find("result")
    return result if result is not None else ET.Element("result")
