"""Conversion between nested mappings and provider-style XML.

Two list conventions exist on the wire:

- WRAPPED: a list under key ``K`` renders as repeated ``<K>`` elements
- EC2: a list under key ``K`` renders as ``<K><item>..</item>..</K>``

Parsing is the inverse for request bodies: child elements become keys,
repeated siblings become lists, text-only elements become strings.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import datetime
from enum import Enum
from typing import Any

XML_DECLARATION = b'<?xml version="1.0" encoding="UTF-8"?>\n'

# Request bodies larger than this are rejected before parsing
MAX_XML_BODY_BYTES = 1024 * 1024


class MarkupStyle(str, Enum):
    """List and envelope conventions of the markup family."""

    WRAPPED = "wrapped"
    EC2 = "ec2"
    # Lists as WRAPPED, responses without an envelope
    BARE = "bare"


class XmlDecodeError(ValueError):
    """Raised when a request body is not well-formed XML."""

    pass


def format_scalar(value: Any) -> str:
    """Render a scalar the way the markup protocols do."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    return str(value)


def _append(parent: ET.Element, key: str, value: Any, style: MarkupStyle) -> None:
    if value is None:
        return

    if isinstance(value, list | tuple):
        if style == MarkupStyle.EC2:
            container = ET.SubElement(parent, key)
            for item in value:
                _append(container, "item", item, style)
        else:
            for item in value:
                _append(parent, key, item, style)
        return

    element = ET.SubElement(parent, key)
    if isinstance(value, dict):
        for child_key, child_value in value.items():
            _append(element, child_key, child_value, style)
    else:
        element.text = format_scalar(value)


def build_element(
    tag: str,
    payload: dict[str, Any] | None,
    style: MarkupStyle = MarkupStyle.WRAPPED,
    xmlns: str | None = None,
) -> ET.Element:
    """Build an element tree from a mapping.

    Args:
        tag: Root element name.
        payload: Children of the root element; None values are omitted.
        style: List convention.
        xmlns: Default namespace declared on the root.

    Returns:
        Root element.
    """
    root = ET.Element(tag)
    if xmlns:
        root.set("xmlns", xmlns)
    for key, value in (payload or {}).items():
        _append(root, key, value, style)
    return root


def render(
    tag: str,
    payload: dict[str, Any] | None,
    style: MarkupStyle = MarkupStyle.WRAPPED,
    xmlns: str | None = None,
) -> bytes:
    """Serialize a mapping to an XML document with declaration."""
    root = build_element(tag, payload, style, xmlns)
    return XML_DECLARATION + ET.tostring(root, encoding="utf-8", xml_declaration=False)


def render_text(tag: str, text: str | None, xmlns: str | None = None) -> bytes:
    """Serialize a document whose root holds only text, e.g. ``<LocationConstraint>``."""
    root = ET.Element(tag)
    if xmlns:
        root.set("xmlns", xmlns)
    if text:
        root.text = text
    return XML_DECLARATION + ET.tostring(root, encoding="utf-8", xml_declaration=False)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _element_to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()

    result: dict[str, Any] = {}
    for child in children:
        name = _local_name(child.tag)
        value = _element_to_value(child)
        if name in result:
            existing = result[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[name] = [existing, value]
        else:
            result[name] = value
    return result


def parse(body: bytes) -> tuple[str, dict[str, Any]]:
    """Parse an XML request body.

    Args:
        body: Raw request body.

    Returns:
        Tuple of (root element local name, children mapping).

    Raises:
        XmlDecodeError: Body is too large or not well-formed.
    """
    if len(body) > MAX_XML_BODY_BYTES:
        raise XmlDecodeError(f"XML body exceeds maximum size of {MAX_XML_BODY_BYTES} bytes")
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise XmlDecodeError(f"Malformed XML: {e}") from e

    value = _element_to_value(root)
    if not isinstance(value, dict):
        value = {}
    return _local_name(root.tag), value


def ensure_list(value: Any) -> list[Any]:
    """Normalize a parsed member that may be absent, single or repeated."""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]
