"""
FORMAT TRANSLATOR
=================
XML <-> JSON structural conversion for broker payloads.

Mapping rules:
- an element with child elements becomes an object keyed by child tag
- repeated sibling tags collapse into a list
- a leaf element becomes its stripped text ("" when empty)
- attributes and mixed-content text are ignored

Repeated siblings are grouped under their first occurrence, so
<a/><b/><a/> comes back from a round trip as <a/><a/><b/>.

Pure functions, no shared state: safe to call from every consumer at once.
"""

import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, Union

from ..core.errors import MalformedInputError

JsonDocument = Dict[str, Any]

INDENT = "    "

# letter or underscore first, then letters, digits, "_", "-" or "."
XML_NAME = re.compile(r"[^\W\d][\w.\-]*")


def xml_to_json(payload: Union[bytes, str]) -> JsonDocument:
    """
    Convert an XML document to a nested JSON object.

    Returns:
        {root_tag: value}

    Raises:
        MalformedInputError: empty payload or XML that does not parse
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    if not payload or not payload.strip():
        raise MalformedInputError("empty payload")

    try:
        root = ET.fromstring(payload)
    except ET.ParseError as e:
        raise MalformedInputError(f"invalid XML: {e}") from e

    return {_local_name(root.tag): _element_to_value(root)}


def json_to_xml(document: JsonDocument) -> bytes:
    """
    Convert a single-root JSON object to pretty-printed UTF-8 XML.

    Raises:
        MalformedInputError: the document does not have exactly one top-level key
    """
    if not isinstance(document, dict) or len(document) != 1:
        raise MalformedInputError("XML needs exactly one root element")

    (tag, value), = document.items()
    if isinstance(value, list):
        raise MalformedInputError(f"root element '{tag}' cannot be a list")

    root = ET.Element(_xml_name(tag))
    _fill_element(root, value)
    ET.indent(root, space=INDENT)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


# =============================================================================
# INTERNALS
# =============================================================================

def _local_name(tag: str) -> str:
    # "{namespace}Name" -> "Name"
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _element_to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()

    result: Dict[str, Any] = {}
    for child in children:
        key = _local_name(child.tag)
        value = _element_to_value(child)
        if key in result:
            existing = result[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[key] = [existing, value]
        else:
            result[key] = value
    return result


def _xml_name(key: Any) -> str:
    if not isinstance(key, str) or not XML_NAME.fullmatch(key):
        raise MalformedInputError(f"{key!r} is not a valid XML element name")
    return key


def _fill_element(element: ET.Element, value: Any) -> None:
    if isinstance(value, dict):
        for key, child_value in value.items():
            tag = _xml_name(key)
            if isinstance(child_value, list):
                for item in child_value:
                    if isinstance(item, list):
                        raise MalformedInputError(f"<{tag}> holds a nested list")
                    _fill_element(ET.SubElement(element, tag), item)
            else:
                _fill_element(ET.SubElement(element, tag), child_value)
    elif value is None:
        return
    elif isinstance(value, bool):
        element.text = "true" if value else "false"
    else:
        element.text = str(value)
