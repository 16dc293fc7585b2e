"""Parser for the declaration list (REQ.60.1) response document.

The document is ``<root><md>...</md><md>...</md></root>`` where every ``md`` is
one declaration. ElementTree handles well-formed input; anything it rejects
(stray entities, broken nesting) goes through a regex fallback that yields the
same flat field maps, so callers never need to know which tier ran.
"""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from xml.sax.saxutils import unescape

from customs_sync.customs_gateway.codec import repair_misencoded_text

logger = logging.getLogger("customs.list_parser")

_PROLOG_RE = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)
_MD_BLOCK_RE = re.compile(r"<md>([\s\S]*?)</md>", re.IGNORECASE)
_FIELD_RE = re.compile(r"<(\w+)>([\s\S]*?)</\1>")
_TRN_ALL_RE = re.compile(r"<trn_all>([\s\S]*?)</trn_all>", re.IGNORECASE)
_TRANSPORT_BLOCK_RE = re.compile(r"<ccd_transport[^>]*>([\s\S]*?)</ccd_transport>", re.IGNORECASE)
_TRN_NAME_RES = (
    re.compile(r"<ccd_trn_name>([\s\S]*?)</ccd_trn_name>", re.IGNORECASE),
    re.compile(r"<trn_name>([\s\S]*?)</trn_name>", re.IGNORECASE),
)

# Fields known to arrive double-encoded from upstream
REPAIRED_FIELDS = ("ccd_type", "trn_all")


@dataclass
class DeclarationSummary:
    """One declaration as reported by the list phase."""

    guid: str | None
    mrn: str | None
    status_code: str
    registered: str | None
    declaration_type: str | None = None
    transport_names: str | None = None
    sender_name: str | None = None
    recipient_name: str | None = None
    declarant_name: str | None = None
    customs_office: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "DeclarationSummary":
        mrn = _text(item.get("MRN"))
        if not mrn:
            parts = [_text(item.get(k)) for k in ("ccd_01_01", "ccd_01_02", "ccd_01_03")]
            if all(parts):
                mrn = "/".join(parts)
        return cls(
            guid=_text(item.get("guid")),
            mrn=mrn,
            status_code=_text(item.get("ccd_status")) or "",
            registered=_text(item.get("ccd_registered")),
            declaration_type=_text(item.get("ccd_type")),
            transport_names=_text(item.get("trn_all")),
            sender_name=_text(item.get("ccd_sender_name")),
            recipient_name=_text(item.get("ccd_recipient_name")),
            declarant_name=_text(item.get("ccd_decl_name")),
            customs_office=_text(item.get("ccd_07_01")),
            raw=item,
        )


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    value = str(value).strip()
    return value or None


def _element_value(elem: ET.Element) -> Any:
    children = list(elem)
    if not children and not elem.attrib:
        return (elem.text or "").strip()

    result: dict[str, Any] = {f"@_{k}": v for k, v in elem.attrib.items()}
    for child in children:
        value = _element_value(child)
        if child.tag in result:
            existing = result[child.tag]
            if isinstance(existing, list):
                existing.append(value)
            else:
                result[child.tag] = [existing, value]
        else:
            result[child.tag] = value
    text = (elem.text or "").strip()
    if text:
        result["#text"] = text
    return result


# Entity handling of the tree parser, for values captured by regex
_ENTITIES = {"&quot;": '"', "&apos;": "'"}
_CHAR_REF_RE = re.compile(r"&#(?:x([0-9a-fA-F]+)|(\d+));")


def _char_ref(match: re.Match) -> str:
    hex_digits, digits = match.groups()
    try:
        return chr(int(hex_digits, 16) if hex_digits else int(digits))
    except (ValueError, OverflowError):
        return match.group(0)


def _unescape(value: str) -> str:
    return unescape(_CHAR_REF_RE.sub(_char_ref, value), _ENTITIES)


def extract_transport_names(block: str) -> str | None:
    """Find transport names in a raw ``<md>`` block."""
    match = _TRN_ALL_RE.search(block)
    if match and match.group(1).strip():
        return _unescape(match.group(1)).strip()

    names = []
    for transport in _TRANSPORT_BLOCK_RE.finditer(block):
        for name_re in _TRN_NAME_RES:
            name_match = name_re.search(transport.group(1))
            if name_match and name_match.group(1).strip():
                names.append(_unescape(name_match.group(1)).strip())
                break
    return ", ".join(names) if names else None


def _finish_item(item: dict[str, Any], block: str | None) -> dict[str, Any]:
    if not item.get("trn_all") and block is not None:
        names = extract_transport_names(block)
        if names:
            item["trn_all"] = names
    for key in REPAIRED_FIELDS:
        value = item.get(key)
        if isinstance(value, str) and value:
            item[key] = repair_misencoded_text(value)
    return item


def _parse_tree(xml_text: str) -> list[dict[str, Any]]:
    root = ET.fromstring(_PROLOG_RE.sub("", xml_text, count=1))
    items = []
    for md in root.findall("md"):
        value = _element_value(md)
        items.append(value if isinstance(value, dict) else {})

    blocks = [m.group(1) for m in _MD_BLOCK_RE.finditer(xml_text)]
    return [
        _finish_item(item, blocks[i] if i < len(blocks) else None)
        for i, item in enumerate(items)
    ]


def _parse_regex(xml_text: str) -> list[dict[str, Any]]:
    items = []
    for md in _MD_BLOCK_RE.finditer(xml_text):
        block = md.group(1)
        item = {m.group(1): _unescape(m.group(2)).strip() for m in _FIELD_RE.finditer(block)}
        items.append(_finish_item(item, block))
    return items


def parse_declaration_list(xml_text: str | None) -> list[dict[str, Any]]:
    """Parse the list document into flat field maps. Never raises."""
    if not xml_text or not xml_text.strip():
        return []
    try:
        return _parse_tree(xml_text)
    except Exception as e:
        logger.warning("List XML rejected by parser, using regex fallback: %s", e)
        return _parse_regex(xml_text)


def parse_summaries(xml_text: str | None) -> list[DeclarationSummary]:
    return [DeclarationSummary.from_item(item) for item in parse_declaration_list(xml_text)]


_REGISTERED_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2}))?")


def parse_registered_at(raw: str | None) -> datetime | None:
    """``YYYYMMDDThhmmss`` (time part optional) -> naive local datetime."""
    if not raw:
        return None
    match = _REGISTERED_RE.match(raw.strip())
    if not match:
        return None
    parts = [int(p) if p else 0 for p in match.groups()]
    try:
        return datetime(*parts)
    except ValueError:
        return None
