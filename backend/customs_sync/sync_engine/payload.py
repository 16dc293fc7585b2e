"""Decoding of the stored declaration payload.

The ``raw_payload`` column holds either bare detail XML written by older
versions, or a JSON envelope ``{"listPhaseData": {...}, "detailPhaseData": "<xml>"}``.
It is decoded once here into a tagged variant; call sites never sniff the text.
"""

import json
from dataclasses import dataclass
from typing import Any, Union

LIST_KEY = "listPhaseData"
DETAIL_KEY = "detailPhaseData"
# Key names used by the first envelope version
_LEGACY_KEYS = {"data60_1": LIST_KEY, "data61_1": DETAIL_KEY}


@dataclass(frozen=True)
class LegacyXml:
    """Detail document only, stored without an envelope."""

    text: str

    @property
    def list_data(self) -> dict[str, Any] | None:
        return None

    @property
    def detail_data(self) -> str:
        return self.text


@dataclass(frozen=True)
class Envelope:
    list_data: dict[str, Any] | None = None
    detail_data: str | None = None


StoredPayload = Union[LegacyXml, Envelope]


def decode_payload(raw: str | None) -> StoredPayload:
    if raw is None or not raw.strip():
        return Envelope()
    stripped = raw.lstrip()
    if stripped.startswith("<"):
        return LegacyXml(raw)
    if not stripped.startswith(("{", "[")):
        return Envelope()
    try:
        data = json.loads(stripped)
    except ValueError:
        return Envelope()
    if not isinstance(data, dict):
        return Envelope()

    for old, new in _LEGACY_KEYS.items():
        if old in data and new not in data:
            data[new] = data[old]
    list_data = data.get(LIST_KEY)
    detail_data = data.get(DETAIL_KEY)
    return Envelope(
        list_data=list_data if isinstance(list_data, dict) else None,
        detail_data=detail_data if isinstance(detail_data, str) and detail_data else None,
    )


def encode_payload(payload: StoredPayload) -> str:
    if isinstance(payload, LegacyXml):
        return payload.text
    data: dict[str, Any] = {}
    if payload.list_data is not None:
        data[LIST_KEY] = payload.list_data
    if payload.detail_data is not None:
        data[DETAIL_KEY] = payload.detail_data
    return json.dumps(data, ensure_ascii=False)


def with_list_data(payload: StoredPayload, list_data: dict[str, Any]) -> Envelope:
    return Envelope(list_data=list_data, detail_data=payload.detail_data)


def with_detail_data(payload: StoredPayload, detail_xml: str) -> Envelope:
    return Envelope(list_data=payload.list_data, detail_data=detail_xml)


def has_detail(payload: StoredPayload) -> bool:
    return payload.detail_data is not None
