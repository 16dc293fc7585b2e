"""Transport codec for customs API payloads.

Responses carry Base64 of a ZIP archive whose first entry is an XML document,
normally Windows-1251 encoded (UTF-8 only when the prolog says so).

Some upstream documents were double-encoded at the source: cp1251 bytes were
read as UTF-8 and written back out, so a Cyrillic letter shows up as "Р"
followed by a punctuation-range character. ``repair_misencoded_text`` undoes
the observed variants through a fixed lookup table. It is not a
general encoding detector: patterns missing from the table are left alone and
counted in ``unmapped_repair_patterns()`` so new variants can be spotted.
"""

import base64
import binascii
import io
import logging
import re
import zipfile
from collections import Counter

logger = logging.getLogger("customs.codec")

LEGACY_ENCODING = "cp1251"

_ENCODING_DECL_RE = re.compile(rb"""encoding=["'](.*?)["']""", re.IGNORECASE)
# Characters that follow "Р" only in double-encoded text
_SUSPICIOUS_FOLLOWERS = "•†‡‥…ђљњћџ"
_SUSPICIOUS_RE = re.compile(f"Р[{_SUSPICIOUS_FOLLOWERS}]")

# UTF-8 bytes of "Р" (U+0420)
_LEAD = b"\xd0\xa0"

# Hex of the UTF-8 bytes following the lead -> the cp1251 byte they stand for
DOUBLE_ENCODING_REPAIRS: dict[str, int] = {
    "e280a2": 0xC5,  # Е
    "d199": 0xCA,    # К
    "d192": 0xC0,    # А
    "e280a0": 0xB2,  # І
    "d19a": 0xCC,    # М
}

_unmapped = Counter()


class TransportError(Exception):
    """Payload could not be unwrapped into text."""

    code = "TRANSPORT_ERROR"


class BadEnvelopeError(TransportError):
    code = "BAD_ENVELOPE"


class EmptyArchiveError(TransportError):
    code = "EMPTY_ARCHIVE"


class CorruptArchiveError(TransportError):
    code = "CORRUPT_ARCHIVE"


def decode_envelope(message_body: str | bytes) -> str:
    """Base64 -> ZIP (first entry) -> text.

    Raises only ``TransportError`` subclasses.
    """
    try:
        if isinstance(message_body, str):
            message_body = message_body.encode("ascii")
        # Line-wrapped Base64 is accepted
        compressed = base64.b64decode(b"".join(message_body.split()), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise BadEnvelopeError(f"Invalid Base64 envelope: {e}") from e

    try:
        with zipfile.ZipFile(io.BytesIO(compressed)) as archive:
            entries = archive.infolist()
            if not entries:
                raise EmptyArchiveError("Archive contains no entries")
            raw = archive.read(entries[0])
    except TransportError:
        raise
    except Exception as e:
        raise CorruptArchiveError(f"Cannot read archive: {e}") from e

    return decode_text(raw)


def declared_encoding(raw: bytes) -> str | None:
    match = _ENCODING_DECL_RE.search(raw[:100])
    if not match:
        return None
    return match.group(1).decode("ascii", errors="ignore").strip().lower()


def decode_text(raw: bytes) -> str:
    """Decode an XML entry, honouring a UTF-8 declaration. Never raises."""
    encoding = declared_encoding(raw)
    primary = "utf-8" if encoding in ("utf-8", "utf8") else LEGACY_ENCODING

    for candidate in (primary, LEGACY_ENCODING, "utf-8"):
        try:
            return raw.decode(candidate)
        except UnicodeDecodeError:
            continue
    # cp1251 leaves 0x98 undefined, so truly arbitrary bytes can still land here
    return raw.decode(LEGACY_ENCODING, errors="replace")


def _follower_length(first_byte: int) -> int:
    if 0xE0 <= first_byte <= 0xEF:
        return 3
    if 0xC0 <= first_byte <= 0xDF:
        return 2
    return 1


def repair_misencoded_text(text: str | None, table: dict[str, int] | None = None) -> str | None:
    """Undo the known double-encoding corruption in ``text``.

    Text without the suspicious lead pattern is returned unchanged.
    """
    if not text or not _SUSPICIOUS_RE.search(text):
        return text

    repairs = DOUBLE_ENCODING_REPAIRS if table is None else table
    data = text.encode("utf-8")
    out = bytearray()
    i = 0
    while i < len(data):
        if data.startswith(_LEAD, i) and i + 2 < len(data):
            length = _follower_length(data[i + 2])
            follower = data[i + 2:i + 2 + length]
            pattern = follower.hex()
            legacy_byte = repairs.get(pattern)
            if legacy_byte is not None:
                out += bytes([legacy_byte]).decode(LEGACY_ENCODING).encode("utf-8")
                i += 2 + length
                continue
            if follower.decode("utf-8", errors="replace")[:1] in _SUSPICIOUS_FOLLOWERS:
                _unmapped[pattern] += 1
                logger.warning("Unmapped double-encoding pattern Р+%s", pattern)
            out += _LEAD
            i += 2
            continue
        out.append(data[i])
        i += 1

    return out.decode("utf-8", errors="replace")


def unmapped_repair_patterns() -> dict[str, int]:
    """Occurrences of lead sequences the repair table could not map."""
    return dict(_unmapped)


def reset_unmapped_repair_patterns() -> None:
    _unmapped.clear()
