"""
QR payload formats for Cardgate.

Readers submit one of two payloads:

- Proof payload, JSON: {"cardId": "...", "ctr": "<decimal>", "tag": "<base64url>"}
- Opaque card token, base64url (no padding) of
  "CARD:<cardId>:OWNER:<owner>:ROLE:<role>:TIMESTAMP:<epoch ms>"

parse_qr_payload() classifies the input by shape first and decodes
second, returning exactly one of the variants below.
"""

import json
from dataclasses import dataclass
from typing import Any, Union

from .util import b64url_decode, b64url_encode, now_millis

MAX_QR_LENGTH = 2048


@dataclass(frozen=True)
class ProofPayload:
    card_id: Any
    ctr: Any
    tag: Any


@dataclass(frozen=True)
class OpaqueCardToken:
    raw: str
    card_id: str
    owner: str
    role: str
    timestamp_ms: int


@dataclass(frozen=True)
class Unparseable:
    reason: str


QrPayload = Union[ProofPayload, OpaqueCardToken, Unparseable]


def build_card_token(card_id: str, owner: str, role: str, timestamp_ms: int = 0) -> str:
    """Build the opaque QR token for a card."""
    ts = timestamp_ms or now_millis()
    text = f"CARD:{card_id}:OWNER:{owner}:ROLE:{role}:TIMESTAMP:{ts}"
    return b64url_encode(text.encode("utf-8"))


def _parse_structured(text: str) -> QrPayload:
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return Unparseable("invalid JSON")
    if not isinstance(obj, dict) or not {"cardId", "ctr", "tag"} <= obj.keys():
        return Unparseable("JSON payload must contain cardId, ctr and tag")
    return ProofPayload(card_id=obj["cardId"], ctr=obj["ctr"], tag=obj["tag"])


def _parse_opaque(text: str) -> QrPayload:
    try:
        decoded = b64url_decode(text).decode("utf-8")
    except ValueError:
        return Unparseable("not base64url")
    parts = decoded.split(":")
    if (len(parts) != 8 or parts[0] != "CARD" or parts[2] != "OWNER"
            or parts[4] != "ROLE" or parts[6] != "TIMESTAMP"
            or not parts[1] or not parts[7].isdigit()):
        return Unparseable("unrecognized card token layout")
    return OpaqueCardToken(raw=text, card_id=parts[1], owner=parts[3],
                           role=parts[5], timestamp_ms=int(parts[7]))


def parse_qr_payload(value: Any) -> QrPayload:
    if not isinstance(value, str) or not value.strip():
        return Unparseable("missing QR code")
    text = value.strip()
    if len(text) > MAX_QR_LENGTH:
        return Unparseable("QR code too long")
    if text.startswith("{"):
        return _parse_structured(text)
    return _parse_opaque(text)
