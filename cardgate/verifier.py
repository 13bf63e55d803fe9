"""
Counter-MAC verification for Cardgate.

A card proves possession of its secret for one never-reused counter
value. Verification is a pure function of the stored card state, the
claimed (counter, tag) and the current time; it returns an outcome
value and the state update to apply, and never raises.

MAC scheme hmac-sha256-128-v1:
    tag = HMAC-SHA256(secret, card_id_bytes || u64_le(counter))[:16]
where card_id_bytes is the base64url-decoded card id. Tags travel as
base64url without padding, counters as decimal strings.

Checks run in a fixed order; each one returns a distinct ReasonCode:
  1. card active
  2. card not expired (now < expires_at)
  3. counter and tag well-formed
  4. counter strictly above the high-water-mark
  5. tag matches (constant-time)
"""

import hashlib
import hmac
import struct
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ReasonCode
from .security import parse_counter
from .store import Card
from .util import b64url_decode, b64url_encode

MAC_VERSION = "hmac-sha256-128-v1"
TAG_LENGTH = 16
CARD_ID_LENGTH = 16
SECRET_LENGTH = 32

# SQLite stores INTEGER as signed 64-bit
MAX_COUNTER = 2 ** 63 - 1


@dataclass
class VerifyOutcome:
    """Result of checking one proof against one card."""
    accepted: bool
    reason: Optional[ReasonCode] = None
    counter: Optional[int] = None

    @property
    def new_high_water_mark(self) -> Optional[int]:
        """The counter to persist on accept; None on reject."""
        return self.counter if self.accepted else None

    @classmethod
    def accept(cls, counter: int) -> "VerifyOutcome":
        return cls(accepted=True, counter=counter)

    @classmethod
    def reject(cls, reason: ReasonCode, counter: Optional[int] = None) -> "VerifyOutcome":
        return cls(accepted=False, reason=reason, counter=counter)


def mac_input(card_id: str, counter: int) -> bytes:
    """card_id_bytes || u64_le(counter)"""
    return b64url_decode(card_id) + struct.pack("<Q", counter)


def compute_tag(secret: bytes, card_id: str, counter: int) -> bytes:
    """Compute the truncated tag for (card_id, counter)."""
    full = hmac.new(secret, mac_input(card_id, counter), hashlib.sha256).digest()
    return full[:TAG_LENGTH]


def encode_tag(tag: bytes) -> str:
    return b64url_encode(tag)


def decode_tag(value: Any) -> Optional[bytes]:
    """
    Decode a wire tag; None when it is not the canonical unpadded base64url
    of exactly TAG_LENGTH bytes. The final character's unused low bits must
    be zero, so each tag has exactly one accepted spelling.
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        raw = b64url_decode(value)
    except ValueError:
        return None
    if len(raw) != TAG_LENGTH or b64url_encode(raw) != value:
        return None
    return raw


def gate_active(card: Card) -> bool:
    """Revoked cards never verify, whatever the proof."""
    return card.active


def gate_not_expired(card: Card, now: int) -> bool:
    """A card is valid strictly before its expiry instant."""
    return now < card.expires_at


def gate_counter_fresh(card: Card, counter: int) -> bool:
    """
    Counters must strictly increase. An unset high-water-mark admits
    any counter including 0.
    """
    hwm = card.counter_high_water_mark
    return hwm is None or counter > hwm


def gate_tag(card: Card, counter: int, claimed_tag: bytes) -> bool:
    expected = compute_tag(card.secret, card.card_id, counter)
    return hmac.compare_digest(expected, claimed_tag)


def verify_proof(card: Card, claimed_counter: Any, claimed_tag: Any, now: int) -> VerifyOutcome:
    """
    Verify a counter-MAC proof against stored card state.

    Args:
        card: Card as loaded by CredentialStore.load() (secret populated)
        claimed_counter: Counter in wire form (decimal string or int)
        claimed_tag: Tag in wire form (base64url)
        now: Current Unix timestamp

    Returns:
        VerifyOutcome; on accept, new_high_water_mark is the claimed counter
    """
    counter = parse_counter(claimed_counter, MAX_COUNTER)

    if not gate_active(card):
        return VerifyOutcome.reject(ReasonCode.CARD_INACTIVE, counter)

    if not gate_not_expired(card, now):
        return VerifyOutcome.reject(ReasonCode.CARD_EXPIRED, counter)

    tag = decode_tag(claimed_tag)
    if counter is None or tag is None or card.mac_version != MAC_VERSION:
        return VerifyOutcome.reject(ReasonCode.MALFORMED_PROOF, counter)

    if not gate_counter_fresh(card, counter):
        return VerifyOutcome.reject(ReasonCode.REPLAYED_COUNTER, counter)

    if not gate_tag(card, counter, tag):
        return VerifyOutcome.reject(ReasonCode.TAG_MISMATCH, counter)

    return VerifyOutcome.accept(counter)
