"""
Reason codes and exceptions for Cardgate.

Verification paths never raise these to the caller: they are folded into
outcome values carrying a ReasonCode. The exceptions below are raised at
administrative seams and translated into HTTP responses in main.py.
"""

from enum import Enum


class ReasonCode(str, Enum):
    """Why an access or attestation decision was negative."""
    CARD_INACTIVE = "CARD_INACTIVE"
    CARD_EXPIRED = "CARD_EXPIRED"
    REPLAYED_COUNTER = "REPLAYED_COUNTER"
    TAG_MISMATCH = "TAG_MISMATCH"
    MALFORMED_PROOF = "MALFORMED_PROOF"
    CARD_NOT_FOUND = "CARD_NOT_FOUND"
    READER_NOT_ATTESTED = "READER_NOT_ATTESTED"
    MISSING_READER_ID = "MISSING_READER_ID"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    CHALLENGE_NOT_FOUND = "CHALLENGE_NOT_FOUND"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    UNKNOWN_READER = "UNKNOWN_READER"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    INVALID_TTL = "INVALID_TTL"

    @property
    def retryable(self) -> bool:
        return self in (ReasonCode.STORE_UNAVAILABLE, ReasonCode.TIMEOUT)


class CardgateError(Exception):
    """Base class for errors raised outside the verification hot path."""
    reason = ReasonCode.STORE_UNAVAILABLE

    def __init__(self, message: str = ""):
        self.message = message or self.reason.value
        super().__init__(self.message)


class StoreUnavailable(CardgateError):
    """The credential or attestation store could not be read or written."""
    reason = ReasonCode.STORE_UNAVAILABLE


class CardNotFound(CardgateError):
    reason = ReasonCode.CARD_NOT_FOUND


class InvalidTTL(CardgateError):
    reason = ReasonCode.INVALID_TTL


class UnknownReader(CardgateError):
    reason = ReasonCode.UNKNOWN_READER
