"""
Verification orchestration for Cardgate.

Sequences one access attempt:

    reader attested? -> lock(card_id) -> load card -> verify proof
        -> persist counter -> unlock -> audit

At most one verification per card id computes a counter update at any
instant. A proof that verifies but whose counter cannot be persisted is
denied. Every attempt, whatever its outcome, writes exactly one audit
event; a failing audit sink is reported to the process log and never
changes the decision.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from . import config
from .attestation import AttestationEngine
from .audit import AuditEvent, AuditSink, EventCategory, EventType
from .errors import ReasonCode, StoreUnavailable
from .locks import KeyedLock, LockTimeout
from .logging_config import audit_log
from .qr import OpaqueCardToken, ProofPayload, parse_qr_payload
from .security import CARD_ID_PATTERN, truncate
from .store import Card, CredentialStore
from .util import constant_time_compare, now_epoch
from .verifier import verify_proof

logger = logging.getLogger(__name__)


@dataclass
class ReaderContext:
    """Who is asking: the reader identity, its attestation token and request metadata."""
    reader_id: Optional[str]
    token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None


@dataclass
class VerifyResult:
    granted: bool
    reason: Optional[ReasonCode] = None
    card_id: Optional[str] = None
    counter: Optional[int] = None
    response_time_ms: int = 0

    @property
    def status(self) -> str:
        return "OK" if self.granted else "FAIL"

    @property
    def retryable(self) -> bool:
        return self.reason is not None and self.reason.retryable


class VerificationOrchestrator:

    def __init__(
        self,
        store: CredentialStore,
        attestation: AttestationEngine,
        sink: AuditSink,
        locks: Optional[KeyedLock] = None,
        lock_timeout: float = config.VERIFY_TIMEOUT_SECONDS,
        require_attestation: bool = config.REQUIRE_READER_ATTESTATION,
        clock: Callable[[], int] = now_epoch
    ):
        self.store = store
        self.attestation = attestation
        self.sink = sink
        self.locks = locks or KeyedLock()
        self.lock_timeout = lock_timeout
        self.require_attestation = require_attestation
        self.clock = clock

    # ------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------

    def handle_verify(self, card_id: Any, counter: Any, tag: Any, reader: ReaderContext) -> VerifyResult:
        """Verify a counter-MAC proof. Never raises."""
        started = time.monotonic()
        card: Optional[Card] = None
        reason = self._check_reader(reader)

        if reason is None and (not isinstance(card_id, str) or not CARD_ID_PATTERN.match(card_id)):
            reason = ReasonCode.MALFORMED_PROOF

        result = None
        if reason is None:
            try:
                with self.locks.hold(card_id, self.lock_timeout):
                    card, result = self._verify_locked(card_id, counter, tag)
            except LockTimeout:
                logger.warning("verification of %s timed out waiting for card lock", card_id)
                reason = ReasonCode.TIMEOUT

        if result is None:
            result = VerifyResult(granted=False, reason=reason)
        result.card_id = card_id if isinstance(card_id, str) else None
        result.response_time_ms = int((time.monotonic() - started) * 1000)

        self._emit(
            EventType.ACCESS_GRANTED if result.granted else EventType.ACCESS_DENIED,
            EventCategory.SYSTEM if result.reason == ReasonCode.MISSING_READER_ID else EventCategory.AUTHENTICATION,
            result, card, reader,
            "Access granted" if result.granted else "Access denied"
        )
        return result

    def handle_card_token(self, token: OpaqueCardToken, reader: ReaderContext) -> VerifyResult:
        """
        Check an opaque QR card token. Read-only: counters are not involved.
        """
        started = time.monotonic()
        card: Optional[Card] = None
        reason = self._check_reader(reader)

        if reason is None:
            try:
                card = self.store.get_summary(token.card_id)
            except StoreUnavailable as e:
                logger.error("store unavailable during QR token check: %s", e)
                reason = ReasonCode.STORE_UNAVAILABLE

        if reason is None:
            now = self.clock()
            if card is None:
                reason = ReasonCode.CARD_NOT_FOUND
            elif not card.qr_code or not constant_time_compare(card.qr_code, token.raw):
                reason = ReasonCode.MALFORMED_PROOF
            elif not card.active:
                reason = ReasonCode.CARD_INACTIVE
            elif now >= card.expires_at:
                reason = ReasonCode.CARD_EXPIRED

        result = VerifyResult(granted=reason is None, reason=reason, card_id=token.card_id,
                              response_time_ms=int((time.monotonic() - started) * 1000))
        self._emit(EventType.QR_SCAN, EventCategory.AUTHENTICATION, result, card, reader,
                   "QR card token accepted" if result.granted else "QR card token rejected")
        return result

    def handle_qr(self, qr_code: Any, reader: ReaderContext) -> VerifyResult:
        """Dispatch a QR payload on its parsed variant."""
        payload = parse_qr_payload(qr_code)
        if isinstance(payload, ProofPayload):
            return self.handle_verify(payload.card_id, payload.ctr, payload.tag, reader)
        if isinstance(payload, OpaqueCardToken):
            return self.handle_card_token(payload, reader)

        result = VerifyResult(granted=False, reason=ReasonCode.MALFORMED_PROOF)
        self._emit(EventType.QR_SCAN, EventCategory.AUTHENTICATION, result, None, reader,
                   f"Unparseable QR payload: {payload.reason}")
        return result

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _check_reader(self, reader: ReaderContext) -> Optional[ReasonCode]:
        if not reader.reader_id:
            return ReasonCode.MISSING_READER_ID
        if not self.require_attestation:
            return None
        try:
            if not self.attestation.validate_token(reader.reader_id, reader.token):
                return ReasonCode.READER_NOT_ATTESTED
        except StoreUnavailable as e:
            logger.error("store unavailable during attestation check: %s", e)
            return ReasonCode.STORE_UNAVAILABLE
        return None

    def _verify_locked(self, card_id: str, counter: Any, tag: Any):
        """Runs with the card lock held. Returns (card, result)."""
        try:
            card = self.store.load(card_id)
        except StoreUnavailable as e:
            logger.error("store unavailable loading %s: %s", card_id, e)
            return None, VerifyResult(granted=False, reason=ReasonCode.STORE_UNAVAILABLE)

        if card is None:
            return None, VerifyResult(granted=False, reason=ReasonCode.CARD_NOT_FOUND)

        outcome = verify_proof(card, counter, tag, self.clock())
        card.secret = b""
        if not outcome.accepted:
            return card, VerifyResult(granted=False, reason=outcome.reason, counter=outcome.counter)

        try:
            persisted = self.store.advance_counter(card_id, outcome.new_high_water_mark)
        except StoreUnavailable as e:
            logger.error("could not persist counter %s for %s: %s", outcome.counter, card_id, e)
            return card, VerifyResult(granted=False, reason=ReasonCode.STORE_UNAVAILABLE,
                                      counter=outcome.counter)
        if not persisted:
            # Another writer advanced the high-water-mark past this counter
            return card, VerifyResult(granted=False, reason=ReasonCode.REPLAYED_COUNTER,
                                      counter=outcome.counter)
        return card, VerifyResult(granted=True, counter=outcome.counter)

    def _emit(
        self,
        event_type: str,
        category: str,
        result: VerifyResult,
        card: Optional[Card],
        reader: ReaderContext,
        message: str
    ) -> None:
        reason = result.reason.value if result.reason else None
        audit_log.access_decision(result.card_id, reader.reader_id, result.granted,
                                  reason, result.counter, result.response_time_ms)
        event = AuditEvent(
            event_type=event_type,
            event_category=category,
            success=result.granted,
            card_id=truncate(result.card_id, 64),
            reader_id=truncate(reader.reader_id, 64),
            owner=card.owner if card else None,
            user_role=card.role.value if card else None,
            message=truncate(message, 500),
            error_code=reason,
            counter_value=result.counter,
            response_time_ms=result.response_time_ms,
            ip_address=truncate(reader.ip_address, 45),
            user_agent=truncate(reader.user_agent, 500),
            request_id=reader.request_id,
        )
        record_event(self.sink, event)


def record_event(sink: AuditSink, event: AuditEvent) -> bool:
    """
    Write an audit event. Sink failures are logged on the process log
    and reported as False; they never propagate.
    """
    try:
        sink.record(event)
        return True
    except Exception as e:
        logger.exception("audit sink failure")
        audit_log.audit_write_failed(event.event_type, event.card_id, str(e))
        return False
