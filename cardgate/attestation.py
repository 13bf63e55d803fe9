"""
Reader attestation for Cardgate.

A reader proves its identity by signing a single-use challenge with its
registered Ed25519 key. A successful proof consumes the challenge and
mints an opaque attestation token that the reader presents on every
card verification call until the token expires or is used up.

Challenge states:
    issued -> consumed   first valid signature
    issued -> expired    TTL elapsed, or MAX_ATTESTATION_ATTEMPTS bad signatures
A bad signature below the attempt limit leaves the challenge issued.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import config
from . import db
from .errors import ReasonCode, UnknownReader
from .keys import ReaderRegistry, verify_ed25519
from .locks import retry_transient
from .logging_config import audit_log
from .util import now_epoch, random_b64url, sha256_hex, utc_rfc3339

logger = logging.getLogger(__name__)


@dataclass
class Challenge:
    challenge: str
    reader_id: str
    issued_at: int
    expires_at: int


@dataclass
class AttestationResult:
    """Outcome of verify_attestation. `token` is only ever returned here."""
    ok: bool
    reader_id: str
    reason: Optional[ReasonCode] = None
    token: Optional[str] = None
    attested_at: Optional[int] = None
    expires_at: Optional[int] = None

    @classmethod
    def rejected(cls, reader_id: str, reason: ReasonCode) -> "AttestationResult":
        return cls(ok=False, reader_id=reader_id, reason=reason)


class AttestationEngine:
    """Challenge issuance, signature verification and token validation."""

    def __init__(
        self,
        registry: ReaderRegistry,
        challenge_ttl: int = config.CHALLENGE_TTL_SECONDS,
        grace_seconds: int = config.CHALLENGE_GRACE_SECONDS,
        max_attempts: int = config.MAX_ATTESTATION_ATTEMPTS,
        token_ttl: int = config.ATTESTATION_TOKEN_TTL_SECONDS,
        token_max_uses: int = config.ATTESTATION_TOKEN_MAX_USES,
        enforce_registry: bool = config.ENFORCE_READER_REGISTRY,
        clock: Callable[[], int] = now_epoch
    ):
        self.registry = registry
        self.challenge_ttl = challenge_ttl
        self.grace_seconds = grace_seconds
        self.max_attempts = max_attempts
        self.token_ttl = token_ttl
        self.token_max_uses = token_max_uses
        self.enforce_registry = enforce_registry
        self.clock = clock

    @staticmethod
    def _store(operation: str, fn):
        return retry_transient(fn, attempts=config.STORE_RETRY_ATTEMPTS,
                               base_delay=config.STORE_RETRY_BASE_DELAY, operation=operation)

    def issue_challenge(self, reader_id: str) -> Challenge:
        """
        Issue a fresh challenge bound to reader_id.

        Raises:
            UnknownReader: registry enforcement is on and the reader is not enrolled
            StoreUnavailable: the challenge could not be stored
        """
        if self.enforce_registry and not self.registry.is_registered(reader_id):
            audit_log.attestation_event(reader_id, "challenge_refused", False, ReasonCode.UNKNOWN_READER.value)
            raise UnknownReader(f"reader {reader_id} is not registered")

        now = self.clock()
        self.purge(now)
        ch = Challenge(
            challenge=random_b64url(32),
            reader_id=reader_id,
            issued_at=now,
            expires_at=now + self.challenge_ttl,
        )
        self._store("insert_challenge",
                    lambda: db.insert_challenge(ch.challenge, reader_id, ch.issued_at, ch.expires_at))
        audit_log.attestation_event(reader_id, "challenge_issued", True)
        return ch

    def verify_attestation(self, reader_id: str, challenge: Any, signature: Any) -> AttestationResult:
        """
        Check a reader's signature over a challenge it was issued.

        Never raises for protocol failures; StoreUnavailable propagates.
        """
        if not isinstance(challenge, str) or not challenge:
            return self._reject(reader_id, ReasonCode.CHALLENGE_NOT_FOUND)

        now = self.clock()
        row = self._store("get_challenge", lambda: db.get_challenge(challenge))
        if row is None or row["reader_id"] != reader_id or row["state"] == "consumed":
            return self._reject(reader_id, ReasonCode.CHALLENGE_NOT_FOUND)
        if row["state"] == "expired":
            return self._reject(reader_id, ReasonCode.CHALLENGE_EXPIRED)
        if now > row["expires_at"]:
            self._store("close_challenge", lambda: db.close_challenge(challenge, "expired", now))
            return self._reject(reader_id, ReasonCode.CHALLENGE_EXPIRED)

        public_key = self.registry.get_public_key(reader_id)
        if (not isinstance(signature, str) or public_key is None
                or not verify_ed25519(signature, challenge.encode("utf-8"), public_key)):
            attempts = self._store(
                "record_challenge_failure",
                lambda: db.record_challenge_failure(challenge, self.max_attempts, now)
            )
            logger.info("attestation signature rejected for %s (attempt %d)", reader_id, attempts)
            return self._reject(reader_id, ReasonCode.SIGNATURE_INVALID)

        if not self._store("close_challenge", lambda: db.close_challenge(challenge, "consumed", now)):
            # Lost a race with a concurrent verification of the same challenge
            return self._reject(reader_id, ReasonCode.CHALLENGE_NOT_FOUND)

        token = random_b64url(32)
        expires_at = now + self.token_ttl
        self._store("insert_token",
                    lambda: db.insert_token(sha256_hex(token), reader_id, now, expires_at))
        audit_log.attestation_event(reader_id, "attested", True)
        return AttestationResult(ok=True, reader_id=reader_id, token=token,
                                 attested_at=now, expires_at=expires_at)

    def validate_token(self, reader_id: str, token: Optional[str]) -> bool:
        """
        Count one use of an attestation token for reader_id.
        True if the token is known, bound to this reader, unexpired and not used up.
        """
        if not token or not reader_id:
            return False
        now = self.clock()
        return self._store(
            "use_token",
            lambda: db.use_token(sha256_hex(token), reader_id, now, self.token_max_uses)
        )

    def status(self, reader_id: str) -> Dict[str, Any]:
        now = self.clock()
        tok = self._store("latest_token", lambda: db.latest_token(reader_id, now))
        if tok is None:
            return {"status": "NOT_ATTESTED", "readerId": reader_id}
        return {
            "status": "ATTESTED",
            "readerId": reader_id,
            "attestedAt": utc_rfc3339(tok["issued_at"]),
            "expiresAt": utc_rfc3339(tok["expires_at"]),
        }

    def purge(self, now: Optional[int] = None) -> int:
        """Garbage-collect terminal challenges past the grace period and expired tokens."""
        now = self.clock() if now is None else now
        removed = self._store("purge_challenges", lambda: db.purge_challenges(now, self.grace_seconds))
        removed += self._store("purge_tokens", lambda: db.purge_tokens(now))
        return removed

    def _reject(self, reader_id: str, reason: ReasonCode) -> AttestationResult:
        audit_log.attestation_event(reader_id, "attestation_rejected", False, reason.value)
        return AttestationResult.rejected(reader_id, reason)
