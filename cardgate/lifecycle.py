"""
Card lifecycle management for Cardgate: issue, extend, revoke, list.

These operations are off the verification hot path. Cards are never
deleted; revocation is a tombstone (active=0) so audit records keep
pointing at an existing card.
"""

import logging
import secrets
from typing import Callable, List, Optional

from . import config
from .audit import AuditEvent, AuditSink, EventCategory, EventType
from .errors import CardNotFound, InvalidTTL
from .logging_config import audit_log
from .orchestrator import record_event
from .qr import build_card_token
from .store import Card, CredentialStore, UserRole
from .util import b64url_encode, now_epoch
from .verifier import CARD_ID_LENGTH, MAC_VERSION, SECRET_LENGTH

logger = logging.getLogger(__name__)


class CardLifecycleManager:

    def __init__(
        self,
        store: CredentialStore,
        sink: AuditSink,
        min_ttl: int = config.MIN_CARD_TTL_SECONDS,
        clock: Callable[[], int] = now_epoch,
        max_ttl: int = config.MAX_CARD_TTL_SECONDS
    ):
        self.store = store
        self.sink = sink
        self.min_ttl = min_ttl
        self.max_ttl = max_ttl
        self.clock = clock

    def _check_ttl(self, name: str, seconds: int) -> int:
        if seconds < self.min_ttl:
            raise InvalidTTL(f"{name} must be at least {self.min_ttl}")
        if seconds > self.max_ttl:
            raise InvalidTTL(f"{name} must be at most {self.max_ttl}")
        return seconds

    def issue(
        self,
        owner: str,
        ttl_seconds: Optional[int] = None,
        role: Optional[str] = None,
        generate_qr: bool = False
    ) -> Card:
        """
        Issue a new card with a fresh id and secret.

        A missing ttl_seconds takes the role's default lifetime.

        Raises:
            InvalidTTL: ttl_seconds outside the configured bounds
            StoreUnavailable: the card could not be stored
        """
        user_role = UserRole.parse(role)
        ttl = user_role.default_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        self._check_ttl("ttlSeconds", ttl)

        now = self.clock()
        card_id = b64url_encode(secrets.token_bytes(CARD_ID_LENGTH))
        card = Card(
            card_id=card_id,
            owner=owner,
            role=user_role,
            created_at=now,
            expires_at=now + ttl,
            active=True,
            counter_high_water_mark=None,
            mac_version=MAC_VERSION,
            secret=secrets.token_bytes(SECRET_LENGTH),
        )
        if generate_qr:
            card.qr_code = build_card_token(card_id, owner, user_role.value)
        self.store.create(card)
        card.secret = b""

        audit_log.card_lifecycle(card_id, "issued", owner=owner, role=user_role.value, ttl_seconds=ttl)
        self._emit(EventType.CARD_CREATED, card, f"Card issued, ttl={ttl}s")
        return card

    def extend(self, card_id: str, extra_seconds: int) -> Card:
        """
        expires_at := max(now, expires_at) + extra_seconds.
        Works on revoked cards without reactivating them. The new expiry
        may not lie more than max_ttl seconds past now.

        Raises:
            InvalidTTL: extra_seconds out of bounds, or the new expiry passes the cap
            CardNotFound: no such card
        """
        extra_seconds = self._check_ttl("extraSeconds", int(extra_seconds))
        if self.store.get_summary(card_id) is None:
            raise CardNotFound(f"card {card_id} not found")
        now = self.clock()
        # cards are never deleted, so a refused update means the cap was hit
        new_expiry = self.store.extend(card_id, now, extra_seconds, now + self.max_ttl)
        if new_expiry is None:
            raise InvalidTTL(f"expiry may not be more than {self.max_ttl}s from now")
        card = self.store.get_summary(card_id)
        audit_log.card_lifecycle(card_id, "extended", extra_seconds=extra_seconds, expires_at=new_expiry)
        self._emit(EventType.CARD_EXTENDED, card, f"Expiry extended by {extra_seconds}s")
        return card

    def revoke(self, card_id: str) -> Card:
        """
        Deactivate a card. Revoking an already revoked card succeeds.

        Raises:
            CardNotFound: no such card
        """
        card = self.store.get_summary(card_id)
        if card is None:
            raise CardNotFound(f"card {card_id} not found")
        changed = self.store.deactivate(card_id)
        card.active = False
        if changed:
            audit_log.card_lifecycle(card_id, "revoked")
            self._emit(EventType.CARD_REVOKED, card, "Card revoked")
        return card

    def status(self, card_id: str) -> Card:
        card = self.store.get_summary(card_id)
        if card is None:
            raise CardNotFound(f"card {card_id} not found")
        return card

    def list(
        self,
        active: Optional[bool] = None,
        role: Optional[str] = None,
        owner: Optional[str] = None
    ) -> List[Card]:
        return self.store.list(active=active, role=role, owner=owner)

    def regenerate_qr(self, card_id: str) -> Card:
        """Mint a new opaque QR token for a card, replacing any previous one."""
        card = self.status(card_id)
        card.qr_code = build_card_token(card_id, card.owner, card.role.value)
        self.store.set_qr_code(card_id, card.qr_code)
        return card

    def _emit(self, event_type: str, card: Card, message: str) -> None:
        record_event(self.sink, AuditEvent(
            event_type=event_type,
            event_category=EventCategory.ADMINISTRATION,
            success=True,
            card_id=card.card_id,
            owner=card.owner,
            user_role=card.role.value,
            message=message,
        ))
