"""
Credential Store for Cardgate.

The durable registry of cards. It is the only writer of the counter
high-water-mark, the active flag and the expiry, and the only place
where card secrets are unwrapped.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from nacl.exceptions import CryptoError

from . import db
from . import config
from .errors import StoreUnavailable
from .keys import SecretWrapper
from .locks import retry_transient
from .util import utc_rfc3339


class UserRole(str, Enum):
    """Card role. Informational: not enforced by verification."""
    ADMIN = "admin"
    PERMANENT = "permanent"
    TEMPORARY = "temporary"
    GUEST = "guest"

    @property
    def default_ttl_seconds(self) -> int:
        return {
            UserRole.ADMIN: 365 * 24 * 3600,
            UserRole.PERMANENT: 90 * 24 * 3600,
            UserRole.TEMPORARY: 7 * 24 * 3600,
            UserRole.GUEST: 24 * 3600,
        }[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "UserRole":
        """Case-insensitive lookup; unknown or missing roles fall back to PERMANENT."""
        if value:
            for role in cls:
                if role.value == value.strip().lower():
                    return role
        return cls.PERMANENT


@dataclass
class Card:
    """A credential record. `secret` is populated only by CredentialStore.load()."""
    card_id: str
    owner: str
    role: UserRole
    created_at: int
    expires_at: int
    active: bool = True
    counter_high_water_mark: Optional[int] = None
    mac_version: str = "hmac-sha256-128-v1"
    qr_code: Optional[str] = None
    secret: bytes = field(default=b"", repr=False)

    def summary(self) -> Dict[str, Any]:
        """Read-only projection; never includes the secret."""
        return {
            "cardId": self.card_id,
            "owner": self.owner,
            "userRole": self.role.value,
            "createdAt": utc_rfc3339(self.created_at),
            "expiresAt": utc_rfc3339(self.expires_at),
            "active": self.active,
            "lastCounter": self.counter_high_water_mark,
            "macVersion": self.mac_version,
            "hasQrCode": self.qr_code is not None,
        }


class CredentialStore:
    """
    Card persistence over cardgate.db.

    All sqlite errors surface as StoreUnavailable after the bounded
    retry policy.
    """

    def __init__(
        self,
        wrapper: SecretWrapper,
        retry_attempts: int = config.STORE_RETRY_ATTEMPTS,
        retry_base_delay: float = config.STORE_RETRY_BASE_DELAY
    ):
        self._wrapper = wrapper
        self._attempts = retry_attempts
        self._base_delay = retry_base_delay

    def _call(self, operation: str, fn):
        return retry_transient(fn, attempts=self._attempts, base_delay=self._base_delay,
                               operation=operation)

    def _from_row(self, row: Dict[str, Any], with_secret: bool) -> Card:
        secret = b""
        if with_secret:
            try:
                secret = self._wrapper.unwrap(row["secret_wrapped"])
            except CryptoError as e:
                raise StoreUnavailable(f"secret for {row['card_id']} cannot be unwrapped") from e
        return Card(
            card_id=row["card_id"],
            owner=row["owner"],
            role=UserRole.parse(row["user_role"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            active=bool(row["active"]),
            counter_high_water_mark=row["last_ctr"],
            mac_version=row["mac_version"],
            qr_code=row["qr_code"],
            secret=secret,
        )

    def create(self, card: Card) -> None:
        row = {
            "card_id": card.card_id,
            "secret_wrapped": self._wrapper.wrap(card.secret),
            "owner": card.owner,
            "user_role": card.role.value,
            "mac_version": card.mac_version,
            "last_ctr": card.counter_high_water_mark,
            "created_at": card.created_at,
            "expires_at": card.expires_at,
            "active": card.active,
            "qr_code": card.qr_code,
        }
        self._call("insert_card", lambda: db.insert_card(row))

    def load(self, card_id: str) -> Optional[Card]:
        """Load a card including its unwrapped secret."""
        row = self._call("get_card", lambda: db.get_card(card_id))
        return self._from_row(row, with_secret=True) if row else None

    def get_summary(self, card_id: str) -> Optional[Card]:
        """Load a card without touching its secret."""
        row = self._call("get_card", lambda: db.get_card(card_id))
        return self._from_row(row, with_secret=False) if row else None

    def advance_counter(self, card_id: str, ctr: int) -> bool:
        return self._call("advance_counter", lambda: db.advance_counter(card_id, ctr))

    def deactivate(self, card_id: str) -> bool:
        return self._call("deactivate_card", lambda: db.deactivate_card(card_id))

    def extend(self, card_id: str, now: int, extra_seconds: int, max_expiry: int) -> Optional[int]:
        return self._call("extend_card", lambda: db.extend_card(card_id, now, extra_seconds, max_expiry))

    def set_qr_code(self, card_id: str, qr_code: str) -> bool:
        return self._call("set_qr_code", lambda: db.set_qr_code(card_id, qr_code))

    def list(
        self,
        active: Optional[bool] = None,
        role: Optional[str] = None,
        owner: Optional[str] = None
    ) -> List[Card]:
        rows = self._call("list_cards", lambda: db.list_cards(active=active, role=role, owner=owner))
        return [self._from_row(r, with_secret=False) for r in rows]
