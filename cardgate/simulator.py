"""
Card simulator.

Plays the card side of the counter-MAC protocol for cards issued by
this server, so readers and demos can be exercised without hardware.
The simulated card keeps its own counter and always answers with the
next value above both that counter and the server's high-water-mark.
"""

from typing import Dict, Optional

from . import db
from . import config
from .locks import retry_transient
from .store import CredentialStore
from .verifier import compute_tag, encode_tag


class CardSimulator:

    def __init__(self, store: CredentialStore):
        self.store = store

    def respond(self, card_id: str) -> Optional[Dict[str, str]]:
        """
        Produce the next proof for card_id as the reader would scan it.
        Returns None for an unknown card.
        """
        card = self.store.load(card_id)
        if card is None:
            return None
        floor = card.counter_high_water_mark if card.counter_high_water_mark is not None else -1
        ctr = retry_transient(
            lambda: db.next_sim_counter(card_id, floor),
            attempts=config.STORE_RETRY_ATTEMPTS,
            base_delay=config.STORE_RETRY_BASE_DELAY,
            operation="next_sim_counter"
        )
        tag = compute_tag(card.secret, card_id, ctr)
        return {"cardId": card_id, "ctr": str(ctr), "tag": encode_tag(tag)}
