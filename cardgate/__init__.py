"""
Cardgate: counter-MAC card verification with reader attestation.

A card proves possession of its secret for one never-reused counter
value; a reader proves its identity by signing a server challenge.
Every access decision is written to an append-only, hash-chained
audit log.
"""

__version__ = "1.0.0"
