"""
Reader attestation tests: challenge lifecycle, signature checks and tokens.
"""

import unittest

from nacl.signing import SigningKey

from cardgate import db
from cardgate.attestation import AttestationEngine
from cardgate.errors import ReasonCode, UnknownReader
from cardgate.keys import StaticReaderRegistry
from cardgate.util import b64e

START = 1_700_000_000


class Clock:
    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now


def sign(key: SigningKey, challenge: str) -> str:
    return b64e(key.sign(challenge.encode("utf-8")).signature)


class AttestationTestCase(unittest.TestCase):

    def setUp(self):
        db.reset_db()
        self.clock = Clock()
        self.key = SigningKey.generate()
        self.other_key = SigningKey.generate()
        self.registry = StaticReaderRegistry({"door-1": b64e(bytes(self.key.verify_key))})
        self.registry.register("door-2", b64e(bytes(self.other_key.verify_key)))
        self.engine = self.make_engine()

    def make_engine(self, **kwargs) -> AttestationEngine:
        params = dict(challenge_ttl=120, grace_seconds=300, max_attempts=3,
                      token_ttl=600, token_max_uses=0, enforce_registry=True, clock=self.clock)
        params.update(kwargs)
        return AttestationEngine(self.registry, **params)


class TestChallenges(AttestationTestCase):

    def test_challenge_shape(self):
        ch = self.engine.issue_challenge("door-1")
        self.assertEqual(ch.reader_id, "door-1")
        self.assertEqual(ch.expires_at, START + 120)
        self.assertEqual(len(ch.challenge), 43)
        self.assertNotEqual(ch.challenge, self.engine.issue_challenge("door-1").challenge)

    def test_unknown_reader_refused_when_enforced(self):
        with self.assertRaises(UnknownReader):
            self.engine.issue_challenge("intruder")

    def test_reader_registered_at_runtime_can_attest(self):
        late_key = SigningKey.generate()
        self.registry.register("door-3", b64e(bytes(late_key.verify_key)))
        ch = self.engine.issue_challenge("door-3")
        self.assertTrue(self.engine.verify_attestation("door-3", ch.challenge, sign(late_key, ch.challenge)).ok)

    def test_unknown_reader_gets_challenge_when_not_enforced(self):
        engine = self.make_engine(enforce_registry=False)
        ch = engine.issue_challenge("intruder")
        result = engine.verify_attestation("intruder", ch.challenge, sign(self.key, ch.challenge))
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, ReasonCode.SIGNATURE_INVALID)


class TestVerifyAttestation(AttestationTestCase):

    def test_valid_signature_attests_and_consumes(self):
        ch = self.engine.issue_challenge("door-1")
        result = self.engine.verify_attestation("door-1", ch.challenge, sign(self.key, ch.challenge))
        self.assertTrue(result.ok)
        self.assertEqual(result.attested_at, START)
        self.assertEqual(result.expires_at, START + 600)
        self.assertTrue(result.token)
        self.assertEqual(db.get_challenge(ch.challenge)["state"], "consumed")

    def test_challenge_is_single_use(self):
        ch = self.engine.issue_challenge("door-1")
        sig = sign(self.key, ch.challenge)
        self.assertTrue(self.engine.verify_attestation("door-1", ch.challenge, sig).ok)
        again = self.engine.verify_attestation("door-1", ch.challenge, sig)
        self.assertFalse(again.ok)
        self.assertEqual(again.reason, ReasonCode.CHALLENGE_NOT_FOUND)

    def test_challenge_bound_to_reader(self):
        ch = self.engine.issue_challenge("door-1")
        result = self.engine.verify_attestation("door-2", ch.challenge, sign(self.other_key, ch.challenge))
        self.assertEqual(result.reason, ReasonCode.CHALLENGE_NOT_FOUND)
        self.assertEqual(db.get_challenge(ch.challenge)["state"], "issued")

    def test_unknown_challenge(self):
        result = self.engine.verify_attestation("door-1", "nope", sign(self.key, "nope"))
        self.assertEqual(result.reason, ReasonCode.CHALLENGE_NOT_FOUND)

    def test_missing_challenge(self):
        self.assertEqual(self.engine.verify_attestation("door-1", None, "x").reason,
                         ReasonCode.CHALLENGE_NOT_FOUND)

    def test_expired_challenge(self):
        ch = self.engine.issue_challenge("door-1")
        self.clock.now = START + 121
        result = self.engine.verify_attestation("door-1", ch.challenge, sign(self.key, ch.challenge))
        self.assertEqual(result.reason, ReasonCode.CHALLENGE_EXPIRED)
        self.assertEqual(db.get_challenge(ch.challenge)["state"], "expired")

    def test_challenge_valid_at_expiry_instant(self):
        ch = self.engine.issue_challenge("door-1")
        self.clock.now = START + 120
        self.assertTrue(self.engine.verify_attestation("door-1", ch.challenge, sign(self.key, ch.challenge)).ok)

    def test_bad_signature_leaves_challenge_open(self):
        ch = self.engine.issue_challenge("door-1")
        bad = self.engine.verify_attestation("door-1", ch.challenge, sign(self.other_key, ch.challenge))
        self.assertEqual(bad.reason, ReasonCode.SIGNATURE_INVALID)
        self.assertEqual(db.get_challenge(ch.challenge)["state"], "issued")
        self.assertTrue(self.engine.verify_attestation("door-1", ch.challenge, sign(self.key, ch.challenge)).ok)

    def test_garbage_signature(self):
        engine = self.make_engine(max_attempts=10)
        ch = engine.issue_challenge("door-1")
        for sig in (None, "", "not-base64!", b64e(b"short")):
            with self.subTest(sig=sig):
                self.assertEqual(engine.verify_attestation("door-1", ch.challenge, sig).reason,
                                 ReasonCode.SIGNATURE_INVALID)

    def test_too_many_bad_signatures_expire_challenge(self):
        ch = self.engine.issue_challenge("door-1")
        for _ in range(3):
            self.engine.verify_attestation("door-1", ch.challenge, sign(self.other_key, ch.challenge))
        self.assertEqual(db.get_challenge(ch.challenge)["state"], "expired")
        result = self.engine.verify_attestation("door-1", ch.challenge, sign(self.key, ch.challenge))
        self.assertEqual(result.reason, ReasonCode.CHALLENGE_EXPIRED)

    def test_purge_removes_closed_challenges_after_grace(self):
        ch = self.engine.issue_challenge("door-1")
        self.assertTrue(self.engine.verify_attestation("door-1", ch.challenge, sign(self.key, ch.challenge)).ok)
        self.clock.now = START + 299
        self.engine.purge()
        self.assertIsNotNone(db.get_challenge(ch.challenge))
        self.clock.now = START + 301
        self.engine.purge()
        self.assertIsNone(db.get_challenge(ch.challenge))


class TestTokens(AttestationTestCase):

    def attest(self, engine=None, reader="door-1", key=None):
        engine = engine or self.engine
        ch = engine.issue_challenge(reader)
        return engine.verify_attestation(reader, ch.challenge, sign(key or self.key, ch.challenge)).token

    def test_token_validates_for_its_reader_only(self):
        token = self.attest()
        self.assertTrue(self.engine.validate_token("door-1", token))
        self.assertFalse(self.engine.validate_token("door-2", token))
        self.assertFalse(self.engine.validate_token("door-1", "forged"))
        self.assertFalse(self.engine.validate_token("door-1", None))

    def test_token_expires(self):
        token = self.attest()
        self.clock.now = START + 599
        self.assertTrue(self.engine.validate_token("door-1", token))
        self.clock.now = START + 600
        self.assertFalse(self.engine.validate_token("door-1", token))

    def test_token_max_uses(self):
        engine = self.make_engine(token_max_uses=2)
        token = self.attest(engine)
        self.assertTrue(engine.validate_token("door-1", token))
        self.assertTrue(engine.validate_token("door-1", token))
        self.assertFalse(engine.validate_token("door-1", token))

    def test_status(self):
        self.assertEqual(self.engine.status("door-1")["status"], "NOT_ATTESTED")
        self.attest()
        status = self.engine.status("door-1")
        self.assertEqual(status["status"], "ATTESTED")
        self.assertEqual(status["readerId"], "door-1")
        self.assertNotIn("token", status)


if __name__ == "__main__":
    unittest.main()
