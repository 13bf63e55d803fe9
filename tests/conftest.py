import pytest, os, json, sys, tempfile
from nacl.signing import SigningKey

# Ensure the cardgate package is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Point storage and the reader registry at a scratch directory before
# cardgate.config is imported
_TMP = tempfile.mkdtemp(prefix="cardgate-tests-")
os.environ["CARDGATE_DB_PATH"] = os.path.join(_TMP, "cardgate.db")
os.environ["READER_REGISTRY_PATH"] = os.path.join(_TMP, "reader_registry.json")
os.environ["ADMIN_API_KEY"] = ""
os.environ["ENABLE_SIMULATOR"] = "true"
os.environ["REQUIRE_READER_ATTESTATION"] = "true"
os.environ["VERIFY_RPM"] = "100000"
os.environ["LOG_JSON"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

READER_ID = "reader-01"
READER_KEY = SigningKey.generate()

from cardgate.util import b64e

with open(os.environ["READER_REGISTRY_PATH"], "w", encoding="utf-8") as f:
    json.dump({"reader_keys": {READER_ID: b64e(bytes(READER_KEY.verify_key))}}, f)

# Initialize app at module load time
from cardgate import main
from cardgate.db import init_db, reset_db
from cardgate.verifier import compute_tag, encode_tag

init_db()
main._startup()


# Reset database and rate limiters before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    reset_db()
    main.verify_limiter.reset()
    main.attest_limiter.reset()
    main.admin_limiter.reset()
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    return TestClient(main.app)


@pytest.fixture
def reader_key():
    return READER_KEY


def sign(key: SigningKey, challenge: str) -> str:
    return b64e(key.sign(challenge.encode("utf-8")).signature)


@pytest.fixture
def attested_headers(client):
    """Run the challenge/response handshake and return the reader's request headers."""
    ch = client.post(f"/api/attest/challenge/{READER_ID}").json()
    r = client.post(f"/api/attest/verify/{READER_ID}",
                    json={"challenge": ch["challenge"], "signature": sign(READER_KEY, ch["challenge"])})
    assert r.status_code == 200, r.text
    return {"X-Reader-Id": READER_ID, "X-Reader-Token": r.json()["token"]}


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def card_tag():
    """Compute the wire tag a card would send for (card_id, ctr)."""
    def _tag(card_id: str, ctr: int) -> str:
        card = main.STORE.load(card_id)
        return encode_tag(compute_tag(card.secret, card_id, ctr))
    return _tag
