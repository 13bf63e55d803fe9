import subprocess, sys, os, json
from fastapi.testclient import TestClient
from cardgate.main import app
from cardgate import config, db
from cardgate.qr import build_card_token

client = TestClient(app)

READER_ID = "reader-01"
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

def issue(owner="alice", **extra):
    r = client.post("/api/cards", json={"owner": owner, **extra})
    assert r.status_code == 200, r.text
    return r.json()

def verify(card_id, ctr, tag, headers):
    return client.post("/api/cards/verify", json={"cardId": card_id, "ctr": ctr, "tag": tag}, headers=headers)

def access_events(card_id):
    return [e for e in db.query_audit_events(card_id=card_id, ascending=True)
            if e["event_type"] in ("ACCESS_GRANTED", "ACCESS_DENIED", "QR_SCAN")]

# Issue -> first scan -> OK with one ACCESS_GRANTED
def test_issue_and_verify(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    assert card["status"] == "OK"
    assert len(card["cardId"]) == 22
    assert card["macVersion"] == "hmac-sha256-128-v1"
    assert not any("secret" in k.lower() for k in card)
    r = verify(card["cardId"], "1", card_tag(card["cardId"], 1), attested_headers)
    assert r.status_code == 200
    assert r.json() == {"status": "OK"}
    events = access_events(card["cardId"])
    assert [e["event_type"] for e in events] == ["ACCESS_GRANTED"]
    assert events[0]["reader_id"] == READER_ID

# Same proof again -> FAIL, ACCESS_DENIED with REPLAYED_COUNTER
def test_replay_fails(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    tag = card_tag(card["cardId"], 1)
    assert verify(card["cardId"], "1", tag, attested_headers).json()["status"] == "OK"
    r = verify(card["cardId"], "1", tag, attested_headers)
    assert r.status_code == 200
    assert r.json() == {"status": "FAIL"}
    events = access_events(card["cardId"])
    assert events[-1]["event_type"] == "ACCESS_DENIED"
    assert events[-1]["error_code"] == "REPLAYED_COUNTER"
    assert client.get(f"/api/admin/status/{card['cardId']}").json()["lastCounter"] == 1

# Semantic rejects are indistinguishable to the reader
def test_reject_reasons_not_disclosed(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    bad_tag = verify(card["cardId"], "1", "A" * 22, attested_headers)
    unknown = verify("B" * 22, "1", "A" * 22, attested_headers)
    malformed = verify(card["cardId"], "abc", "A" * 22, attested_headers)
    assert bad_tag.json() == unknown.json() == malformed.json() == {"status": "FAIL"}
    assert bad_tag.status_code == unknown.status_code == malformed.status_code == 200

def test_revoked_card_fails(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    assert client.post(f"/api/admin/revoke/{card['cardId']}").json() == {"status": "OK"}
    assert client.post(f"/api/admin/revoke/{card['cardId']}").json() == {"status": "OK"}
    r = verify(card["cardId"], "1", card_tag(card["cardId"], 1), attested_headers)
    assert r.json() == {"status": "FAIL"}
    assert access_events(card["cardId"])[-1]["error_code"] == "CARD_INACTIVE"

def test_missing_reader_id_is_400(card_tag):
    card = issue(ttlSeconds=3600)
    r = verify(card["cardId"], "1", card_tag(card["cardId"], 1), {})
    assert r.status_code == 400
    assert r.json()["status"] == "FAIL"
    assert access_events(card["cardId"])[-1]["error_code"] == "MISSING_READER_ID"
    assert client.get(f"/api/admin/status/{card['cardId']}").json()["lastCounter"] is None

def test_unattested_reader_is_401(card_tag):
    card = issue(ttlSeconds=3600)
    r = verify(card["cardId"], "1", card_tag(card["cardId"], 1),
               {"X-Reader-Id": READER_ID, "X-Reader-Token": "forged"})
    assert r.status_code == 401
    assert r.json() == {"status": "FAIL", "reason": "READER_NOT_ATTESTED"}

def test_token_bound_to_reader(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    headers = dict(attested_headers, **{"X-Reader-Id": "reader-02"})
    assert verify(card["cardId"], "1", card_tag(card["cardId"], 1), headers).status_code == 401

def test_create_card_validation():
    assert client.post("/api/cards", json={"owner": "alice", "ttlSeconds": 5}).status_code == 400
    assert client.post("/api/cards", json={"owner": "", "ttlSeconds": 3600}).status_code == 400
    assert client.post("/api/cards", json={"owner": "a:b", "ttlSeconds": 3600}).status_code == 400
    r = client.post("/api/cards", json={"owner": "alice", "ttlSeconds": 0})
    assert r.json()["error"] == "INVALID_TTL"
    assert client.get("/api/admin/list").json() == []

def test_create_card_role_and_qr():
    card = issue("guest-user", userRole="guest", generateQr=True)
    assert card["userRole"] == "guest"
    assert card["qrCode"]

# Challenge / response handshake over HTTP
def test_attestation_handshake(reader_key, signer):
    ch = client.post(f"/api/attest/challenge/{READER_ID}").json()
    assert ch["readerId"] == READER_ID
    assert ch["expiresAt"].endswith("Z")
    bad = client.post(f"/api/attest/verify/{READER_ID}", json={"challenge": ch["challenge"], "signature": "AAAA"})
    assert bad.status_code == 400
    assert bad.json()["error"] == "SIGNATURE_INVALID"
    ok = client.post(f"/api/attest/verify/{READER_ID}",
                     json={"challenge": ch["challenge"], "signature": signer(reader_key, ch["challenge"])})
    assert ok.status_code == 200
    body = ok.json()
    assert body["status"] == "OK"
    assert body["readerId"] == READER_ID
    assert body["token"]
    again = client.post(f"/api/attest/verify/{READER_ID}",
                        json={"challenge": ch["challenge"], "signature": signer(reader_key, ch["challenge"])})
    assert again.json()["error"] == "CHALLENGE_NOT_FOUND"
    assert client.get(f"/api/attest/status/{READER_ID}").json()["status"] == "ATTESTED"

def test_unknown_reader_challenge():
    r = client.post("/api/attest/challenge/intruder")
    assert r.status_code == 400
    assert r.json()["error"] == "UNKNOWN_READER"

def test_invalid_reader_id():
    assert client.post("/api/attest/challenge/bad%20id").status_code == 400

def test_admin_endpoints(attested_headers):
    a = issue("alice", ttlSeconds=3600, userRole="admin")
    issue("bob", ttlSeconds=3600)
    assert len(client.get("/api/admin/list").json()) == 2
    assert [c["owner"] for c in client.get("/api/admin/list", params={"role": "admin"}).json()] == ["alice"]
    before = client.get(f"/api/admin/status/{a['cardId']}").json()
    ext = client.post(f"/api/admin/extend/{a['cardId']}", params={"extraSeconds": 600}).json()
    assert ext["status"] == "OK"
    assert ext["expiresAt"] > before["expiresAt"]
    assert client.post(f"/api/admin/extend/{a['cardId']}", params={"extraSeconds": 1}).status_code == 400
    assert client.post("/api/admin/extend/" + "C" * 22, params={"extraSeconds": 600}).status_code == 404
    assert client.get("/api/admin/status/" + "C" * 22).status_code == 404
    assert client.post("/api/admin/revoke/" + "C" * 22).status_code == 404
    assert client.get("/api/admin/list", params={"active": "false"}).json() == []

# Oversized lifetimes are a 400 and change nothing; list keeps working
def test_card_lifetime_is_capped():
    a = issue("alice", ttlSeconds=3600)
    before = client.get(f"/api/admin/status/{a['cardId']}").json()
    r = client.post(f"/api/admin/extend/{a['cardId']}", params={"extraSeconds": 10 ** 12})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_TTL"
    assert client.post(f"/api/admin/extend/{a['cardId']}", params={"extraSeconds": 10 ** 19}).status_code == 400
    assert client.get(f"/api/admin/status/{a['cardId']}").json()["expiresAt"] == before["expiresAt"]
    r = client.post("/api/cards", json={"owner": "bob", "ttlSeconds": 10 ** 12})
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_TTL"
    listed = client.get("/api/admin/list")
    assert listed.status_code == 200
    assert [c["owner"] for c in listed.json()] == ["alice"]
    assert db.query_audit_events(event_type="CARD_EXTENDED") == []

def test_simulator_drives_verification(attested_headers):
    card = issue(ttlSeconds=3600)
    for expected in ("0", "1", "2"):
        proof = client.post(f"/api/sim/response/{card['cardId']}").json()
        assert proof["status"] == "OK"
        assert proof["ctr"] == expected
        r = verify(proof["cardId"], proof["ctr"], proof["tag"], attested_headers)
        assert r.json() == {"status": "OK"}
    assert client.post("/api/sim/response/" + "D" * 22).json() == {"status": "FAIL"}

def test_qr_proof_and_token(attested_headers):
    card = issue(ttlSeconds=3600, generateQr=True)
    r = client.post("/api/qr/verify", json={"qrCode": card["qrCode"]}, headers=attested_headers)
    assert r.json() == {"status": "OK", "cardId": card["cardId"], "message": "QR code verified successfully"}
    forged = build_card_token(card["cardId"], "alice", "admin", 1)
    r = client.post("/api/qr/verify", json={"qrCode": forged}, headers=attested_headers)
    assert r.json()["status"] == "FAIL"
    proof = client.post(f"/api/sim/response/{card['cardId']}").json()
    qr = json.dumps({"cardId": proof["cardId"], "ctr": proof["ctr"], "tag": proof["tag"]})
    assert client.post("/api/qr/verify", json={"qrCode": qr}, headers=attested_headers).json()["status"] == "OK"
    assert client.post("/api/qr/verify", json={"qrCode": qr}, headers=attested_headers).json()["status"] == "FAIL"
    assert client.post("/api/qr/verify", json={}, headers=attested_headers).status_code == 400

def test_qr_generate_replaces_token(attested_headers):
    card = issue(ttlSeconds=3600)
    gen = client.get(f"/api/qr/generate/{card['cardId']}").json()
    assert gen["cardId"] == card["cardId"]
    r = client.post("/api/qr/verify", json={"qrCode": gen["qrCode"]}, headers=attested_headers)
    assert r.json()["status"] == "OK"

# Audit read side and chain proof
def test_audit_endpoints(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    verify(card["cardId"], "1", card_tag(card["cardId"], 1), attested_headers)
    verify(card["cardId"], "1", card_tag(card["cardId"], 1), attested_headers)
    events = client.get("/api/audit/events", params={"cardId": card["cardId"]}).json()
    assert [e["event_type"] for e in events] == ["ACCESS_DENIED", "ACCESS_GRANTED", "CARD_CREATED"]
    denied = client.get("/api/audit/events", params={"success": "false"}).json()
    assert len(denied) == 1 and denied[0]["success"] is False
    last = client.get(f"/api/audit/last-access/{card['cardId']}").json()
    assert last["event_type"] == "ACCESS_DENIED"
    proof = client.get("/api/audit/proof").json()
    assert proof["count"] == 3
    assert client.get("/api/audit/verify-chain").json() == {"valid": True, "checked": 3}
    assert client.get("/api/audit/last-access/" + "E" * 22).status_code == 404

def test_verify_audit_chain_tool(attested_headers, card_tag):
    card = issue(ttlSeconds=3600)
    verify(card["cardId"], "1", card_tag(card["cardId"], 1), attested_headers)
    out = subprocess.run([sys.executable, os.path.join(ROOT, "tools", "verify_audit_chain.py"), str(config.DB_PATH)],
                         capture_output=True, text=True)
    assert out.returncode == 0, out.stdout + out.stderr
    assert out.stdout.startswith("PASS")

def test_request_id_echoed():
    r = client.get(f"/api/attest/status/{READER_ID}", headers={"X-Request-Id": "req-123"})
    assert r.headers["X-Request-Id"] == "req-123"
    assert r.json()["status"] == "NOT_ATTESTED"

def test_admin_key_enforced(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_KEY", "s3cret")
    assert client.get("/api/admin/list").status_code == 401
    assert client.get("/api/admin/list", headers={"X-Admin-Key": "wrong"}).status_code == 401
    assert client.get("/api/admin/list", headers={"X-Admin-Key": "s3cret"}).status_code == 200
    assert client.post("/api/cards", json={"owner": "x", "ttlSeconds": 3600}).status_code == 401

def test_store_unavailable_is_503(attested_headers, card_tag, monkeypatch):
    from cardgate.errors import StoreUnavailable
    from cardgate import main
    card = issue(ttlSeconds=3600)
    tag = card_tag(card["cardId"], 1)
    def down(*a, **k):
        raise StoreUnavailable("database is locked")
    monkeypatch.setattr(main.STORE, "advance_counter", down)
    r = verify(card["cardId"], "1", tag, attested_headers)
    assert r.status_code == 503
    assert r.json() == {"status": "FAIL", "reason": "STORE_UNAVAILABLE", "retryable": True}
    monkeypatch.setattr(main.STORE, "list", down)
    assert client.get("/api/admin/list").status_code == 503

def test_rate_limit(monkeypatch):
    from cardgate import main
    from cardgate.rate_limit import RateLimiter
    monkeypatch.setattr(main, "attest_limiter", RateLimiter(2))
    for _ in range(2):
        assert client.post(f"/api/attest/challenge/{READER_ID}").status_code == 200
    r = client.post(f"/api/attest/challenge/{READER_ID}")
    assert r.status_code == 429
    assert r.json() == {"status": "FAIL", "error": "RATE_LIMIT"}
