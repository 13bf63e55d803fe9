from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from . import config
from .attestation import AttestationEngine
from .audit import get_audit_sink, recent_events, verify_chain
from .db import init_db, audit_head, export_audit_log_full
from .errors import CardNotFound, InvalidTTL, ReasonCode, StoreUnavailable, UnknownReader
from .keys import FileReaderRegistry, SecretWrapper
from .lifecycle import CardLifecycleManager
from .locks import retry_transient
from .logging_config import audit_log, configure_logging, get_request_id, set_request_id
from .models import AttestationVerifyRequest, CreateCardRequest, QrVerifyRequest, VerifyRequest
from .orchestrator import ReaderContext, VerificationOrchestrator, VerifyResult
from .rate_limit import RateLimiter
from .security import (
    ValidationError, extract_client_id, extract_client_ip, validate_card_id,
    validate_owner, validate_reader_id,
)
from .simulator import CardSimulator
from .store import CredentialStore
from .util import constant_time_compare, utc_rfc3339

app = FastAPI(title="Cardgate access control")

verify_limiter = RateLimiter(config.VERIFY_RPM)
attest_limiter = RateLimiter(config.ATTEST_RPM)
admin_limiter = RateLimiter(config.ADMIN_RPM)

STORE = None
ATTESTATION = None
ORCHESTRATOR = None
LIFECYCLE = None
SIMULATOR = None


def build_services() -> None:
    global STORE, ATTESTATION, ORCHESTRATOR, LIFECYCLE, SIMULATOR
    wrapper = SecretWrapper.from_config(config.CARD_KEK_B64, config.is_production())
    sink = get_audit_sink()
    STORE = CredentialStore(wrapper)
    ATTESTATION = AttestationEngine(FileReaderRegistry(config.READER_REGISTRY_PATH))
    ORCHESTRATOR = VerificationOrchestrator(STORE, ATTESTATION, sink)
    LIFECYCLE = CardLifecycleManager(STORE, sink)
    SIMULATOR = CardSimulator(STORE)


@app.on_event("startup")
def _startup():
    configure_logging(config.LOG_LEVEL, config.LOG_JSON, config.LOG_FILE)
    init_db()
    build_services()
    missing = [name for name, ok in config.validate_config().items() if not ok]
    if missing:
        audit_log.security_event("config_incomplete", severity="high" if config.is_production() else "low",
                                 missing=missing)
    if not config.ADMIN_API_KEY:
        audit_log.security_event("admin_api_unauthenticated", severity="high" if config.is_production() else "low")


# ============================================================
# Middleware and error translation
# ============================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = set_request_id(request.headers.get("x-request-id") or None)
    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    return response


def _fail(status_code: int, **fields) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "FAIL", **fields})


@app.exception_handler(ValidationError)
def _validation_error(request: Request, exc: ValidationError):
    return _fail(400, error=str(exc))


@app.exception_handler(InvalidTTL)
def _invalid_ttl(request: Request, exc: InvalidTTL):
    return _fail(400, error=exc.reason.value, message=exc.message)


@app.exception_handler(UnknownReader)
def _unknown_reader(request: Request, exc: UnknownReader):
    return _fail(400, error=exc.reason.value)


@app.exception_handler(CardNotFound)
def _card_not_found(request: Request, exc: CardNotFound):
    return _fail(404, error=exc.reason.value)


@app.exception_handler(StoreUnavailable)
def _store_unavailable(request: Request, exc: StoreUnavailable):
    return _fail(503, error=exc.reason.value, retryable=True)


def _reader_context(request: Request, reader_id: Optional[str], token: Optional[str]) -> ReaderContext:
    headers = dict(request.headers)
    peer = request.client.host if request.client else None
    return ReaderContext(
        reader_id=reader_id or None,
        token=token or None,
        ip_address=extract_client_ip(headers, peer),
        user_agent=request.headers.get("user-agent"),
        request_id=get_request_id(),
    )


def _rate_limited(limiter: RateLimiter, endpoint: str, request: Request) -> Optional[JSONResponse]:
    peer = request.client.host if request.client else None
    client_id = extract_client_id(dict(request.headers), peer)
    if limiter.allow(f"{endpoint}:{client_id}"):
        return None
    audit_log.rate_limit_exceeded(client_id, endpoint)
    return _fail(429, error="RATE_LIMIT")


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if config.ADMIN_API_KEY and not (x_admin_key and constant_time_compare(x_admin_key, config.ADMIN_API_KEY)):
        audit_log.security_event("admin_key_rejected", severity="medium")
        raise HTTPException(401, "ADMIN_KEY_REQUIRED")


def _access_response(result: VerifyResult, **ok_fields) -> JSONResponse:
    """
    Collapse an access decision for the reader. Semantic rejects are a
    plain FAIL; only reader-side and retryable conditions say why.
    """
    if result.granted:
        return JSONResponse(status_code=200, content={"status": "OK", **ok_fields})
    if result.reason == ReasonCode.MISSING_READER_ID:
        return _fail(400)
    if result.reason == ReasonCode.READER_NOT_ATTESTED:
        return _fail(401, reason=result.reason.value)
    if result.retryable:
        return _fail(503, reason=result.reason.value, retryable=True)
    return _fail(200)


# ============================================================
# Cards
# ============================================================

@app.post("/api/cards", dependencies=[Depends(require_admin)])
def create_card(req: CreateCardRequest):
    owner = validate_owner(req.owner)
    card = LIFECYCLE.issue(owner, req.ttl_seconds, req.user_role, req.generate_qr)
    body = {
        "status": "OK",
        "cardId": card.card_id,
        "owner": card.owner,
        "expiresAt": utc_rfc3339(card.expires_at),
        "userRole": card.role.value,
        "macVersion": card.mac_version,
    }
    if card.qr_code:
        body["qrCode"] = card.qr_code
    return body


@app.post("/api/cards/verify")
def verify_card(
    req: VerifyRequest,
    request: Request,
    x_reader_id: Optional[str] = Header(default=None),
    x_reader_token: Optional[str] = Header(default=None)
):
    limited = _rate_limited(verify_limiter, "verify", request)
    if limited:
        return limited
    reader = _reader_context(request, x_reader_id, x_reader_token)
    result = ORCHESTRATOR.handle_verify(req.card_id, req.ctr, req.tag, reader)
    return _access_response(result)


@app.post("/api/qr/verify")
def verify_qr(
    req: QrVerifyRequest,
    request: Request,
    x_reader_id: Optional[str] = Header(default=None),
    x_reader_token: Optional[str] = Header(default=None)
):
    limited = _rate_limited(verify_limiter, "qr_verify", request)
    if limited:
        return limited
    if not isinstance(req.qr_code, str) or not req.qr_code:
        return _fail(400, error="Missing QR code")
    reader = _reader_context(request, x_reader_id, x_reader_token)
    result = ORCHESTRATOR.handle_qr(req.qr_code, reader)
    if result.granted:
        return _access_response(result, cardId=result.card_id, message="QR code verified successfully")
    response = _access_response(result)
    if response.status_code == 200:
        return _fail(200, error="QR code validation failed")
    return response


@app.get("/api/qr/generate/{card_id}", dependencies=[Depends(require_admin)])
def generate_qr(card_id: str):
    card = LIFECYCLE.regenerate_qr(validate_card_id(card_id))
    return {
        "status": "OK",
        "cardId": card.card_id,
        "qrCode": card.qr_code,
        "owner": card.owner,
        "userRole": card.role.value,
    }


# ============================================================
# Reader attestation
# ============================================================

@app.post("/api/attest/challenge/{reader_id}")
def attest_challenge(reader_id: str, request: Request):
    limited = _rate_limited(attest_limiter, "attest_challenge", request)
    if limited:
        return limited
    ch = ATTESTATION.issue_challenge(validate_reader_id(reader_id))
    return {"challenge": ch.challenge, "readerId": ch.reader_id, "expiresAt": utc_rfc3339(ch.expires_at)}


@app.post("/api/attest/verify/{reader_id}")
def attest_verify(reader_id: str, req: AttestationVerifyRequest, request: Request):
    limited = _rate_limited(attest_limiter, "attest_verify", request)
    if limited:
        return limited
    result = ATTESTATION.verify_attestation(validate_reader_id(reader_id), req.challenge, req.signature)
    if not result.ok:
        return _fail(400, readerId=reader_id, error=result.reason.value)
    return {
        "status": "OK",
        "readerId": result.reader_id,
        "attestedAt": utc_rfc3339(result.attested_at),
        "token": result.token,
        "expiresAt": utc_rfc3339(result.expires_at),
    }


@app.get("/api/attest/status/{reader_id}")
def attest_status(reader_id: str):
    return ATTESTATION.status(validate_reader_id(reader_id))


# ============================================================
# Administration
# ============================================================

@app.get("/api/admin/list", dependencies=[Depends(require_admin)])
def admin_list(
    active: Optional[bool] = None,
    role: Optional[str] = None,
    owner: Optional[str] = None
):
    return [c.summary() for c in LIFECYCLE.list(active=active, role=role, owner=owner)]


@app.get("/api/admin/status/{card_id}", dependencies=[Depends(require_admin)])
def admin_status(card_id: str):
    return LIFECYCLE.status(card_id).summary()


@app.post("/api/admin/revoke/{card_id}", dependencies=[Depends(require_admin)])
def admin_revoke(card_id: str, request: Request):
    limited = _rate_limited(admin_limiter, "admin", request)
    if limited:
        return limited
    LIFECYCLE.revoke(card_id)
    return {"status": "OK"}


@app.post("/api/admin/extend/{card_id}", dependencies=[Depends(require_admin)])
def admin_extend(card_id: str, request: Request, extra_seconds: int = Query(..., alias="extraSeconds")):
    limited = _rate_limited(admin_limiter, "admin", request)
    if limited:
        return limited
    card = LIFECYCLE.extend(card_id, extra_seconds)
    return {"status": "OK", "expiresAt": utc_rfc3339(card.expires_at)}


# ============================================================
# Card simulator
# ============================================================

@app.post("/api/sim/response/{card_id}")
def sim_response(card_id: str):
    if not config.ENABLE_SIMULATOR:
        raise HTTPException(404, "NOT_FOUND")
    proof = SIMULATOR.respond(card_id)
    if proof is None:
        return {"status": "FAIL"}
    return {"status": "OK", **proof}


# ============================================================
# Audit read side
# ============================================================

@app.get("/api/audit/events", dependencies=[Depends(require_admin)])
def audit_events(
    card_id: Optional[str] = Query(default=None, alias="cardId"),
    reader_id: Optional[str] = Query(default=None, alias="readerId"),
    event_type: Optional[str] = Query(default=None, alias="eventType"),
    success: Optional[bool] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0)
):
    return recent_events(card_id=card_id, reader_id=reader_id, event_type=event_type,
                         success=success, limit=limit, offset=offset)


@app.get("/api/audit/last-access/{card_id}", dependencies=[Depends(require_admin)])
def audit_last_access(card_id: str):
    rows = [r for r in recent_events(card_id=card_id, limit=20)
            if r["event_type"] in ("ACCESS_GRANTED", "ACCESS_DENIED", "QR_SCAN")]
    if not rows:
        raise HTTPException(404, "NOT_FOUND")
    return rows[0]


@app.get("/api/audit/proof", dependencies=[Depends(require_admin)])
def audit_proof():
    return retry_transient(audit_head, operation="audit_head")


@app.get("/api/audit/verify-chain", dependencies=[Depends(require_admin)])
def audit_verify_chain():
    return verify_chain(retry_transient(export_audit_log_full, operation="export_audit_log"))
