#!/usr/bin/env python3
"""
MergeWarden HTTP API Layer

FastAPI server wrapping the governance decision engine.

Env vars:
MW_API_KEYS                   comma-separated API keys (empty disables auth)
MW_REQUIRE_AUTH_READONLY      if "1", read endpoints also need a key
MW_DB_FILE                    SQLite path (default :memory:)
MW_SIGNATURE_ALGORITHM        ed25519 | ecdsa-secp256k1
MW_EMERGENCY_SCOPE            global | repository
MW_DECISION_TIMEOUT_SECONDS   per-request deadline
MW_MAX_RETRIES                retry cap for transient failures
MW_RETRY_BASE_DELAY           first backoff delay in seconds
MW_LOG_LEVEL                  logging level (default INFO)
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from mergewarden.audit import verify_merkle_proof
from mergewarden.engine import GovernanceEngine
from mergewarden.errors import (
    AuthError, ConflictError, CorruptionError, GovernanceViolation, InputError, NotFoundError, PolicyError,
    TransientError,
)
from mergewarden.registry import NodeStatus
from mergewarden.ruleset import Ruleset, Settings
from mergewarden.util import SCHEMA_VERSION

logging.basicConfig(
    level=os.environ.get("MW_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger("mergewarden.api")

API_KEY_HEADER = "X-MW-API-Key"

# ── Configuration ────────────────────────────────────────────────────

API_KEYS: Set[str] = set()
REQUIRE_AUTH_READONLY = False

# ── State ────────────────────────────────────────────────────────────

ENGINE: Optional[GovernanceEngine] = None


# ── Helpers ─────────────────────────────────────────────────────────

def _require_engine() -> GovernanceEngine:
    if ENGINE is None:
        raise HTTPException(503, "engine_not_ready")
    return ENGINE


def _check_auth(request: Request, write: bool = True) -> None:
    # If no keys configured, auth is effectively disabled.
    if not API_KEYS:
        return
    if not write and not REQUIRE_AUTH_READONLY:
        return
    key = request.headers.get(API_KEY_HEADER, "")
    if key not in API_KEYS:
        raise HTTPException(401, "invalid_api_key")


def _actor(request: Request) -> Optional[str]:
    return request.headers.get("X-MW-Actor") or None


# ── Lifespan ────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global ENGINE, API_KEYS, REQUIRE_AUTH_READONLY

    settings = Settings.from_env()
    API_KEYS = set(settings.api_keys)
    REQUIRE_AUTH_READONLY = settings.require_auth_readonly
    logging.getLogger().setLevel(settings.log_level)

    ENGINE = GovernanceEngine(settings=settings)
    logger.info("engine ready (db=%s, algorithm=%s, scope=%s)",
                settings.db_file, settings.signature_algorithm, settings.emergency_scope.value)
    try:
        yield
    finally:
        ENGINE.close()
        ENGINE = None


app = FastAPI(
    title="MergeWarden Governance API",
    version=SCHEMA_VERSION,
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────────────

def _error(status: int, exc: GovernanceViolation, **extra) -> JSONResponse:
    content = {"error": exc.code, "detail": str(exc)}
    content.update(extra)
    return JSONResponse(status_code=status, content=content)

@app.exception_handler(NotFoundError)
async def not_found_handler(req: Request, exc: NotFoundError):
    return _error(404, exc)

@app.exception_handler(InputError)
async def input_handler(req: Request, exc: InputError):
    return _error(400, exc)

@app.exception_handler(AuthError)
async def auth_handler(req: Request, exc: AuthError):
    return _error(403, exc)

@app.exception_handler(PolicyError)
async def policy_handler(req: Request, exc: PolicyError):
    return _error(409, exc, reason=exc.reason)

@app.exception_handler(ConflictError)
async def conflict_handler(req: Request, exc: ConflictError):
    return _error(409, exc)

@app.exception_handler(TransientError)
async def transient_handler(req: Request, exc: TransientError):
    return _error(503, exc, retryable=True)

@app.exception_handler(CorruptionError)
async def corruption_handler(req: Request, exc: CorruptionError):
    logger.critical("request refused, audit log corrupt: %s", exc)
    return _error(503, exc, read_only=True)

@app.exception_handler(GovernanceViolation)
async def gov_handler(req: Request, exc: GovernanceViolation):
    return _error(400, exc)


# ═════════════════════════════════════════════════════════════════════
# OBSERVABILITY
# ═════════════════════════════════════════════════════════════════════

@app.get("/v1/health")
def health(request: Request):
    _check_auth(request, write=False)
    return _require_engine().health()

@app.get("/v1/telemetry")
def telemetry_json(request: Request):
    _check_auth(request, write=False)
    return _require_engine().telemetry.export_dict()

@app.get("/v1/telemetry/prometheus")
def telemetry_prom(request: Request):
    _check_auth(request, write=False)
    return PlainTextResponse(_require_engine().telemetry.export_prometheus(), media_type="text/plain")

# ═════════════════════════════════════════════════════════════════════
# WEBHOOK INTAKE
# ═════════════════════════════════════════════════════════════════════

@app.post("/v1/webhooks")
def webhook(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    x_github_event: str = Header(""),
    x_github_delivery: Optional[str] = Header(None),
):
    _check_auth(request, write=True)
    eng = _require_engine()
    result = eng.handle_webhook(x_github_event, payload, delivery_id=x_github_delivery)
    return result.to_dict()

# ── Maintainers ──────────────────────────────────────────────────────

class EnrollReq(BaseModel):
    username: str
    public_key: str
    layer: int = 1

@app.post("/v1/maintainers")
def enroll_maintainer(body: EnrollReq, request: Request):
    _check_auth(request, write=True)
    m = _require_engine().enroll_maintainer(body.username, body.public_key, body.layer, actor=_actor(request))
    return m.__dict__

@app.get("/v1/maintainers")
def list_maintainers(request: Request, active_only: bool = False):
    _check_auth(request, write=False)
    return [m.__dict__ for m in _require_engine().registry.list_maintainers(active_only)]

@app.delete("/v1/maintainers/{username}")
def remove_maintainer(username: str, request: Request):
    _check_auth(request, write=True)
    return _require_engine().remove_maintainer(username, actor=_actor(request)).__dict__

# ── Emergency keyholders ─────────────────────────────────────────────

class KeyholderReq(BaseModel):
    username: str
    public_key: str

@app.post("/v1/keyholders")
def enroll_keyholder(body: KeyholderReq, request: Request):
    _check_auth(request, write=True)
    return _require_engine().enroll_keyholder(body.username, body.public_key, actor=_actor(request)).__dict__

@app.get("/v1/keyholders")
def list_keyholders(request: Request, active_only: bool = False):
    _check_auth(request, write=False)
    return [k.__dict__ for k in _require_engine().registry.list_keyholders(active_only)]

@app.delete("/v1/keyholders/{username}")
def remove_keyholder(username: str, request: Request):
    _check_auth(request, write=True)
    return _require_engine().remove_keyholder(username, actor=_actor(request)).__dict__

# ── Economic nodes ───────────────────────────────────────────────────

class RegisterNodeReq(BaseModel):
    node_id: str
    kind: str
    public_key: str
    qualification: Dict[str, Any] = {}

class NodeStatusReq(BaseModel):
    status: str
    weight: Optional[float] = None

@app.post("/v1/economic-nodes")
def register_node(body: RegisterNodeReq, request: Request):
    _check_auth(request, write=True)
    n = _require_engine().register_node(body.node_id, body.kind, body.public_key, body.qualification, actor=_actor(request))
    return n.to_dict()

@app.get("/v1/economic-nodes")
def list_nodes(request: Request, status: Optional[str] = None):
    _check_auth(request, write=False)
    try:
        st = NodeStatus(status) if status else None
    except ValueError:
        raise HTTPException(400, "unknown_node_status")
    return [n.to_dict() for n in _require_engine().registry.list_nodes(st)]

@app.post("/v1/economic-nodes/{node_id}/status")
def set_node_status(node_id: str, body: NodeStatusReq, request: Request):
    _check_auth(request, write=True)
    eng = _require_engine()
    if body.status == NodeStatus.ACTIVE.value:
        return eng.activate_node(node_id, body.weight, actor=_actor(request)).to_dict()
    return eng.set_node_status(node_id, body.status, actor=_actor(request)).to_dict()

# ═════════════════════════════════════════════════════════════════════
# PULL REQUESTS
# ═════════════════════════════════════════════════════════════════════

@app.get("/v1/prs/{owner}/{name}/{number}")
def get_pr(owner: str, name: str, number: int, request: Request):
    _check_auth(request, write=False)
    return _require_engine().get_pr(f"{owner}/{name}", number)

@app.post("/v1/prs/{owner}/{name}/{number}/evaluate")
def evaluate_pr(owner: str, name: str, number: int, request: Request):
    _check_auth(request, write=True)
    return _require_engine().evaluate(f"{owner}/{name}", number).to_dict()

# ═════════════════════════════════════════════════════════════════════
# EMERGENCY
# ═════════════════════════════════════════════════════════════════════

class ObligationReq(BaseModel):
    url: str
    actor: str
    repository: Optional[str] = None

class DeactivateReq(BaseModel):
    actor: str
    note: str = ""
    repository: Optional[str] = None

@app.get("/v1/emergency")
def emergency_status(request: Request, repository: Optional[str] = None):
    _check_auth(request, write=False)
    eng = _require_engine()
    em = eng.current_emergency(repository)
    return {
        "current": em.to_dict() if em else None,
        "pending_obligations": [e.to_dict() for e in eng.emergency.pending_obligations()],
    }

@app.post("/v1/emergency/post-mortem")
def emergency_post_mortem(body: ObligationReq, request: Request):
    _check_auth(request, write=True)
    return _require_engine().record_post_mortem(body.url, body.actor, body.repository).to_dict()

@app.post("/v1/emergency/security-audit")
def emergency_security_audit(body: ObligationReq, request: Request):
    _check_auth(request, write=True)
    return _require_engine().record_security_audit(body.url, body.actor, body.repository).to_dict()

@app.post("/v1/emergency/deactivate")
def emergency_deactivate(body: DeactivateReq, request: Request):
    _check_auth(request, write=True)
    return _require_engine().deactivate_emergency(body.actor, body.note, body.repository).to_dict()

# ═════════════════════════════════════════════════════════════════════
# RULESET
# ═════════════════════════════════════════════════════════════════════

@app.get("/v1/ruleset")
def get_ruleset(request: Request):
    _check_auth(request, write=False)
    return _require_engine().ruleset.to_dict()

@app.put("/v1/ruleset")
def put_ruleset(request: Request, body: Dict[str, Any] = Body(...)):
    _check_auth(request, write=True)
    rs = _require_engine().update_ruleset(Ruleset.from_dict(body), actor=_actor(request))
    return rs.to_dict()

# ═════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ═════════════════════════════════════════════════════════════════════

class MerkleRootReq(BaseModel):
    expected: str
    upto: Optional[int] = None

@app.get("/v1/audit/tail")
def audit_tail(request: Request, n: int = 50):
    _check_auth(request, write=False)
    return [e.to_dict() for e in _require_engine().audit.tail(n)]

@app.get("/v1/audit/verify")
def audit_verify(request: Request):
    _check_auth(request, write=False)
    eng = _require_engine()
    n = eng.audit.verify()
    checkpoints = eng.audit.verify_checkpoints()
    return {"chain_verified": True, "entries": n, "checkpoints_verified": checkpoints, "tip": eng.audit.tip()}

@app.get("/v1/audit/merkle-root")
def audit_merkle_root(request: Request, upto: Optional[int] = None):
    _check_auth(request, write=False)
    eng = _require_engine()
    return {"merkle_root": eng.audit.merkle_root(upto), "upto": upto, "entries": eng.audit.count()}

@app.post("/v1/audit/merkle-root/verify")
def audit_merkle_root_verify(body: MerkleRootReq, request: Request):
    _check_auth(request, write=False)
    root = _require_engine().audit.verify_root(body.expected, body.upto)
    return {"verified": True, "merkle_root": root}

@app.post("/v1/audit/checkpoints")
def audit_checkpoint(request: Request):
    _check_auth(request, write=True)
    eng = _require_engine()
    eng.audit.ensure_writable()
    cp = eng.audit.checkpoint(actor=_actor(request))
    return {"created": cp is not None, "checkpoint": cp.__dict__ if cp else None}

@app.get("/v1/audit/checkpoints")
def audit_checkpoints(request: Request):
    _check_auth(request, write=False)
    return [cp.__dict__ for cp in _require_engine().audit.checkpoints()]

@app.get("/v1/audit/proof/{seq}")
def audit_proof(seq: int, request: Request):
    _check_auth(request, write=False)
    eng = _require_engine()
    if seq < 0 or seq >= eng.audit.count():
        raise HTTPException(404, "audit_entry_not_found")
    proof = eng.audit.proof(seq)
    proof["verified"] = verify_merkle_proof(proof["leaf"], proof["proof"], proof["root"])
    return proof


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(prog="mergewarden-api", description="Serve the MergeWarden governance API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args(argv)
    uvicorn.run("mergewarden.api:app", host=args.host, port=args.port, log_level=os.environ.get("MW_LOG_LEVEL", "info").lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
