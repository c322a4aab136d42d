"""
Inbound webhook events.

Payloads are decoded into typed variants here, at the boundary; the engine
only ever sees these dataclasses. Unknown fields are tolerated; a missing or
ill-typed required field raises InputError before any state is touched.

Governance comment grammar (first line of the comment that starts with ``/``)::

    /governance-sign <hex-signature>
    /governance-tier <1..5> [reason...]
    /veto <owner/name#number> <strength 1..100> <reason...>
    /withdraw-veto <owner/name#number>
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from mergewarden.emergency import EmergencyTier, KeyholderSignature
from mergewarden.errors import InputError
from mergewarden.util import json_canon, parse_z, sha256_text
from mergewarden.veto import SignalKind

REVIEW_STATES = {"approved", "changes_requested", "commented", "dismissed"}
HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
PR_KEY_RE = re.compile(r"^([A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+)#(\d+)$")
REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

# =============================================================================
# EVENT VARIANTS
# =============================================================================

@dataclass
class PrOpened:
    repo: str
    number: int
    head_sha: str
    title: str
    body: str
    author: str
    changed_paths: List[str] = field(default_factory=list)
    opened_at: Optional[datetime.datetime] = None
    reopened: bool = False

@dataclass
class PrSynchronized:
    repo: str
    number: int
    head_sha: str
    title: str
    body: str
    author: str
    changed_paths: List[str] = field(default_factory=list)

@dataclass
class PrClosed:
    repo: str
    number: int
    merged: bool

@dataclass
class ReviewSubmitted:
    repo: str
    number: int
    reviewer: str
    state: str

@dataclass
class SignatureComment:
    repo: str
    number: int
    signer: str
    signature: str

@dataclass
class TierOverrideComment:
    repo: str
    number: int
    actor: str
    tier: int
    reason: str

@dataclass
class VetoCommentIntent:
    repo: str
    number: int
    commenter: str
    target_repo: str
    target_number: int
    strength: int
    reason: str

@dataclass
class WithdrawCommentIntent:
    repo: str
    number: int
    commenter: str
    target_repo: str
    target_number: int

@dataclass
class VetoSignalEvent:
    repo: str
    number: int
    node_id: str
    kind: SignalKind
    rationale: str
    signature: str

@dataclass
class VetoWithdrawEvent:
    repo: str
    number: int
    node_id: str
    signature: str

@dataclass
class EmergencyActivate:
    repo: Optional[str]
    tier: EmergencyTier
    activated_by: str
    reason: str
    evidence: str
    signatures: List[KeyholderSignature]

@dataclass
class EmergencyExtend:
    repo: Optional[str]
    requested_by: str
    signatures: List[KeyholderSignature]

@dataclass
class UnknownEvent:
    event_type: str
    action: Optional[str] = None
    note: str = ""

Event = Union[
    PrOpened, PrSynchronized, PrClosed, ReviewSubmitted, SignatureComment, TierOverrideComment,
    VetoCommentIntent, WithdrawCommentIntent, VetoSignalEvent, VetoWithdrawEvent,
    EmergencyActivate, EmergencyExtend, UnknownEvent,
]

# =============================================================================
# FIELD ACCESS
# =============================================================================

def _get(obj: Any, path: str, required: bool = True, default: Any = None) -> Any:
    cur = obj
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur or cur[part] is None:
            if required:
                raise InputError(f"missing required field {path}")
            return default
        cur = cur[part]
    return cur

def _str(obj: Any, path: str, required: bool = True, default: str = "") -> str:
    v = _get(obj, path, required, default)
    if not isinstance(v, str):
        raise InputError(f"field {path} must be a string")
    return v

def _int(obj: Any, path: str) -> int:
    v = _get(obj, path)
    if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
        raise InputError(f"field {path} must be a positive integer")
    return v

def _repo(obj: Any, path: str = "repository.full_name") -> str:
    r = _str(obj, path)
    if not REPO_RE.match(r):
        raise InputError(f"field {path} must look like owner/name")
    return r

def _paths(payload: Dict[str, Any]) -> List[str]:
    raw = payload.get("changed_paths")
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(p, str) for p in raw):
        raise InputError("changed_paths must be a list of strings")
    return list(raw)

def _signatures(payload: Dict[str, Any]) -> List[KeyholderSignature]:
    raw = _get(payload, "signatures")
    if not isinstance(raw, list):
        raise InputError("signatures must be a list")
    out = []
    for i, s in enumerate(raw):
        if not isinstance(s, dict):
            raise InputError(f"signatures[{i}] must be an object")
        out.append(KeyholderSignature(_str(s, "signer"), _str(s, "signature")))
    return out

def parse_pr_key(key: str) -> Tuple[str, int]:
    m = PR_KEY_RE.match(key or "")
    if not m:
        raise InputError(f"bad PR key {key!r}; expected owner/name#number")
    return m.group(1), int(m.group(2))

# =============================================================================
# COMMANDS
# =============================================================================

def parse_command(repo: str, number: int, commenter: str, body: str) -> Optional[Event]:
    """Return the governance command in ``body``, or None when there is none."""
    line = next((ln.strip() for ln in (body or "").splitlines() if ln.strip().startswith("/")), None)
    if line is None:
        return None
    cmd, _, rest = line.partition(" ")
    args = rest.split()

    if cmd == "/governance-sign":
        if len(args) != 1 or not HEX_RE.match(args[0]):
            raise InputError("usage: /governance-sign <hex-signature>")
        return SignatureComment(repo, number, commenter, args[0].lower())

    if cmd == "/governance-tier":
        if not args or not args[0].isdigit() or not 1 <= int(args[0]) <= 5:
            raise InputError("usage: /governance-tier <1..5> [reason]")
        return TierOverrideComment(repo, number, commenter, int(args[0]), " ".join(args[1:]))

    if cmd == "/veto":
        if len(args) < 3:
            raise InputError("usage: /veto <owner/name#number> <strength 1..100> <reason>")
        t_repo, t_num = parse_pr_key(args[0])
        if not args[1].isdigit() or not 1 <= int(args[1]) <= 100:
            raise InputError("veto strength must be 1..100")
        return VetoCommentIntent(repo, number, commenter, t_repo, t_num, int(args[1]), " ".join(args[2:]))

    if cmd == "/withdraw-veto":
        if len(args) != 1:
            raise InputError("usage: /withdraw-veto <owner/name#number>")
        t_repo, t_num = parse_pr_key(args[0])
        return WithdrawCommentIntent(repo, number, commenter, t_repo, t_num)

    if cmd.startswith("/governance"):
        raise InputError(f"unknown governance command {cmd}")
    return None

# =============================================================================
# DISPATCH
# =============================================================================

def event_fingerprint(event_type: str, payload: Dict[str, Any], delivery_id: Optional[str] = None) -> str:
    if delivery_id:
        return f"delivery:{delivery_id}"
    return "payload:" + sha256_text(json_canon({"event": event_type, "payload": payload}))

def parse_event(event_type: str, payload: Dict[str, Any]) -> Event:
    if not isinstance(payload, dict):
        raise InputError("payload must be a JSON object")
    if not event_type:
        raise InputError("missing event discriminator")
    action = payload.get("action")

    if event_type == "pull_request":
        if action in ("opened", "reopened", "synchronize"):
            repo = _repo(payload)
            number = _int(payload, "pull_request.number")
            head = _str(payload, "pull_request.head.sha")
            title = _str(payload, "pull_request.title")
            body = _str(payload, "pull_request.body", required=False)
            author = _str(payload, "pull_request.user.login")
            paths = _paths(payload)
            if action == "synchronize":
                return PrSynchronized(repo, number, head, title, body, author, paths)
            created = _str(payload, "pull_request.created_at", required=False)
            try:
                opened_at = parse_z(created) if created else None
            except ValueError as exc:
                raise InputError("pull_request.created_at is not RFC 3339") from exc
            return PrOpened(repo, number, head, title, body, author, paths, opened_at, reopened=action == "reopened")
        if action == "closed":
            merged = _get(payload, "pull_request.merged", required=False, default=False)
            return PrClosed(_repo(payload), _int(payload, "pull_request.number"), bool(merged))
        return UnknownEvent(event_type, action)

    if event_type == "pull_request_review":
        if action != "submitted":
            return UnknownEvent(event_type, action)
        state = _str(payload, "review.state").lower()
        if state not in REVIEW_STATES:
            raise InputError(f"unknown review state {state!r}")
        return ReviewSubmitted(_repo(payload), _int(payload, "pull_request.number"), _str(payload, "review.user.login"), state)

    if event_type == "issue_comment":
        if action != "created":
            return UnknownEvent(event_type, action)
        repo = _repo(payload)
        number = _int(payload, "issue.number")
        commenter = _str(payload, "comment.user.login")
        cmd = parse_command(repo, number, commenter, _str(payload, "comment.body"))
        return cmd or UnknownEvent(event_type, action, note="no governance command")

    if event_type == "veto":
        if action == "signal":
            repo, number = _repo(payload, "repository"), _int(payload, "number")
            return VetoSignalEvent(repo, number, _str(payload, "node_id"), SignalKind.parse(_str(payload, "kind", required=False, default="veto")),
                                   _str(payload, "rationale", required=False), _str(payload, "signature"))
        if action == "withdraw":
            repo, number = _repo(payload, "repository"), _int(payload, "number")
            return VetoWithdrawEvent(repo, number, _str(payload, "node_id"), _str(payload, "signature"))
        raise InputError(f"unknown veto action {action!r}")

    if event_type == "emergency":
        repo = payload.get("repository")
        if repo is not None and (not isinstance(repo, str) or not REPO_RE.match(repo)):
            raise InputError("repository must look like owner/name")
        if action == "activate":
            return EmergencyActivate(repo, EmergencyTier.parse(_get(payload, "tier")), _str(payload, "activated_by"),
                                     _str(payload, "reason"), _str(payload, "evidence"), _signatures(payload))
        if action == "extend":
            return EmergencyExtend(repo, _str(payload, "requested_by"), _signatures(payload))
        raise InputError(f"unknown emergency action {action!r}")

    return UnknownEvent(event_type, action)
