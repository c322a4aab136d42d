"""
Decision combinator.

Sole writer of PR state and the audit log. Every inbound event is decoded
by ``events.parse_event`` and dispatched once here. Events for one PR are
serialized by a per-PR lock; the decision, its audit entries and the
processed-event fingerprint commit in one database transaction. Status
checks are posted after commit.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Union

from mergewarden.audit import AuditLog
from mergewarden.crypto import SignatureVerifier, approval_message
from mergewarden.db import GovernanceDB
from mergewarden.emergency import ActiveEmergency, EmergencyController
from mergewarden.errors import AuthError, DeadlineExceeded, InputError, NotFoundError, PolicyError, TransientError
from mergewarden.evaluators import (
    ReviewEvaluation, ThresholdResult, evaluate_review, evaluate_threshold, signer_pool_keys,
)
from mergewarden.events import (
    EmergencyActivate, EmergencyExtend, Event, PrClosed, PrOpened, PrSynchronized, ReviewSubmitted,
    SignatureComment, TierOverrideComment, UnknownEvent, VetoCommentIntent, VetoSignalEvent, VetoWithdrawEvent,
    WithdrawCommentIntent, event_fingerprint, parse_event,
)
from mergewarden.registry import EconomicNode, Keyholder, Maintainer, NodeKind, NodeStatus, Registry
from mergewarden.ruleset import Ruleset, Settings
from mergewarden.status import CheckState, LoggingStatusPublisher, StatusCheck, StatusPublisher, render_status
from mergewarden.tiers import Tier, classify
from mergewarden.util import SCHEMA_VERSION, Telemetry, TimeAuthority, iso_z, parse_z, retry, sha256_text
from mergewarden.veto import VetoAggregator, VetoTally

logger = logging.getLogger(__name__)

# =============================================================================
# TYPES
# =============================================================================

class Verdict(Enum):
    MERGE_OK = "MERGE_OK"
    BLOCKED = "BLOCKED"

class PrState(Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"

REASON_REVIEW_PERIOD = "review_period_not_met"
REASON_SIGNATURES = "signatures_not_met"
REASON_VETO = "economic_veto"

@dataclass
class PullRequest:
    repo: str
    number: int
    head_sha: str
    title: str
    body: str
    author: str
    changed_paths: List[str]
    tier: int
    tier_overridden: bool
    opened_at: datetime.datetime
    state: PrState = PrState.OPEN
    governance_status: str = "pending"
    review_period_met: bool = False
    signatures_met: bool = False
    veto_active: bool = False
    last_verdict: Optional[str] = None
    last_reasons: List[str] = field(default_factory=list)
    status_text: str = ""

    @property
    def key(self) -> str:
        return f"{self.repo}#{self.number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo, "number": self.number, "head_sha": self.head_sha, "title": self.title,
            "author": self.author, "changed_paths": list(self.changed_paths), "tier": self.tier,
            "tier_name": Tier(self.tier).label, "tier_overridden": self.tier_overridden,
            "opened_at": iso_z(self.opened_at), "state": self.state.value,
            "governance_status": self.governance_status, "review_period_met": self.review_period_met,
            "signatures_met": self.signatures_met, "veto_active": self.veto_active,
            "verdict": self.last_verdict, "reasons": list(self.last_reasons), "status_text": self.status_text,
        }

@dataclass
class Decision:
    repo: str
    number: int
    tier: int
    verdict: Verdict
    reasons: List[str]
    review: ReviewEvaluation
    threshold: ThresholdResult
    veto: VetoTally
    emergency: Optional[ActiveEmergency]
    status: StatusCheck
    decided_at: datetime.datetime
    rendered: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pr_key": f"{self.repo}#{self.number}", "tier": self.tier, "verdict": self.verdict.value,
            "reasons": list(self.reasons), "review_period": {
                "required_days": self.review.required_days, "elapsed_days": self.review.elapsed_days,
                "met": self.review.met, "earliest_merge": iso_z(self.review.earliest_merge),
                "remaining_days": self.review.remaining_days, "emergency_tier": self.review.emergency_tier,
            },
            "signatures": {
                "count": self.threshold.count, "required": self.threshold.required, "total": self.threshold.total,
                "signers": self.threshold.signers, "pending": self.threshold.pending, "met": self.threshold.met,
            },
            "veto": self.veto.to_dict(),
            "emergency": self.emergency.to_dict() if self.emergency else None,
            "status": self.status.to_dict(),
            "decided_at": iso_z(self.decided_at),
        }

@dataclass
class IntakeResult:
    outcome: str
    event: str
    detail: str = ""
    decision: Optional[Decision] = None
    status_published: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome, "event": self.event, "detail": self.detail,
            "decision": self.decision.to_dict() if self.decision else None,
            "status_published": self.status_published,
        }

# =============================================================================
# LOCKS / DEADLINES
# =============================================================================

class Deadline:
    def __init__(self, seconds: float):
        self._at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._at - time.monotonic())

    def check(self):
        if time.monotonic() >= self._at:
            raise DeadlineExceeded("request deadline exceeded; work discarded")

class KeyedLocks:
    """One mutex per key, dropped when nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._refs: Dict[Hashable, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Hashable, timeout: float) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] += 1
        try:
            if not lock.acquire(timeout=max(0.0, timeout)):
                raise DeadlineExceeded(f"timed out waiting for lock on {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    self._locks.pop(key, None)

# =============================================================================
# ENGINE
# =============================================================================

class GovernanceEngine:
    def __init__(
        self,
        settings: Settings = None,
        time_authority: TimeAuthority = None,
        publisher: StatusPublisher = None,
        ruleset: Ruleset = None,
    ):
        self.settings = settings or Settings()
        self.time = time_authority or TimeAuthority()
        self.telemetry = Telemetry()
        self.db = GovernanceDB(self.settings.db_file)
        self.verifier = SignatureVerifier(self.settings.signature_algorithm)
        self.audit = AuditLog(self.db, self.time, self.telemetry)
        self.registry = Registry(self.db, self.verifier, self.time)
        self._ruleset = self._load_ruleset(ruleset)
        self.emergency = EmergencyController(
            self.db, self.audit, self.registry, self.verifier, lambda: self._ruleset,
            self.settings.emergency_scope, self.time, self.telemetry,
        )
        self.veto = VetoAggregator(self.db, self.verifier, self.time, self.telemetry)
        self.publisher = publisher or LoggingStatusPublisher()
        self._pr_locks = KeyedLocks()
        self._startup_continuity_test()

    def _startup_continuity_test(self):
        problems = []
        if not self.db.integrity_check():
            problems.append("db_integrity")
        if self.audit.read_only:
            problems.append("audit_chain")
        if problems:
            logger.critical("startup checks failed: %s; writes are refused", ", ".join(problems))
        self.telemetry.set_gauge("mw_startup_ok", 0 if problems else 1)

    def _load_ruleset(self, initial: Optional[Ruleset]) -> Ruleset:
        r = self.db.query_one("SELECT ruleset_json FROM ruleset_config WHERE id=1")
        if r:
            return Ruleset.from_json(r[0])
        rs = initial or Ruleset()
        rs.validate()
        with self.db.transaction() as c:
            c.execute("INSERT INTO ruleset_config VALUES(1,?,?,?)", (rs.version, rs.to_json(), iso_z(self.time.now())))
            if not self.audit.read_only:
                self.audit.append("ruleset_initialized", {"version": rs.version, "sha256": sha256_text(rs.to_json())})
        return rs

    @property
    def ruleset(self) -> Ruleset:
        return self._ruleset

    def close(self):
        self.db.close()

    # ── Observability ────────────────────────────────────────────────
    def health(self) -> Dict[str, Any]:
        open_prs = self.db.query_one("SELECT COUNT(*) FROM pull_requests WHERE state='open'")[0]
        return {
            "schema": SCHEMA_VERSION,
            "ok": not self.audit.read_only and self.db.integrity_check(),
            "read_only": self.audit.read_only,
            "corruption": self.audit.corruption,
            "signature_algorithm": self.verifier.algorithm,
            "emergency_scope": self.settings.emergency_scope.value,
            "audit_entries": self.audit.count(),
            "audit_tip": self.audit.tip(),
            "open_prs": open_prs,
            "ruleset_version": self._ruleset.version,
        }

    # ── Registry administration ──────────────────────────────────────
    def enroll_maintainer(self, username: str, public_key: str, layer: int = 1, actor: Optional[str] = None) -> Maintainer:
        with self.db.transaction():
            m = self.registry.enroll_maintainer(username, public_key, layer)
            self.audit.append("maintainer_enrolled", {"username": username, "public_key": m.public_key, "layer": m.layer}, actor=actor)
        return m

    def remove_maintainer(self, username: str, actor: Optional[str] = None) -> Maintainer:
        with self.db.transaction():
            m = self.registry.deactivate_maintainer(username)
            self.audit.append("maintainer_removed", {"username": username, "public_key": m.public_key}, actor=actor)
        return m

    def enroll_keyholder(self, username: str, public_key: str, actor: Optional[str] = None) -> Keyholder:
        with self.db.transaction():
            k = self.registry.enroll_keyholder(username, public_key)
            self.audit.append("keyholder_enrolled", {"username": username, "public_key": k.public_key}, actor=actor)
        return k

    def remove_keyholder(self, username: str, actor: Optional[str] = None) -> Keyholder:
        with self.db.transaction():
            k = self.registry.deactivate_keyholder(username)
            self.audit.append("keyholder_removed", {"username": username, "public_key": k.public_key}, actor=actor)
        return k

    def register_node(self, node_id: str, kind: Union[NodeKind, str], public_key: str,
                      qualification: Dict[str, Any] = None, actor: Optional[str] = None) -> EconomicNode:
        try:
            kind = NodeKind(kind) if not isinstance(kind, NodeKind) else kind
        except ValueError as exc:
            raise InputError(f"unknown node kind {kind!r}") from exc
        with self.db.transaction():
            n = self.registry.register_node(node_id, kind, public_key, qualification)
            self.audit.append("node_registered", {"node_id": node_id, "kind": kind.value, "public_key": n.public_key}, actor=actor)
        return n

    def activate_node(self, node_id: str, weight: Optional[float] = None, actor: Optional[str] = None) -> EconomicNode:
        with self.db.transaction():
            n = self.registry.activate_node(node_id, weight)
            self.audit.append("node_activated", {"node_id": node_id, "weight": n.weight}, actor=actor)
        return n

    def set_node_status(self, node_id: str, status: Union[NodeStatus, str], actor: Optional[str] = None) -> EconomicNode:
        try:
            status = NodeStatus(status) if not isinstance(status, NodeStatus) else status
        except ValueError as exc:
            raise InputError(f"unknown node status {status!r}") from exc
        if status is NodeStatus.ACTIVE:
            return self.activate_node(node_id, actor=actor)
        with self.db.transaction():
            n = self.registry.set_node_status(node_id, status)
            retired = self.veto.deactivate_node_signals(node_id)
            self.audit.append("node_status_changed", {"node_id": node_id, "status": status.value, "retired_signals": retired}, actor=actor)
        return n

    def update_ruleset(self, ruleset: Ruleset, actor: Optional[str] = None) -> Ruleset:
        ruleset.validate()
        ruleset.version = self._ruleset.version + 1
        with self.db.transaction() as c:
            c.execute("UPDATE ruleset_config SET version=?, ruleset_json=?, updated_at=? WHERE id=1",
                      (ruleset.version, ruleset.to_json(), iso_z(self.time.now())))
            self.audit.append("ruleset_updated", {"version": ruleset.version, "sha256": sha256_text(ruleset.to_json())}, actor=actor)
            self._ruleset = ruleset
        self.reevaluate_open_prs()
        return ruleset

    # ── Intake ───────────────────────────────────────────────────────
    def handle_webhook(self, event_type: str, payload: Dict[str, Any], delivery_id: Optional[str] = None,
                       timeout: Optional[float] = None) -> IntakeResult:
        deadline = Deadline(self.settings.decision_timeout_seconds if timeout is None else timeout)
        try:
            event = parse_event(event_type, payload)
        except InputError:
            self.telemetry.inc("mw_events_total", {"event": event_type or "none", "outcome": "rejected"})
            raise
        if isinstance(event, UnknownEvent):
            logger.debug("ignoring %s/%s %s", event.event_type, event.action, event.note)
            self.telemetry.inc("mw_events_total", {"event": event_type, "outcome": "ignored"})
            return IntakeResult("ignored", event_type, event.note or f"action {event.action!r} not handled")
        result = self.dispatch(event, event_fingerprint(event_type, payload, delivery_id), deadline)
        self.telemetry.inc("mw_events_total", {"event": event_type, "outcome": result.outcome})
        return result

    def dispatch(self, event: Event, fingerprint: Optional[str], deadline: Deadline) -> IntakeResult:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise InputError(f"no handler for {type(event).__name__}")
        try:
            return retry(lambda: handler(self, event, fingerprint, deadline),
                         attempts=self.settings.max_retries, base_delay=self.settings.retry_base_delay,
                         telemetry=self.telemetry)
        except PolicyError as exc:
            if not self._record_policy_violation(type(event).__name__, exc, fingerprint=fingerprint):
                return IntakeResult("duplicate", type(event).__name__, "already processed")
            raise

    def _record_policy_violation(self, operation: str, exc: PolicyError, actor: Optional[str] = None,
                                 fingerprint: Optional[str] = None) -> bool:
        """Audit a refused operation together with its event fingerprint. False if the event was already seen."""
        if not self.audit.read_only:
            with self.db.transaction():
                if self._seen(fingerprint):
                    return False
                self.audit.append("policy_violation", {"operation": operation, "reason": exc.reason, "detail": str(exc)}, actor=actor)
                self._mark_seen(fingerprint, operation)
        logger.warning("policy violation in %s: %s", operation, exc)
        self.telemetry.inc("mw_policy_violations_total", {"reason": exc.reason})
        return True

    def _seen(self, fingerprint: Optional[str]) -> bool:
        if not fingerprint:
            return False
        return self.db.query_one("SELECT 1 FROM processed_events WHERE fingerprint=?", (fingerprint,)) is not None

    def _mark_seen(self, fingerprint: Optional[str], event_name: str):
        if fingerprint:
            self.db.execute("INSERT INTO processed_events VALUES(?,?,?)", (fingerprint, event_name, iso_z(self.time.now())))

    def _pr_decision(self, repo: str, number: int, fingerprint: Optional[str], event_name: str, deadline: Deadline,
                     apply: Callable[[PullRequest, datetime.datetime, bool], str],
                     create: Optional[Callable[[datetime.datetime], PullRequest]] = None) -> IntakeResult:
        scope = self.emergency.scope_for(repo)
        with self._pr_locks.hold((repo, number), deadline.remaining()):
            deadline.check()
            self.audit.ensure_writable()
            self.emergency.observe(scope)
            with self.db.transaction():
                if self._seen(fingerprint):
                    return IntakeResult("duplicate", event_name, "already processed")
                now = self.time.now()
                pr = self._load_pr(repo, number)
                created = pr is None
                if created:
                    pr = create(now) if create else self._insert_pr(repo, number, "", "", "", "", [], now, now, "pr_observed")
                detail = apply(pr, now, created)
                decision = self._decide(pr, scope, now) if pr.state is PrState.OPEN else None
                if decision is None:
                    self._save_pr(pr, now)
                self._mark_seen(fingerprint, event_name)
                deadline.check()
            published = self._publish(decision.status) if decision else None
        return IntakeResult("processed", event_name, detail, decision, published)

    def _audit_only(self, fingerprint: Optional[str], event_name: str, job_type: str, payload: Dict[str, Any],
                    actor: Optional[str], deadline: Deadline) -> IntakeResult:
        deadline.check()
        with self.db.transaction():
            if self._seen(fingerprint):
                return IntakeResult("duplicate", event_name, "already processed")
            self.audit.append(job_type, payload, actor=actor)
            self._mark_seen(fingerprint, event_name)
            deadline.check()
        return IntakeResult("processed", event_name, "advisory")

    # ── Event handlers ───────────────────────────────────────────────
    def _on_pr_opened(self, ev: PrOpened, fp, deadline) -> IntakeResult:
        def create(now):
            return self._insert_pr(ev.repo, ev.number, ev.head_sha, ev.title, ev.body, ev.author, ev.changed_paths,
                                   ev.opened_at or now, now, "pr_opened")

        def apply(pr: PullRequest, now, created) -> str:
            if created:
                return "opened"
            if ev.reopened and pr.state is not PrState.OPEN:
                pr.state = PrState.OPEN
                self.audit.append("pr_reopened", {"pr_key": pr.key, "head_sha": ev.head_sha}, actor=ev.author)
            elif pr.state is not PrState.OPEN:
                return "pr_not_open"
            pr.head_sha, pr.title, pr.body, pr.author = ev.head_sha, ev.title, ev.body, ev.author
            if ev.changed_paths:
                pr.changed_paths = list(ev.changed_paths)
            self._refresh_tier(pr)
            return "reopened" if ev.reopened else "refreshed"

        return self._pr_decision(ev.repo, ev.number, fp, "pull_request", deadline, apply, create)

    def _on_pr_synchronized(self, ev: PrSynchronized, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            if pr.state is not PrState.OPEN:
                return "pr_not_open"
            pr.head_sha, pr.title, pr.body = ev.head_sha, ev.title, ev.body
            if ev.changed_paths:
                pr.changed_paths = list(ev.changed_paths)
            self.audit.append("pr_synchronized", {"pr_key": pr.key, "head_sha": ev.head_sha}, actor=ev.author)
            self._refresh_tier(pr)
            return "synchronized"

        return self._pr_decision(ev.repo, ev.number, fp, "pull_request", deadline, apply)

    def _on_pr_closed(self, ev: PrClosed, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            if pr.state is not PrState.OPEN:
                return "pr_not_open"
            pr.state = PrState.MERGED if ev.merged else PrState.CLOSED
            self.audit.append("pr_closed", {"pr_key": pr.key, "merged": ev.merged, "last_verdict": pr.last_verdict})
            return pr.state.value

        return self._pr_decision(ev.repo, ev.number, fp, "pull_request", deadline, apply)

    def _on_review(self, ev: ReviewSubmitted, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            logger.info("review %s by %s on %s", ev.state, ev.reviewer, pr.key)
            return f"review_{ev.state}"

        return self._pr_decision(ev.repo, ev.number, fp, "pull_request_review", deadline, apply)

    def _on_signature(self, ev: SignatureComment, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            if pr.state is not PrState.OPEN:
                return "pr_not_open"
            return self._add_signature(pr, ev.signer, ev.signature, now)

        return self._pr_decision(ev.repo, ev.number, fp, "issue_comment", deadline, apply)

    def _on_tier_override(self, ev: TierOverrideComment, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            if pr.state is not PrState.OPEN:
                return "pr_not_open"
            if self.registry.snapshot().active_maintainer(ev.actor) is None:
                self.audit.append("tier_override_rejected", {"pr_key": pr.key, "requested_tier": ev.tier,
                                                             "reason": "not_a_maintainer"}, actor=ev.actor)
                return "tier_override_rejected"
            old = pr.tier
            pr.tier, pr.tier_overridden = ev.tier, True
            self.audit.append("tier_overridden", {"pr_key": pr.key, "from": old, "to": ev.tier, "reason": ev.reason}, actor=ev.actor)
            return "tier_overridden"

        return self._pr_decision(ev.repo, ev.number, fp, "issue_comment", deadline, apply)

    def _on_veto_intent(self, ev: VetoCommentIntent, fp, deadline) -> IntakeResult:
        return self._audit_only(fp, "issue_comment", "veto_intent_received", {
            "comment_on": f"{ev.repo}#{ev.number}", "pr_key": f"{ev.target_repo}#{ev.target_number}",
            "strength": ev.strength, "reason": ev.reason,
        }, ev.commenter, deadline)

    def _on_withdraw_intent(self, ev: WithdrawCommentIntent, fp, deadline) -> IntakeResult:
        return self._audit_only(fp, "issue_comment", "veto_withdraw_intent_received", {
            "comment_on": f"{ev.repo}#{ev.number}", "pr_key": f"{ev.target_repo}#{ev.target_number}",
        }, ev.commenter, deadline)

    def _on_veto_signal(self, ev: VetoSignalEvent, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            if pr.state is not PrState.OPEN:
                return "pr_not_open"
            try:
                sig, replaced = self.veto.submit(pr.repo, pr.number, ev.node_id, ev.kind, ev.rationale, ev.signature,
                                                 self.registry.snapshot())
            except AuthError as exc:
                self.audit.append("veto_signal_rejected", {"pr_key": pr.key, "node_id": ev.node_id, "reason": exc.code})
                self.telemetry.inc("mw_veto_rejections_total", {"reason": exc.code})
                return "veto_signal_rejected"
            self.audit.append("veto_signal_added", {
                "pr_key": pr.key, "node_id": ev.node_id, "kind": sig.kind.value, "node_kind": sig.node_kind.value,
                "weight": sig.weight, "rationale": ev.rationale, "replaced_signal": replaced,
            }, actor=ev.node_id)
            return "veto_signal_added"

        return self._pr_decision(ev.repo, ev.number, fp, "veto", deadline, apply)

    def _on_veto_withdraw(self, ev: VetoWithdrawEvent, fp, deadline) -> IntakeResult:
        def apply(pr: PullRequest, now, created) -> str:
            if pr.state is not PrState.OPEN:
                return "pr_not_open"
            try:
                sig = self.veto.withdraw(pr.repo, pr.number, ev.node_id, ev.signature, self.registry.snapshot())
            except AuthError as exc:
                self.audit.append("veto_withdraw_rejected", {"pr_key": pr.key, "node_id": ev.node_id, "reason": exc.code})
                return "veto_withdraw_rejected"
            self.audit.append("veto_withdrawn", {"pr_key": pr.key, "node_id": ev.node_id, "signal_id": sig.id}, actor=ev.node_id)
            return "veto_withdrawn"

        return self._pr_decision(ev.repo, ev.number, fp, "veto", deadline, apply)

    def _on_emergency_activate(self, ev: EmergencyActivate, fp, deadline) -> IntakeResult:
        scope = self.emergency.scope_for(ev.repo)
        deadline.check()
        with self.emergency.hold(scope):
            if self._seen(fp):
                return IntakeResult("duplicate", "emergency", "already processed")
            em = self.emergency.activate(scope, ev.tier, ev.activated_by, ev.reason, ev.evidence, ev.signatures)
            self._mark_seen(fp, "emergency")
            deadline.check()
        self.reevaluate_open_prs(scope)
        return IntakeResult("processed", "emergency", f"emergency_activated:{em.tier.value}")

    def _on_emergency_extend(self, ev: EmergencyExtend, fp, deadline) -> IntakeResult:
        scope = self.emergency.scope_for(ev.repo)
        deadline.check()
        with self.emergency.hold(scope):
            if self._seen(fp):
                return IntakeResult("duplicate", "emergency", "already processed")
            em = self.emergency.extend(scope, ev.requested_by, ev.signatures)
            self._mark_seen(fp, "emergency")
            deadline.check()
        self.reevaluate_open_prs(scope)
        return IntakeResult("processed", "emergency", f"emergency_extended:{em.extension_count}")

    _handlers: Dict[type, Callable[..., IntakeResult]] = {
        PrOpened: _on_pr_opened,
        PrSynchronized: _on_pr_synchronized,
        PrClosed: _on_pr_closed,
        ReviewSubmitted: _on_review,
        SignatureComment: _on_signature,
        TierOverrideComment: _on_tier_override,
        VetoCommentIntent: _on_veto_intent,
        WithdrawCommentIntent: _on_withdraw_intent,
        VetoSignalEvent: _on_veto_signal,
        VetoWithdrawEvent: _on_veto_withdraw,
        EmergencyActivate: _on_emergency_activate,
        EmergencyExtend: _on_emergency_extend,
    }

    # ── Emergency administration ─────────────────────────────────────
    def _emergency_op(self, name: str, actor: str, fn: Callable[[], ActiveEmergency]) -> ActiveEmergency:
        try:
            return fn()
        except PolicyError as exc:
            self._record_policy_violation(name, exc, actor)
            raise

    def current_emergency(self, repo: Optional[str] = None) -> Optional[ActiveEmergency]:
        return self.emergency.observe(self.emergency.scope_for(repo))

    def deactivate_emergency(self, actor: str, note: str = "", repo: Optional[str] = None) -> ActiveEmergency:
        scope = self.emergency.scope_for(repo)
        em = self._emergency_op("deactivate_emergency", actor, lambda: self.emergency.deactivate(scope, actor, note))
        self.reevaluate_open_prs(scope)
        return em

    def record_post_mortem(self, url: str, actor: str, repo: Optional[str] = None) -> ActiveEmergency:
        scope = self.emergency.scope_for(repo)
        return self._emergency_op("record_post_mortem", actor, lambda: self.emergency.record_post_mortem(scope, url, actor))

    def record_security_audit(self, url: str, actor: str, repo: Optional[str] = None) -> ActiveEmergency:
        scope = self.emergency.scope_for(repo)
        return self._emergency_op("record_security_audit", actor, lambda: self.emergency.record_security_audit(scope, url, actor))

    # ── Evaluation ───────────────────────────────────────────────────
    def evaluate(self, repo: str, number: int, timeout: Optional[float] = None) -> Decision:
        """Re-run the decision for one open PR, e.g. once its review period may have elapsed."""
        deadline = Deadline(self.settings.decision_timeout_seconds if timeout is None else timeout)
        scope = self.emergency.scope_for(repo)
        with self._pr_locks.hold((repo, number), deadline.remaining()):
            self.audit.ensure_writable()
            self.emergency.observe(scope)
            with self.db.transaction():
                pr = self._load_pr(repo, number)
                if pr is None:
                    raise NotFoundError(f"unknown pull request {repo}#{number}")
                if pr.state is not PrState.OPEN:
                    raise PolicyError("pr_not_open", f"{pr.key} is {pr.state.value}")
                decision = self._decide(pr, scope, self.time.now())
                deadline.check()
            decision_published = self._publish(decision.status)
        if not decision_published:
            logger.warning("decision for %s#%d persisted but status not posted", repo, number)
        return decision

    def reevaluate_open_prs(self, scope: Optional[str] = None) -> List[Decision]:
        rows = self.db.query("SELECT repo, number FROM pull_requests WHERE state='open' ORDER BY repo, number")
        out = []
        for r in rows:
            if scope is not None and self.emergency.scope_for(r["repo"]) != scope:
                continue
            out.append(self.evaluate(r["repo"], r["number"]))
        return out

    def get_pr(self, repo: str, number: int) -> Dict[str, Any]:
        pr = self._load_pr(repo, number)
        if pr is None:
            raise NotFoundError(f"unknown pull request {repo}#{number}")
        d = pr.to_dict()
        d["signatures"] = [dict(r) for r in self.db.query(
            "SELECT signer, status, reason, created_at FROM signatures WHERE repo=? AND number=? ORDER BY id", (repo, number))]
        d["veto_signals"] = [s.to_dict() for s in self.veto.signals(repo, number, active_only=False)]
        return d

    def _decide(self, pr: PullRequest, scope: str, now: datetime.datetime) -> Decision:
        snapshot = self.registry.snapshot()
        rule = self._ruleset.rule(pr.tier)
        em = self.emergency.current(scope)
        active_em = em if em is not None and em.is_active and now < em.expires_at else None
        review = evaluate_review(pr.opened_at, rule, self._ruleset, now, active_em.tier.value if active_em else None)
        sigs = [(r["signer"], r["signature"]) for r in self.db.query(
            "SELECT signer, signature FROM signatures WHERE repo=? AND number=? AND status='accepted' ORDER BY id",
            (pr.repo, pr.number))]
        threshold = evaluate_threshold(pr.repo, pr.number, rule, sigs, snapshot, self.verifier)
        tally = self.veto.tally(pr.repo, pr.number, pr.tier, rule, snapshot)

        reasons = []
        if not review.met:
            reasons.append(REASON_REVIEW_PERIOD)
        if not threshold.met:
            reasons.append(REASON_SIGNATURES)
        if tally.active:
            reasons.append(REASON_VETO)
        verdict = Verdict.BLOCKED if reasons else Verdict.MERGE_OK
        ok = verdict is Verdict.MERGE_OK

        text = render_status(review, threshold, tally, em, now, ok)
        status = StatusCheck(pr.repo, pr.number, pr.head_sha, CheckState.SUCCESS if ok else CheckState.FAILURE, text)
        rendered = (verdict.value, reasons) != (pr.last_verdict, pr.last_reasons)

        pr.review_period_met, pr.signatures_met, pr.veto_active = review.met, threshold.met, tally.active
        pr.governance_status = "ok" if ok else "blocked"
        pr.last_verdict, pr.last_reasons, pr.status_text = verdict.value, reasons, text
        self._save_pr(pr, now)
        if rendered:
            self.audit.append("decision_rendered", {
                "pr_key": pr.key, "verdict": verdict.value, "reasons": reasons, "tier": pr.tier,
                "signatures": threshold.count, "required": threshold.required,
                "review_days_required": review.required_days, "review_days_elapsed": review.elapsed_days,
                "mining_veto_pct": tally.mining_veto_pct, "economic_veto_pct": tally.economic_veto_pct,
                "emergency_tier": active_em.tier.value if active_em else None,
            })
        self.telemetry.inc("mw_decisions_total", {"verdict": verdict.value})
        return Decision(pr.repo, pr.number, pr.tier, verdict, reasons, review, threshold, tally, em, status, now, rendered)

    def _publish(self, check: StatusCheck) -> bool:
        try:
            retry(lambda: self.publisher.publish(check), attempts=self.settings.max_retries,
                  base_delay=self.settings.retry_base_delay, telemetry=self.telemetry)
        except TransientError as exc:
            logger.error("status for %s#%d not posted: %s", check.repo, check.number, exc)
            self.telemetry.inc("mw_status_publish_failures_total")
            return False
        self.telemetry.inc("mw_status_published_total", {"state": check.state.value})
        return True

    # ── Signatures ───────────────────────────────────────────────────
    def _add_signature(self, pr: PullRequest, signer: str, signature: str, now: datetime.datetime) -> str:
        rule = self._ruleset.rule(pr.tier)
        snapshot = self.registry.snapshot()
        key = signer_pool_keys(rule, snapshot).get(signer)
        if key is None:
            enrolled = snapshot.active_maintainer(signer) or snapshot.active_keyholder(signer)
            reason = "signer_not_in_pool" if enrolled else "signer_not_registered"
            return self._reject_signature(pr, signer, signature, now, reason)
        message = approval_message(pr.repo, pr.number)
        try:
            self.verifier.verify(message, signature, key)
        except AuthError as exc:
            return self._reject_signature(pr, signer, signature, now, exc.code)

        prior = self.db.query_one("SELECT id, signature FROM signatures WHERE repo=? AND number=? AND signer=? AND status='accepted'",
                                  (pr.repo, pr.number, signer))
        if prior is not None and self.verifier.is_valid(message, prior["signature"], key):
            self._insert_signature(pr, signer, signature, now, "duplicate", None)
            self.audit.append("signature_duplicate", {"pr_key": pr.key, "signer": signer}, actor=signer)
            self.telemetry.inc("mw_signatures_total", {"outcome": "duplicate"})
            return "signature_duplicate"
        if prior is not None:
            self.db.execute("UPDATE signatures SET status='superseded', reason='key_rotated' WHERE id=?", (prior["id"],))
        self._insert_signature(pr, signer, signature, now, "accepted", None)
        self.audit.append("signature_added", {"pr_key": pr.key, "signer": signer, "tier": pr.tier,
                                              "signer_pool": rule.signer_pool.value}, actor=signer)
        self.telemetry.inc("mw_signatures_total", {"outcome": "added"})
        return "signature_added"

    def _reject_signature(self, pr: PullRequest, signer: str, signature: str, now: datetime.datetime, reason: str) -> str:
        self._insert_signature(pr, signer, signature, now, "rejected", reason)
        self.audit.append("signature_rejected", {"pr_key": pr.key, "signer": signer, "reason": reason}, actor=signer)
        self.telemetry.inc("mw_signatures_total", {"outcome": "rejected"})
        logger.info("signature by %s on %s rejected: %s", signer, pr.key, reason)
        return "signature_rejected"

    def _insert_signature(self, pr: PullRequest, signer: str, signature: str, now: datetime.datetime,
                          status: str, reason: Optional[str]):
        self.db.execute("INSERT INTO signatures(repo, number, signer, signature, created_at, status, reason) VALUES(?,?,?,?,?,?,?)",
                        (pr.repo, pr.number, signer, signature, iso_z(now), status, reason))

    # ── PR persistence ───────────────────────────────────────────────
    def _refresh_tier(self, pr: PullRequest):
        if pr.tier_overridden:
            return
        res = classify(pr.title, pr.body, pr.changed_paths, self._ruleset.classifier)
        if res.tier > pr.tier:
            self.audit.append("tier_changed", {"pr_key": pr.key, "from": pr.tier, "to": int(res.tier), "rationale": res.rationale})
            pr.tier = int(res.tier)

    def _insert_pr(self, repo: str, number: int, head_sha: str, title: str, body: str, author: str,
                   changed_paths: List[str], opened_at: datetime.datetime, now: datetime.datetime,
                   job_type: str) -> PullRequest:
        res = classify(title, body, changed_paths, self._ruleset.classifier)
        pr = PullRequest(repo, number, head_sha, title, body, author, list(changed_paths), int(res.tier), False, opened_at)
        self.db.execute("""
            INSERT INTO pull_requests(repo, number, head_sha, title, body, author, changed_paths_json, tier, tier_overridden,
              opened_at, state, governance_status, updated_at) VALUES(?,?,?,?,?,?,?,?,0,?,'open','pending',?)
        """, (repo, number, head_sha, title, body, author, json.dumps(pr.changed_paths), pr.tier, iso_z(opened_at), iso_z(now)))
        self.audit.append(job_type, {"pr_key": pr.key, "tier": pr.tier, "rationale": res.rationale,
                                     "head_sha": head_sha, "opened_at": iso_z(opened_at)}, actor=author or None)
        return pr

    def _load_pr(self, repo: str, number: int) -> Optional[PullRequest]:
        r = self.db.query_one("SELECT * FROM pull_requests WHERE repo=? AND number=?", (repo, number))
        if not r:
            return None
        return PullRequest(
            repo=r["repo"], number=r["number"], head_sha=r["head_sha"] or "", title=r["title"] or "",
            body=r["body"] or "", author=r["author"] or "", changed_paths=json.loads(r["changed_paths_json"] or "[]"),
            tier=r["tier"], tier_overridden=bool(r["tier_overridden"]), opened_at=parse_z(r["opened_at"]),
            state=PrState(r["state"]), governance_status=r["governance_status"],
            review_period_met=bool(r["review_period_met"]), signatures_met=bool(r["signatures_met"]),
            veto_active=bool(r["veto_active"]), last_verdict=r["last_verdict"],
            last_reasons=json.loads(r["last_reasons_json"] or "[]"), status_text=r["status_text"] or "",
        )

    def _save_pr(self, pr: PullRequest, now: datetime.datetime):
        self.db.execute("""
            UPDATE pull_requests SET head_sha=?, title=?, body=?, author=?, changed_paths_json=?, tier=?, tier_overridden=?,
              state=?, governance_status=?, review_period_met=?, signatures_met=?, veto_active=?, last_verdict=?,
              last_reasons_json=?, status_text=?, updated_at=?
            WHERE repo=? AND number=?
        """, (pr.head_sha, pr.title, pr.body, pr.author, json.dumps(pr.changed_paths), pr.tier, int(pr.tier_overridden),
              pr.state.value, pr.governance_status, int(pr.review_period_met), int(pr.signatures_met), int(pr.veto_active),
              pr.last_verdict, json.dumps(pr.last_reasons), pr.status_text, iso_z(now), pr.repo, pr.number))
