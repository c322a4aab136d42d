"""
Emergency-mode lifecycle.

    inactive --activate--> active --now >= expires_at--> expired --obligations done--> inactive
                           active --extend--> active (expires_at += extension_days)

One active record per scope. Expiry is observed lazily: callers run
``observe(scope)`` before deciding anything that depends on the emergency.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from mergewarden.audit import AuditLog
from mergewarden.crypto import SignatureVerifier, emergency_message, extension_message
from mergewarden.db import GovernanceDB
from mergewarden.errors import AuthError, InputError, MalformedSignature, PolicyError
from mergewarden.registry import Registry
from mergewarden.ruleset import EmergencyScope, Ruleset
from mergewarden.util import Telemetry, TimeAuthority, iso_z, parse_z

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

# =============================================================================
# TIERS
# =============================================================================

@dataclass(frozen=True)
class EmergencyTierRule:
    label: str
    emoji: str
    review_days: int
    activation: Tuple[int, int]
    max_duration_days: int
    max_extensions: int
    extension_days: int
    extension_threshold: Tuple[int, int]
    post_mortem_days: int
    security_audit_days: Optional[int]

    @property
    def allows_extensions(self) -> bool:
        return self.max_extensions > 0

class EmergencyTier(Enum):
    CRITICAL = "critical"
    URGENT = "urgent"
    ELEVATED = "elevated"

    @property
    def rules(self) -> EmergencyTierRule:
        return EMERGENCY_TIER_RULES[self]

    @classmethod
    def parse(cls, value: Any) -> "EmergencyTier":
        if isinstance(value, cls):
            return value
        by_number = {1: cls.CRITICAL, 2: cls.URGENT, 3: cls.ELEVATED}
        if isinstance(value, int) and not isinstance(value, bool) and value in by_number:
            return by_number[value]
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise InputError(f"unknown emergency tier {value!r}") from exc

EMERGENCY_TIER_RULES: Dict[EmergencyTier, EmergencyTierRule] = {
    EmergencyTier.CRITICAL: EmergencyTierRule("Critical Emergency", "🚨", 0, (4, 7), 7, 0, 0, (0, 0), 30, 60),
    EmergencyTier.URGENT: EmergencyTierRule("Urgent Security Issue", "⚠️", 7, (5, 7), 30, 1, 30, (6, 7), 60, None),
    EmergencyTier.ELEVATED: EmergencyTierRule("Elevated Priority", "📢", 30, (6, 7), 90, 2, 30, (6, 7), 90, None),
}

class EmergencyState(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    INACTIVE = "inactive"

# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class KeyholderSignature:
    signer: str
    signature: str

@dataclass
class ActiveEmergency:
    emergency_id: str
    scope: str
    tier: EmergencyTier
    activated_by: str
    reason: str
    evidence: str
    activated_at: datetime.datetime
    expires_at: datetime.datetime
    extension_count: int
    state: EmergencyState
    signers: List[str] = field(default_factory=list)
    ended_at: Optional[datetime.datetime] = None
    post_mortem_deadline: Optional[datetime.datetime] = None
    post_mortem_url: Optional[str] = None
    post_mortem_at: Optional[datetime.datetime] = None
    security_audit_deadline: Optional[datetime.datetime] = None
    security_audit_url: Optional[str] = None
    security_audit_at: Optional[datetime.datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state is EmergencyState.ACTIVE

    def can_extend(self) -> bool:
        r = self.tier.rules
        return self.is_active and r.allows_extensions and self.extension_count < r.max_extensions

    def remaining(self, now: datetime.datetime) -> datetime.timedelta:
        return max(self.expires_at - now, datetime.timedelta(0))

    def obligations_met(self) -> bool:
        if self.post_mortem_at is None:
            return False
        return self.tier.rules.security_audit_days is None or self.security_audit_at is not None

    def to_dict(self) -> Dict[str, Any]:
        def ts(v):
            return iso_z(v) if v else None
        return {
            "emergency_id": self.emergency_id, "scope": self.scope, "tier": self.tier.value,
            "tier_label": self.tier.rules.label, "activated_by": self.activated_by, "reason": self.reason,
            "evidence": self.evidence, "activated_at": ts(self.activated_at), "expires_at": ts(self.expires_at),
            "extension_count": self.extension_count, "state": self.state.value, "signers": list(self.signers),
            "ended_at": ts(self.ended_at), "post_mortem_deadline": ts(self.post_mortem_deadline),
            "post_mortem_url": self.post_mortem_url, "post_mortem_at": ts(self.post_mortem_at),
            "security_audit_deadline": ts(self.security_audit_deadline),
            "security_audit_url": self.security_audit_url, "security_audit_at": ts(self.security_audit_at),
        }

def _opt_ts(v: Optional[str]) -> Optional[datetime.datetime]:
    return parse_z(v) if v else None

def _from_row(r) -> ActiveEmergency:
    return ActiveEmergency(
        emergency_id=r["emergency_id"], scope=r["scope"], tier=EmergencyTier(r["tier"]),
        activated_by=r["activated_by"], reason=r["reason"], evidence=r["evidence"],
        activated_at=parse_z(r["activated_at"]), expires_at=parse_z(r["expires_at"]),
        extension_count=r["extension_count"], state=EmergencyState(r["state"]),
        signers=json.loads(r["signers_json"] or "[]"), ended_at=_opt_ts(r["ended_at"]),
        post_mortem_deadline=_opt_ts(r["post_mortem_deadline"]), post_mortem_url=r["post_mortem_url"],
        post_mortem_at=_opt_ts(r["post_mortem_at"]), security_audit_deadline=_opt_ts(r["security_audit_deadline"]),
        security_audit_url=r["security_audit_url"], security_audit_at=_opt_ts(r["security_audit_at"]),
    )

def _mark_ended(em: ActiveEmergency, ended_at: datetime.datetime):
    """Obligation deadlines run from the end of the window, not from activation."""
    rules = em.tier.rules
    em.state = EmergencyState.EXPIRED
    em.ended_at = ended_at
    em.post_mortem_deadline = ended_at + datetime.timedelta(days=rules.post_mortem_days)
    if rules.security_audit_days is not None:
        em.security_audit_deadline = ended_at + datetime.timedelta(days=rules.security_audit_days)

# =============================================================================
# CONTROLLER
# =============================================================================

class EmergencyController:
    def __init__(
        self,
        db: GovernanceDB,
        audit: AuditLog,
        registry: Registry,
        verifier: SignatureVerifier,
        ruleset: Callable[[], Ruleset],
        scope_mode: EmergencyScope = EmergencyScope.GLOBAL,
        time_authority: TimeAuthority = None,
        telemetry: Telemetry = None,
    ):
        self.db = db
        self.audit = audit
        self.registry = registry
        self.verifier = verifier
        self._ruleset = ruleset
        self.scope_mode = scope_mode
        self.time = time_authority or TimeAuthority()
        self.telemetry = telemetry or Telemetry()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = defaultdict(threading.RLock)

    def scope_for(self, repo: Optional[str]) -> str:
        if self.scope_mode is EmergencyScope.REPOSITORY:
            if not repo:
                raise InputError("repository-scoped emergencies need a repository")
            return repo
        return GLOBAL_SCOPE

    @contextmanager
    def hold(self, scope: str) -> Iterator[None]:
        """Scope lock, then a database transaction. Always taken in that order."""
        with self._locks_guard:
            lock = self._locks[scope]
        with lock, self.db.transaction():
            yield

    # ── Reads ────────────────────────────────────────────────────────
    def current(self, scope: str) -> Optional[ActiveEmergency]:
        """Latest record in scope that is active or still owes obligations."""
        r = self.db.query_one(
            "SELECT * FROM active_emergencies WHERE scope=? AND state IN ('active','expired') "
            "ORDER BY (state='active') DESC, activated_at DESC LIMIT 1", (scope,))
        return _from_row(r) if r else None

    def active(self, scope: str, now: Optional[datetime.datetime] = None) -> Optional[ActiveEmergency]:
        """Active record in scope, treating a passed deadline as expired even before ``observe``."""
        em = self.current(scope)
        now = now or self.time.now()
        if em and em.is_active and now < em.expires_at:
            return em
        return None

    def history(self, scope: Optional[str] = None) -> List[ActiveEmergency]:
        if scope:
            rows = self.db.query("SELECT * FROM active_emergencies WHERE scope=? ORDER BY activated_at", (scope,))
        else:
            rows = self.db.query("SELECT * FROM active_emergencies ORDER BY activated_at")
        return [_from_row(r) for r in rows]

    def pending_obligations(self) -> List[ActiveEmergency]:
        return [_from_row(r) for r in self.db.query(
            "SELECT * FROM active_emergencies WHERE state='expired' ORDER BY activated_at")]

    # ── Transitions ──────────────────────────────────────────────────
    def observe(self, scope: str) -> Optional[ActiveEmergency]:
        """Expire a passed record, close a fully discharged one; return what remains.

        With the audit log read-only nothing is persisted: the record is
        returned as it would look after the transitions.
        """
        if self.audit.read_only:
            return self._project(scope)
        with self.hold(scope):
            em = self.current(scope)
            if em is None:
                return None
            now = self.time.now()
            if em.is_active and now >= em.expires_at:
                em = self._end(em, em.expires_at, "emergency_expired", actor=None)
            if em.state is EmergencyState.EXPIRED and em.obligations_met():
                em = self._close(em)
            return em if em.state is not EmergencyState.INACTIVE else None

    def activate(self, scope: str, tier: EmergencyTier, activated_by: str, reason: str, evidence: str,
                 signatures: List[KeyholderSignature]) -> ActiveEmergency:
        tier = EmergencyTier.parse(tier)
        rules = tier.rules
        if not reason or not reason.strip():
            raise InputError("emergency reason required")
        min_len = self._ruleset().evidence_min_length
        if len((evidence or "").strip()) < min_len:
            raise PolicyError("insufficient_evidence", f"evidence must be at least {min_len} characters")
        self.observe(scope)
        with self.hold(scope):
            existing = self.current(scope)
            if existing is not None and existing.is_active:
                raise PolicyError("emergency_already_active", f"an emergency is already active in scope {scope}")
            signers = self._verify_quorum(emergency_message(tier.value, reason), signatures, rules.activation[0])
            now = self.time.now()
            em = ActiveEmergency(
                emergency_id=str(uuid.uuid4()), scope=scope, tier=tier, activated_by=activated_by, reason=reason,
                evidence=evidence, activated_at=now, expires_at=now + datetime.timedelta(days=rules.max_duration_days),
                extension_count=0, state=EmergencyState.ACTIVE, signers=signers,
            )
            self.db.conn.execute("""
                INSERT INTO active_emergencies(emergency_id, scope, tier, activated_by, reason, evidence, signers_json,
                  activated_at, expires_at, extension_count, state) VALUES(?,?,?,?,?,?,?,?,?,?,?)
            """, (em.emergency_id, scope, tier.value, activated_by, reason, evidence, json.dumps(signers),
                  iso_z(em.activated_at), iso_z(em.expires_at), 0, em.state.value))
            self.audit.append("emergency_activated", {
                "emergency_id": em.emergency_id, "scope": scope, "tier": tier.value, "reason": reason,
                "signers": signers, "expires_at": iso_z(em.expires_at),
            }, actor=activated_by)
        self.telemetry.inc("mw_emergency_transitions_total", {"to": "active", "tier": tier.value})
        logger.warning("emergency %s activated in scope %s by %s", tier.value, scope, activated_by)
        return em

    def extend(self, scope: str, requested_by: str, signatures: List[KeyholderSignature]) -> ActiveEmergency:
        self.observe(scope)
        with self.hold(scope):
            em = self.current(scope)
            if em is None:
                raise PolicyError("no_active_emergency", f"no emergency in scope {scope}")
            if not em.is_active:
                raise PolicyError("emergency_expired", "cannot extend an expired emergency")
            rules = em.tier.rules
            if not rules.allows_extensions:
                raise PolicyError(f"no_extension_allowed_{em.tier.value}", f"{rules.label} cannot be extended")
            if em.extension_count >= rules.max_extensions:
                raise PolicyError("max_extensions_reached", f"{rules.max_extensions} extension(s) already used")
            ext_no = em.extension_count + 1
            signers = self._verify_quorum(extension_message(em.tier.value, em.reason, ext_no), signatures,
                                          rules.extension_threshold[0])
            em.expires_at = em.expires_at + datetime.timedelta(days=rules.extension_days)
            em.extension_count = ext_no
            self.db.conn.execute("UPDATE active_emergencies SET expires_at=?, extension_count=? WHERE emergency_id=?",
                                 (iso_z(em.expires_at), ext_no, em.emergency_id))
            self.audit.append("emergency_extended", {
                "emergency_id": em.emergency_id, "scope": scope, "extension_count": ext_no,
                "expires_at": iso_z(em.expires_at), "signers": signers,
            }, actor=requested_by)
        self.telemetry.inc("mw_emergency_transitions_total", {"to": "extended", "tier": em.tier.value})
        return em

    def deactivate(self, scope: str, actor: str, note: str = "") -> ActiveEmergency:
        """End an active emergency early. Post-emergency obligations still apply."""
        self.observe(scope)
        with self.hold(scope):
            em = self.current(scope)
            if em is None or not em.is_active:
                raise PolicyError("no_active_emergency", f"no active emergency in scope {scope}")
            return self._end(em, self.time.now(), "emergency_deactivated", actor=actor, note=note)

    def record_post_mortem(self, scope: str, url: str, actor: str) -> ActiveEmergency:
        return self._record_obligation(scope, "post_mortem", url, actor)

    def record_security_audit(self, scope: str, url: str, actor: str) -> ActiveEmergency:
        return self._record_obligation(scope, "security_audit", url, actor)

    # ── Internals ────────────────────────────────────────────────────
    def _record_obligation(self, scope: str, kind: str, url: str, actor: str) -> ActiveEmergency:
        if not url:
            raise InputError(f"{kind} reference required")
        self.observe(scope)
        with self.hold(scope):
            em = self.current(scope)
            if em is None or em.state is not EmergencyState.EXPIRED:
                raise PolicyError("no_expired_emergency", "obligations are recorded after the emergency ends")
            if kind == "security_audit" and em.tier.rules.security_audit_days is None:
                raise PolicyError("security_audit_not_required", f"{em.tier.rules.label} needs no security audit")
            now = self.time.now()
            self.db.conn.execute(f"UPDATE active_emergencies SET {kind}_url=?, {kind}_at=? WHERE emergency_id=?",
                                 (url, iso_z(now), em.emergency_id))
            setattr(em, f"{kind}_url", url)
            setattr(em, f"{kind}_at", now)
            self.audit.append(f"{kind}_recorded", {"emergency_id": em.emergency_id, "url": url}, actor=actor)
            if em.obligations_met():
                em = self._close(em)
        return em

    def _project(self, scope: str) -> Optional[ActiveEmergency]:
        em = self.current(scope)
        if em is None:
            return None
        if em.is_active and self.time.now() >= em.expires_at:
            _mark_ended(em, em.expires_at)
        if em.state is EmergencyState.EXPIRED and em.obligations_met():
            return None
        return em

    def _end(self, em: ActiveEmergency, ended_at: datetime.datetime, job_type: str, actor: Optional[str],
             note: str = "") -> ActiveEmergency:
        _mark_ended(em, ended_at)
        self.db.conn.execute("""
            UPDATE active_emergencies SET state='expired', ended_at=?, post_mortem_deadline=?, security_audit_deadline=?
            WHERE emergency_id=?
        """, (iso_z(ended_at), iso_z(em.post_mortem_deadline),
              iso_z(em.security_audit_deadline) if em.security_audit_deadline else None, em.emergency_id))
        payload = {
            "emergency_id": em.emergency_id, "scope": em.scope, "tier": em.tier.value, "ended_at": iso_z(ended_at),
            "post_mortem_deadline": iso_z(em.post_mortem_deadline),
            "security_audit_deadline": iso_z(em.security_audit_deadline) if em.security_audit_deadline else None,
        }
        if note:
            payload["note"] = note
        self.audit.append(job_type, payload, actor=actor)
        self.telemetry.inc("mw_emergency_transitions_total", {"to": "expired", "tier": em.tier.value})
        logger.warning("emergency %s in scope %s ended (%s); post-mortem due %s",
                       em.tier.value, em.scope, job_type, iso_z(em.post_mortem_deadline))
        return em

    def _close(self, em: ActiveEmergency) -> ActiveEmergency:
        em.state = EmergencyState.INACTIVE
        self.db.conn.execute("UPDATE active_emergencies SET state='inactive' WHERE emergency_id=?", (em.emergency_id,))
        self.audit.append("emergency_closed", {"emergency_id": em.emergency_id, "scope": em.scope})
        self.telemetry.inc("mw_emergency_transitions_total", {"to": "inactive", "tier": em.tier.value})
        return em

    def _verify_quorum(self, message: str, signatures: List[KeyholderSignature], required: int) -> List[str]:
        snapshot = self.registry.snapshot()
        valid: List[str] = []
        for s in signatures:
            if s.signer in valid:
                continue
            kh = snapshot.active_keyholder(s.signer)
            if kh is None:
                logger.info("emergency signature from non-keyholder %s ignored", s.signer)
                continue
            try:
                self.verifier.verify(message, s.signature, kh.public_key)
            except (AuthError, MalformedSignature) as exc:
                logger.info("emergency signature from %s rejected: %s", s.signer, exc.code)
                continue
            valid.append(s.signer)
        if len(valid) < required:
            raise PolicyError("insufficient_signatures", f"{len(valid)} valid keyholder signatures, {required} required")
        return sorted(valid)
