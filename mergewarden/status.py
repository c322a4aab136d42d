"""
Status-check rendering and the outbound publisher seam.
"""

from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from mergewarden.emergency import ActiveEmergency, EmergencyState
from mergewarden.errors import TransientError
from mergewarden.evaluators import ReviewEvaluation, ThresholdResult
from mergewarden.veto import VetoTally

logger = logging.getLogger(__name__)

STATUS_CONTEXT = "governance/merge"

class CheckState(Enum):
    SUCCESS = "success"
    FAILURE = "failure"

@dataclass
class StatusCheck:
    repo: str
    number: int
    head_sha: str
    state: CheckState
    text: str
    context: str = STATUS_CONTEXT

    @property
    def title(self) -> str:
        return self.text.splitlines()[0] if self.text else ""

    def to_dict(self):
        return {"repo": self.repo, "number": self.number, "head_sha": self.head_sha,
                "state": self.state.value, "context": self.context, "title": self.title, "text": self.text}

# =============================================================================
# RENDERING
# =============================================================================

def _day(dt: datetime.datetime) -> str:
    return dt.strftime("%Y-%m-%d")

def _minute(dt: datetime.datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M UTC")

def render_review_period(r: ReviewEvaluation) -> str:
    if r.met:
        return "✅ Governance: Review Period Met"
    return (
        "❌ Governance: Review Period Not Met\n"
        f"Required: {r.required_days} days | Elapsed: {r.elapsed_days} days\n"
        f"Earliest merge: {_day(r.earliest_merge)}"
    )

def render_signatures(t: ThresholdResult) -> str:
    if t.met:
        return "✅ Governance: Signatures Complete"
    return (
        "❌ Governance: Signatures Missing\n"
        f"Required: {t.required}-of-{t.total} | Current: {t.count}/{t.total}\n"
        f"Signed by: {', '.join(t.signers) or 'none'}\n"
        f"Pending: {', '.join(t.pending) or 'none'}"
    )

def render_veto(v: VetoTally) -> str:
    if not v.enabled:
        return ""
    head = "🚫 Governance: Economic Veto Active" if v.active else "✅ Governance: No Economic Veto"
    return (
        f"{head}\n"
        f"Mining veto: {v.mining_veto_pct:.1f}% (threshold {v.mining_threshold:.0f}%) | "
        f"Economic veto: {v.economic_veto_pct:.1f}% (threshold {v.economic_threshold:.0f}%)\n"
        f"Signals: {v.veto_count} veto, {v.support_count} support, {v.abstain_count} abstain"
    )

def render_emergency(em: ActiveEmergency, now: datetime.datetime) -> str:
    rules = em.tier.rules
    remaining = em.remaining(now)
    hours = int(remaining.total_seconds() // 3600)
    expires = f"⏰ Expires in {hours} hours" if hours < 24 else f"Expires in {remaining.days} days"
    if em.can_extend():
        ext = f"📋 Extensions: {em.extension_count} of {rules.max_extensions} used (can extend by {rules.extension_days} days)"
    elif rules.allows_extensions:
        ext = "⚠️ Maximum extensions reached"
    else:
        ext = "🚫 Extensions not allowed for this tier"
    lines = [
        f"{rules.emoji} Emergency Tier Active: {rules.label}",
        f"📊 Requirements: {rules.activation[0]}-of-{rules.activation[1]} signatures, {rules.review_days} day review period",
        expires,
        ext,
        "",
        f"Reason: {em.reason}",
        f"Activated by: {em.activated_by} on {_minute(em.activated_at)}",
    ]
    if hours < 72:
        lines += ["", f"⚠️ {rules.emoji} Emergency Tier Expiring Soon", f"Expires at: {_minute(em.expires_at)}"]
    return "\n".join(lines)

def render_post_emergency(em: ActiveEmergency, now: datetime.datetime) -> str:
    rules = em.tier.rules
    out = [f"📋 Post-Emergency Requirements for {rules.label}", ""]

    def line(done: bool, deadline: datetime.datetime, what: str, soon_days: int) -> str:
        if done:
            return f"✅ {what} {'published' if what == 'Post-mortem' else 'completed'}"
        if now > deadline:
            return f"❌ {what} OVERDUE"
        if (deadline - now).days < soon_days:
            return f"⚠️ {what} due soon"
        return f"⏳ {what} pending"

    out.append(line(em.post_mortem_at is not None, em.post_mortem_deadline, "Post-mortem", 7))
    out.append(f"Deadline: {_day(em.post_mortem_deadline)}")
    if em.security_audit_deadline is not None:
        out.append("")
        out.append(line(em.security_audit_at is not None, em.security_audit_deadline, "Security audit", 14))
        out.append(f"Deadline: {_day(em.security_audit_deadline)}")
    return "\n".join(out)

def render_status(review: ReviewEvaluation, threshold: ThresholdResult, veto: VetoTally,
                  emergency: Optional[ActiveEmergency], now: datetime.datetime, ok: bool) -> str:
    if ok:
        base = "✅ Governance: All Requirements Met - Ready to Merge"
    else:
        parts = [render_review_period(review), render_signatures(threshold)]
        if veto.active:
            parts.append(render_veto(veto))
        base = "❌ Governance: Requirements Not Met\n\n" + "\n\n".join(parts)
    if veto.enabled and not veto.active and (veto.veto_count or veto.support_count or veto.abstain_count):
        base += "\n\n" + render_veto(veto)
    if emergency is None:
        return base
    if emergency.state is EmergencyState.ACTIVE:
        return f"{render_emergency(emergency, now)}\n\n---\n\n{base}"
    return f"{base}\n\n---\n\n{render_post_emergency(emergency, now)}"

# =============================================================================
# PUBLISHERS
# =============================================================================

class StatusPublisher:
    """Outbound adapter for the code-review platform. Implementations raise TransientError on 5xx/I/O."""

    def publish(self, check: StatusCheck) -> None:
        raise NotImplementedError

class LoggingStatusPublisher(StatusPublisher):
    def publish(self, check: StatusCheck) -> None:
        logger.info("status %s for %s#%d: %s", check.state.value, check.repo, check.number, check.title)

class InMemoryStatusPublisher(StatusPublisher):
    """Keeps every published check; can be told to fail the next N calls."""

    def __init__(self, fail_next: int = 0):
        self._lock = threading.Lock()
        self.published: List[StatusCheck] = []
        self.fail_next = fail_next

    def publish(self, check: StatusCheck) -> None:
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise TransientError("status endpoint unavailable")
            self.published.append(check)

    def latest(self, repo: str, number: int) -> Optional[StatusCheck]:
        with self._lock:
            for c in reversed(self.published):
                if c.repo == repo and c.number == number:
                    return c
        return None
