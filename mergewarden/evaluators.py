"""
Review-period and signature-threshold evaluation.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from mergewarden.crypto import SignatureVerifier, approval_message
from mergewarden.errors import AuthError, MalformedSignature
from mergewarden.registry import RegistrySnapshot
from mergewarden.ruleset import Ruleset, SignerPool, TierRule

logger = logging.getLogger(__name__)

# =============================================================================
# REVIEW PERIOD
# =============================================================================

def elapsed_days(opened_at: datetime.datetime, now: datetime.datetime) -> int:
    """Whole days elapsed, floored."""
    return (now - opened_at).days

def required_review_days(rule: TierRule, ruleset: Ruleset, emergency_tier: Optional[str] = None) -> int:
    """Tier review days, lowered to the emergency override while an emergency is active."""
    if emergency_tier is None:
        return rule.review_days
    override = ruleset.emergency_review_days.get(emergency_tier, rule.review_days)
    return min(rule.review_days, int(override))

def review_period_met(opened_at: datetime.datetime, required_days: int, now: datetime.datetime) -> bool:
    return elapsed_days(opened_at, now) >= required_days

def earliest_merge(opened_at: datetime.datetime, required_days: int) -> datetime.datetime:
    return opened_at + datetime.timedelta(days=required_days)

def remaining_days(opened_at: datetime.datetime, required_days: int, now: datetime.datetime) -> int:
    return max(0, required_days - elapsed_days(opened_at, now))

@dataclass
class ReviewEvaluation:
    opened_at: datetime.datetime
    required_days: int
    elapsed_days: int
    met: bool
    earliest_merge: datetime.datetime
    remaining_days: int
    emergency_tier: Optional[str] = None

def evaluate_review(opened_at: datetime.datetime, rule: TierRule, ruleset: Ruleset, now: datetime.datetime,
                    emergency_tier: Optional[str] = None) -> ReviewEvaluation:
    req = required_review_days(rule, ruleset, emergency_tier)
    return ReviewEvaluation(
        opened_at=opened_at,
        required_days=req,
        elapsed_days=max(0, elapsed_days(opened_at, now)),
        met=review_period_met(opened_at, req, now),
        earliest_merge=earliest_merge(opened_at, req),
        remaining_days=remaining_days(opened_at, req, now),
        emergency_tier=emergency_tier,
    )

# =============================================================================
# SIGNATURE THRESHOLD
# =============================================================================

@dataclass
class ThresholdResult:
    count: int
    required: int
    total: int
    signers: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    invalid: List[str] = field(default_factory=list)

    @property
    def met(self) -> bool:
        return self.count >= self.required

def signer_pool_keys(rule: TierRule, snapshot: RegistrySnapshot) -> dict:
    if rule.signer_pool is SignerPool.KEYHOLDERS:
        return {u: k.public_key for u, k in snapshot.keyholders.items()}
    return {u: m.public_key for u, m in snapshot.maintainers.items()}

def evaluate_threshold(repo: str, number: int, rule: TierRule, signatures: Iterable[Tuple[str, str]],
                       snapshot: RegistrySnapshot, verifier: SignatureVerifier) -> ThresholdResult:
    """Count distinct active signers from the tier's pool whose stored signature still verifies.

    ``signatures`` is an iterable of (signer, signature_hex). Signatures are
    re-checked against the snapshot so key rotation or removal takes effect
    immediately.
    """
    pool = signer_pool_keys(rule, snapshot)
    message = approval_message(repo, number)
    signers: List[str] = []
    invalid: List[str] = []
    for signer, sig in signatures:
        if signer in signers:
            continue
        key = pool.get(signer)
        if key is None:
            invalid.append(signer)
            continue
        try:
            verifier.verify(message, sig, key)
        except (AuthError, MalformedSignature) as exc:
            logger.info("stored signature by %s on %s#%d no longer counts: %s", signer, repo, number, exc.code)
            invalid.append(signer)
            continue
        signers.append(signer)
    signers.sort()
    return ThresholdResult(
        count=len(signers),
        required=rule.k,
        total=rule.n,
        signers=signers,
        pending=sorted(u for u in pool if u not in signers),
        invalid=sorted(set(invalid) - set(signers)),
    )

def signatures_met(repo: str, number: int, rule: TierRule, signatures: Iterable[Tuple[str, str]],
                   snapshot: RegistrySnapshot, verifier: SignatureVerifier) -> bool:
    return evaluate_threshold(repo, number, rule, signatures, snapshot, verifier).met
