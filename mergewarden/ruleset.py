"""
Policy inputs and deployment settings.

The engine does not decide policy: tiers, thresholds, review days and
classifier globs all arrive here as data. ``Ruleset`` is persisted as JSON
in ``ruleset_config``; ``Settings`` comes from ``MW_*`` environment
variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple

from mergewarden.crypto import DEFAULT_ALGORITHM
from mergewarden.errors import InputError
from mergewarden.util import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_BASE_DELAY

DEFAULT_EVIDENCE_MIN_LENGTH = 100
DEFAULT_VETO_MINING_PCT = 30.0
DEFAULT_VETO_ECONOMIC_PCT = 40.0

# =============================================================================
# TIER RULES
# =============================================================================

class SignerPool(Enum):
    MAINTAINERS = "maintainers"
    KEYHOLDERS = "emergency_keyholders"

@dataclass
class TierRule:
    k: int
    n: int
    review_days: int
    signer_pool: SignerPool = SignerPool.MAINTAINERS
    veto_enabled: bool = False
    veto_mining_pct: float = DEFAULT_VETO_MINING_PCT
    veto_economic_pct: float = DEFAULT_VETO_ECONOMIC_PCT

    def validate(self, tier: int):
        if self.k < 1 or self.n < self.k:
            raise InputError(f"tier {tier}: need 1 <= k <= n, got {self.k}-of-{self.n}")
        if self.review_days < 0:
            raise InputError(f"tier {tier}: review_days must be >= 0")
        if not (0 < self.veto_mining_pct <= 100 and 0 < self.veto_economic_pct <= 100):
            raise InputError(f"tier {tier}: veto thresholds must be in (0, 100]")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["signer_pool"] = self.signer_pool.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TierRule":
        return cls(
            k=int(d["k"]), n=int(d["n"]), review_days=int(d["review_days"]),
            signer_pool=SignerPool(d.get("signer_pool", SignerPool.MAINTAINERS.value)),
            veto_enabled=bool(d.get("veto_enabled", False)),
            veto_mining_pct=float(d.get("veto_mining_pct", DEFAULT_VETO_MINING_PCT)),
            veto_economic_pct=float(d.get("veto_economic_pct", DEFAULT_VETO_ECONOMIC_PCT)),
        )

def default_tier_rules() -> Dict[int, TierRule]:
    return {
        1: TierRule(3, 5, 7),
        2: TierRule(4, 5, 30),
        3: TierRule(5, 5, 90, veto_enabled=True),
        4: TierRule(4, 7, 0, signer_pool=SignerPool.KEYHOLDERS, veto_enabled=True),
        5: TierRule(5, 5, 180, veto_enabled=True),
    }

# =============================================================================
# CLASSIFIER INPUTS
# =============================================================================

@dataclass
class ClassifierConfig:
    governance_globs: Tuple[str, ...] = (
        "governance/**", "maintainers/**", "**/action-tiers.yml", "**/economic-nodes.yml",
    )
    consensus_globs: Tuple[str, ...] = (
        "consensus/**", "validation/**", "block-acceptance/**", "transaction-validation/**", "**/consensus/**",
    )
    code_dirs: Tuple[str, ...] = ("src/", "lib/", "rpc/", "wallet/", "p2p/", "api/")

    def to_dict(self) -> Dict[str, Any]:
        return {k: list(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ClassifierConfig":
        base = cls()
        return cls(
            governance_globs=tuple(d.get("governance_globs", base.governance_globs)),
            consensus_globs=tuple(d.get("consensus_globs", base.consensus_globs)),
            code_dirs=tuple(d.get("code_dirs", base.code_dirs)),
        )

# =============================================================================
# RULESET
# =============================================================================

@dataclass
class Ruleset:
    tiers: Dict[int, TierRule] = field(default_factory=default_tier_rules)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    # emergency tier name -> review-period override while that emergency is active
    emergency_review_days: Dict[str, int] = field(default_factory=lambda: {"critical": 0, "urgent": 7, "elevated": 30})
    evidence_min_length: int = DEFAULT_EVIDENCE_MIN_LENGTH
    version: int = 1

    def rule(self, tier: int) -> TierRule:
        try:
            return self.tiers[int(tier)]
        except KeyError as exc:
            raise InputError(f"no rule configured for tier {tier}") from exc

    def validate(self):
        if sorted(self.tiers) != [1, 2, 3, 4, 5]:
            raise InputError("ruleset must configure exactly tiers 1..5")
        for t, r in self.tiers.items():
            r.validate(t)
        for name, days in self.emergency_review_days.items():
            if name not in ("critical", "urgent", "elevated") or int(days) < 0:
                raise InputError(f"bad emergency review override {name}={days}")
        if self.evidence_min_length < 0:
            raise InputError("evidence_min_length must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "tiers": {str(t): r.to_dict() for t, r in sorted(self.tiers.items())},
            "classifier": self.classifier.to_dict(),
            "emergency_review_days": dict(self.emergency_review_days),
            "evidence_min_length": self.evidence_min_length,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Ruleset":
        try:
            rs = cls(
                tiers={int(t): TierRule.from_dict(r) for t, r in d.get("tiers", {}).items()} or default_tier_rules(),
                classifier=ClassifierConfig.from_dict(d.get("classifier", {})),
                emergency_review_days={k: int(v) for k, v in d.get("emergency_review_days", {"critical": 0, "urgent": 7, "elevated": 30}).items()},
                evidence_min_length=int(d.get("evidence_min_length", DEFAULT_EVIDENCE_MIN_LENGTH)),
                version=int(d.get("version", 1)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InputError(f"malformed ruleset: {exc}") from exc
        rs.validate()
        return rs

    @classmethod
    def from_json(cls, s: str) -> "Ruleset":
        return cls.from_dict(json.loads(s))

# =============================================================================
# SETTINGS
# =============================================================================

class EmergencyScope(Enum):
    GLOBAL = "global"
    REPOSITORY = "repository"

@dataclass
class Settings:
    db_file: str = ":memory:"
    api_keys: Tuple[str, ...] = ()
    require_auth_readonly: bool = False
    signature_algorithm: str = DEFAULT_ALGORITHM
    emergency_scope: EmergencyScope = EmergencyScope.GLOBAL
    decision_timeout_seconds: float = 30.0
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Dict[str, str] = None) -> "Settings":
        env = os.environ if env is None else env
        raw_keys = env.get("MW_API_KEYS", "")
        try:
            return cls(
                db_file=env.get("MW_DB_FILE", ":memory:"),
                api_keys=tuple(k.strip() for k in raw_keys.split(",") if k.strip()),
                require_auth_readonly=env.get("MW_REQUIRE_AUTH_READONLY") == "1",
                signature_algorithm=env.get("MW_SIGNATURE_ALGORITHM", DEFAULT_ALGORITHM),
                emergency_scope=EmergencyScope(env.get("MW_EMERGENCY_SCOPE", "global")),
                decision_timeout_seconds=float(env.get("MW_DECISION_TIMEOUT_SECONDS", "30")),
                max_retries=int(env.get("MW_MAX_RETRIES", str(DEFAULT_MAX_RETRIES))),
                retry_base_delay=float(env.get("MW_RETRY_BASE_DELAY", str(DEFAULT_RETRY_BASE_DELAY))),
                log_level=env.get("MW_LOG_LEVEL", "INFO").upper(),
            )
        except ValueError as exc:
            raise InputError(f"bad MW_* setting: {exc}") from exc
