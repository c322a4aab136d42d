"""
Tier classification.

Pure function of PR metadata. Rules run top-down and the first match wins,
so a higher tier always dominates a lower one.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, List, Optional

from mergewarden.ruleset import ClassifierConfig

class Tier(IntEnum):
    ROUTINE = 1
    FEATURE = 2
    CONSENSUS_ADJACENT = 3
    EMERGENCY = 4
    GOVERNANCE = 5

    @property
    def label(self) -> str:
        return _LABELS[self]

_LABELS = {
    Tier.ROUTINE: "Routine",
    Tier.FEATURE: "Feature",
    Tier.CONSENSUS_ADJACENT: "Consensus-Adjacent",
    Tier.EMERGENCY: "Emergency",
    Tier.GOVERNANCE: "Governance",
}

GOVERNANCE_TOKEN = "[GOVERNANCE]"
CONSENSUS_TOKEN = "[CONSENSUS-ADJACENT]"
FEATURE_TOKEN = "[FEATURE]"
EMERGENCY_WORDS = re.compile(r"\b(EMERGENCY|CRITICAL|URGENT)\b", re.IGNORECASE)

@dataclass(frozen=True)
class ClassificationResult:
    tier: Tier
    rationale: str
    matched: List[str] = field(default_factory=list)

def _norm(path: str) -> str:
    p = path.replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")

def glob_match(path: str, pattern: str) -> bool:
    """fnmatch where a leading ``**/`` may also match zero directories."""
    path = _norm(path)
    if fnmatch.fnmatchcase(path, pattern):
        return True
    if pattern.startswith("**/"):
        return glob_match(path, pattern[3:])
    return False

def classify(title: str, body: Optional[str], changed_paths: Iterable[str] = (), config: ClassifierConfig = None) -> ClassificationResult:
    config = config or ClassifierConfig()
    text = f"{title or ''}\n{body or ''}"
    paths = [_norm(p) for p in changed_paths or () if p]

    if GOVERNANCE_TOKEN in text:
        return ClassificationResult(Tier.GOVERNANCE, f"token {GOVERNANCE_TOKEN}", [GOVERNANCE_TOKEN])
    gov = [p for p in paths if any(glob_match(p, g) for g in config.governance_globs)]
    if gov:
        return ClassificationResult(Tier.GOVERNANCE, "changes governance configuration", gov)

    words = sorted({m.group(1).upper() for m in EMERGENCY_WORDS.finditer(text)})
    if words:
        return ClassificationResult(Tier.EMERGENCY, f"keyword {', '.join(words)}", words)

    if CONSENSUS_TOKEN in text:
        return ClassificationResult(Tier.CONSENSUS_ADJACENT, f"token {CONSENSUS_TOKEN}", [CONSENSUS_TOKEN])
    cons = [p for p in paths if any(glob_match(p, g) for g in config.consensus_globs)]
    if cons:
        return ClassificationResult(Tier.CONSENSUS_ADJACENT, "touches consensus-adjacent paths", cons)

    if FEATURE_TOKEN in text:
        return ClassificationResult(Tier.FEATURE, f"token {FEATURE_TOKEN}", [FEATURE_TOKEN])
    code = [p for p in paths if any(p.startswith(d.rstrip("/") + "/") for d in config.code_dirs)]
    if code:
        return ClassificationResult(Tier.FEATURE, "touches code directories", code)

    return ClassificationResult(Tier.ROUTINE, "no higher-tier trigger")
