"""
Weighted economic-node veto aggregation.

A node holds at most one active signal per PR; a new one replaces the old.
Weights are snapshotted when the signal is accepted. Aggregation divides
the snapshotted veto weight by the live total weight of active nodes in the
same class (mining pools vs everyone else).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from mergewarden.crypto import SignatureVerifier, signal_message, withdraw_message
from mergewarden.db import GovernanceDB
from mergewarden.errors import AuthError, InputError, PolicyError
from mergewarden.registry import NodeKind, RegistrySnapshot
from mergewarden.ruleset import TierRule
from mergewarden.util import Telemetry, TimeAuthority, iso_z

logger = logging.getLogger(__name__)

VETO_TIER_FLOOR = 3

class SignalKind(Enum):
    VETO = "veto"
    SUPPORT = "support"
    ABSTAIN = "abstain"

    @classmethod
    def parse(cls, value: str) -> "SignalKind":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise InputError(f"unknown signal kind {value!r}") from exc

@dataclass
class VetoSignal:
    id: int
    repo: str
    number: int
    node_id: str
    node_kind: NodeKind
    kind: SignalKind
    weight: float
    signature: str
    rationale: str
    created_at: str
    active: bool
    deactivated_at: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id, "repo": self.repo, "number": self.number, "node_id": self.node_id,
            "node_kind": self.node_kind.value, "kind": self.kind.value, "weight": self.weight,
            "rationale": self.rationale, "created_at": self.created_at, "active": self.active,
            "deactivated_at": self.deactivated_at,
        }

@dataclass
class VetoTally:
    mining_veto_pct: float
    economic_veto_pct: float
    mining_veto_weight: float
    economic_veto_weight: float
    total_mining_weight: float
    total_economic_weight: float
    mining_threshold: float
    economic_threshold: float
    veto_count: int
    support_count: int
    abstain_count: int
    enabled: bool
    active: bool
    vetoing_nodes: List[str]

    def to_dict(self) -> Dict:
        return dict(self.__dict__)

def _pct(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100.0, 6)

def _signal_from_row(r) -> VetoSignal:
    return VetoSignal(
        id=r["id"], repo=r["repo"], number=r["number"], node_id=r["node_id"], node_kind=NodeKind(r["node_kind"]),
        kind=SignalKind(r["kind"]), weight=float(r["weight"]), signature=r["signature"], rationale=r["rationale"] or "",
        created_at=r["created_at"], active=bool(r["active"]), deactivated_at=r["deactivated_at"],
    )

class VetoAggregator:
    def __init__(self, db: GovernanceDB, verifier: SignatureVerifier, time_authority: TimeAuthority = None,
                 telemetry: Telemetry = None):
        self.db = db
        self.verifier = verifier
        self.time = time_authority or TimeAuthority()
        self.telemetry = telemetry or Telemetry()

    def submit(self, repo: str, number: int, node_id: str, kind: SignalKind, rationale: str, signature: str,
               snapshot: RegistrySnapshot) -> Tuple[VetoSignal, Optional[int]]:
        """Accept a signed signal. Returns (signal, id of the signal it replaced or None)."""
        node = snapshot.node(node_id)
        if node is None or not node.is_active:
            raise AuthError(f"economic node {node_id} is not registered or not active", code="node_not_active")
        self.verifier.verify(signal_message(kind.value, node_id, repo, number, rationale), signature, node.public_key)
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            prev = c.execute("SELECT id FROM veto_signals WHERE repo=? AND number=? AND node_id=? AND active=1",
                             (repo, number, node_id)).fetchone()
            if prev:
                c.execute("UPDATE veto_signals SET active=0, deactivated_at=? WHERE id=?", (ts, prev[0]))
            cur = c.execute("""
                INSERT INTO veto_signals(repo, number, node_id, node_kind, kind, weight, signature, rationale, created_at, active)
                VALUES(?,?,?,?,?,?,?,?,?,1)
            """, (repo, number, node_id, node.kind.value, kind.value, node.weight, signature, rationale, ts))
            sig = VetoSignal(cur.lastrowid, repo, number, node_id, node.kind, kind, node.weight, signature, rationale, ts, True)
        self.telemetry.inc("mw_veto_signals_total", {"kind": kind.value})
        logger.info("%s signal from %s on %s#%d (weight %s)", kind.value, node_id, repo, number, node.weight)
        return sig, (prev[0] if prev else None)

    def withdraw(self, repo: str, number: int, node_id: str, signature: str, snapshot: RegistrySnapshot) -> VetoSignal:
        node = snapshot.node(node_id)
        if node is None:
            raise AuthError(f"unknown economic node {node_id}", code="node_not_registered")
        self.verifier.verify(withdraw_message(node_id, repo, number), signature, node.public_key)
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            r = c.execute("SELECT * FROM veto_signals WHERE repo=? AND number=? AND node_id=? AND active=1",
                          (repo, number, node_id)).fetchone()
            if not r:
                raise PolicyError("no_active_veto", f"node {node_id} has no active signal on {repo}#{number}")
            c.execute("UPDATE veto_signals SET active=0, deactivated_at=? WHERE id=?", (ts, r["id"]))
        sig = _signal_from_row(r)
        sig.active, sig.deactivated_at = False, ts
        return sig

    def deactivate_node_signals(self, node_id: str) -> List[int]:
        """Retire every active signal of a node that left the active set."""
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            ids = [r[0] for r in c.execute("SELECT id FROM veto_signals WHERE node_id=? AND active=1", (node_id,)).fetchall()]
            c.execute("UPDATE veto_signals SET active=0, deactivated_at=? WHERE node_id=? AND active=1", (ts, node_id))
        return ids

    def signals(self, repo: str, number: int, active_only: bool = True) -> List[VetoSignal]:
        sql = "SELECT * FROM veto_signals WHERE repo=? AND number=?"
        if active_only:
            sql += " AND active=1"
        return [_signal_from_row(r) for r in self.db.query(sql + " ORDER BY id", (repo, number))]

    def tally(self, repo: str, number: int, tier: int, rule: TierRule, snapshot: RegistrySnapshot) -> VetoTally:
        active = self.signals(repo, number)
        vetoes = [s for s in active if s.kind is SignalKind.VETO]
        mining_w = sum(s.weight for s in vetoes if s.node_kind.is_mining)
        econ_w = sum(s.weight for s in vetoes if not s.node_kind.is_mining)
        total_mining = snapshot.total_weight(mining=True)
        total_econ = snapshot.total_weight(mining=False)
        mining_pct = _pct(mining_w, total_mining)
        econ_pct = _pct(econ_w, total_econ)
        enabled = tier >= VETO_TIER_FLOOR and rule.veto_enabled
        return VetoTally(
            mining_veto_pct=mining_pct,
            economic_veto_pct=econ_pct,
            mining_veto_weight=mining_w,
            economic_veto_weight=econ_w,
            total_mining_weight=total_mining,
            total_economic_weight=total_econ,
            mining_threshold=rule.veto_mining_pct,
            economic_threshold=rule.veto_economic_pct,
            veto_count=len(vetoes),
            support_count=sum(1 for s in active if s.kind is SignalKind.SUPPORT),
            abstain_count=sum(1 for s in active if s.kind is SignalKind.ABSTAIN),
            enabled=enabled,
            active=enabled and (mining_pct >= rule.veto_mining_pct or econ_pct >= rule.veto_economic_pct),
            vetoing_nodes=sorted(s.node_id for s in vetoes),
        )
