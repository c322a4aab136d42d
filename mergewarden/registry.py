"""
Enrolled identities: maintainers, emergency keyholders and economic nodes.

The core only ever reads the registry through ``RegistrySnapshot``, taken
once per decision so that every lookup inside that decision sees the same
membership.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from mergewarden.crypto import SignatureVerifier
from mergewarden.db import GovernanceDB
from mergewarden.errors import InputError, MalformedKey, NotFoundError, PolicyError
from mergewarden.util import TimeAuthority, iso_z

logger = logging.getLogger(__name__)

# =============================================================================
# TYPES
# =============================================================================

class NodeKind(Enum):
    MINING_POOL = "mining_pool"
    EXCHANGE = "exchange"
    CUSTODIAN = "custodian"
    PAYMENT_PROCESSOR = "payment_processor"
    MAJOR_HOLDER = "major_holder"

    @property
    def is_mining(self) -> bool:
        return self is NodeKind.MINING_POOL

class NodeStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REMOVED = "removed"

@dataclass
class Maintainer:
    username: str
    public_key: str
    layer: int
    active: bool
    updated_at: str

@dataclass
class Keyholder:
    username: str
    public_key: str
    active: bool
    updated_at: str

@dataclass
class EconomicNode:
    node_id: str
    kind: NodeKind
    public_key: str
    weight: float
    status: NodeStatus
    qualification: Dict[str, Any] = field(default_factory=dict)
    registered_at: str = ""

    @property
    def is_active(self) -> bool:
        return self.status is NodeStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id, "kind": self.kind.value, "public_key": self.public_key,
            "weight": self.weight, "status": self.status.value, "qualification": self.qualification,
            "registered_at": self.registered_at,
        }

# =============================================================================
# WEIGHT CALCULATION
# =============================================================================

def compute_node_weight(kind: NodeKind, qualification: Mapping[str, Any]) -> float:
    """Derive a weight in [0, 1] from qualification evidence.

    mining_pool        hashpower_percent / 100
    exchange           0.7 * holdings(btc / 10k) + 0.3 * volume(daily usd / 100M)
    custodian          btc / 10k
    payment_processor  monthly usd / 50M
    major_holder       btc / 5k
    """
    def num(key: str) -> float:
        try:
            v = float(qualification.get(key, 0) or 0)
        except (TypeError, ValueError) as exc:
            raise InputError(f"qualification field {key} is not numeric") from exc
        if v < 0:
            raise InputError(f"qualification field {key} is negative")
        return v

    if kind is NodeKind.MINING_POOL:
        w = num("hashpower_percent") / 100.0
    elif kind is NodeKind.EXCHANGE:
        w = min(num("holdings_btc") / 10_000.0, 1.0) * 0.7 + min(num("daily_volume_usd") / 100_000_000.0, 1.0) * 0.3
    elif kind is NodeKind.CUSTODIAN:
        w = num("holdings_btc") / 10_000.0
    elif kind is NodeKind.PAYMENT_PROCESSOR:
        w = num("monthly_volume_usd") / 50_000_000.0
    else:
        w = num("holdings_btc") / 5_000.0
    return round(min(w, 1.0), 6)

# =============================================================================
# SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class RegistrySnapshot:
    maintainers: Mapping[str, Maintainer]
    keyholders: Mapping[str, Keyholder]
    nodes: Mapping[str, EconomicNode]

    def active_maintainer(self, username: str) -> Optional[Maintainer]:
        return self.maintainers.get(username)

    def active_keyholder(self, username: str) -> Optional[Keyholder]:
        return self.keyholders.get(username)

    def node(self, node_id: str) -> Optional[EconomicNode]:
        return self.nodes.get(node_id)

    def total_weight(self, mining: bool) -> float:
        return sum(n.weight for n in self.nodes.values() if n.is_active and n.kind.is_mining == mining)

# =============================================================================
# REGISTRY
# =============================================================================

class Registry:
    def __init__(self, db: GovernanceDB, verifier: SignatureVerifier, time_authority: TimeAuthority = None):
        self.db = db
        self.verifier = verifier
        self.time = time_authority or TimeAuthority()

    def _check_key(self, public_key: str):
        try:
            self.verifier.load_public_key(public_key)
        except MalformedKey as exc:
            raise InputError(f"invalid {self.verifier.algorithm} public key: {exc}") from exc

    # ── Maintainers ──────────────────────────────────────────────────
    def enroll_maintainer(self, username: str, public_key: str, layer: int = 1) -> Maintainer:
        """Enroll or rotate: the previous active key for ``username`` is deactivated."""
        if not username:
            raise InputError("username required")
        if not 1 <= int(layer) <= 5:
            raise InputError("layer must be between 1 and 5")
        public_key = public_key.lower()
        self._check_key(public_key)
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            c.execute("UPDATE maintainers SET active=0, updated_at=? WHERE username=? AND active=1", (ts, username))
            c.execute("""
                INSERT INTO maintainers(username, public_key, layer, active, updated_at) VALUES(?,?,?,1,?)
                ON CONFLICT(username, public_key) DO UPDATE SET active=1, layer=excluded.layer, updated_at=excluded.updated_at
            """, (username, public_key, int(layer), ts))
        logger.info("maintainer enrolled: %s (layer %d)", username, layer)
        return Maintainer(username, public_key, int(layer), True, ts)

    def deactivate_maintainer(self, username: str) -> Maintainer:
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            r = c.execute("SELECT username, public_key, layer FROM maintainers WHERE username=? AND active=1", (username,)).fetchone()
            if not r:
                raise NotFoundError(f"no active maintainer {username}")
            c.execute("UPDATE maintainers SET active=0, updated_at=? WHERE username=? AND active=1", (ts, username))
        return Maintainer(r["username"], r["public_key"], r["layer"], False, ts)

    def list_maintainers(self, active_only: bool = False) -> List[Maintainer]:
        sql = "SELECT username, public_key, layer, active, updated_at FROM maintainers"
        if active_only:
            sql += " WHERE active=1"
        return [Maintainer(r[0], r[1], r[2], bool(r[3]), r[4]) for r in self.db.query(sql + " ORDER BY username, id")]

    # ── Emergency keyholders ─────────────────────────────────────────
    def enroll_keyholder(self, username: str, public_key: str) -> Keyholder:
        if not username:
            raise InputError("username required")
        public_key = public_key.lower()
        self._check_key(public_key)
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            c.execute("UPDATE emergency_keyholders SET active=0, updated_at=? WHERE username=? AND active=1", (ts, username))
            c.execute("""
                INSERT INTO emergency_keyholders(username, public_key, active, updated_at) VALUES(?,?,1,?)
                ON CONFLICT(username, public_key) DO UPDATE SET active=1, updated_at=excluded.updated_at
            """, (username, public_key, ts))
        return Keyholder(username, public_key, True, ts)

    def deactivate_keyholder(self, username: str) -> Keyholder:
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            r = c.execute("SELECT public_key FROM emergency_keyholders WHERE username=? AND active=1", (username,)).fetchone()
            if not r:
                raise NotFoundError(f"no active keyholder {username}")
            c.execute("UPDATE emergency_keyholders SET active=0, updated_at=? WHERE username=? AND active=1", (ts, username))
        return Keyholder(username, r[0], False, ts)

    def list_keyholders(self, active_only: bool = False) -> List[Keyholder]:
        sql = "SELECT username, public_key, active, updated_at FROM emergency_keyholders"
        if active_only:
            sql += " WHERE active=1"
        return [Keyholder(r[0], r[1], bool(r[2]), r[3]) for r in self.db.query(sql + " ORDER BY username, id")]

    # ── Economic nodes ───────────────────────────────────────────────
    def register_node(self, node_id: str, kind: NodeKind, public_key: str, qualification: Dict[str, Any] = None) -> EconomicNode:
        if not node_id:
            raise InputError("node_id required")
        public_key = public_key.lower()
        self._check_key(public_key)
        ts = iso_z(self.time.now())
        with self.db.transaction() as c:
            if c.execute("SELECT 1 FROM economic_nodes WHERE node_id=?", (node_id,)).fetchone():
                raise PolicyError("node_already_registered", f"node {node_id} already registered")
            c.execute("INSERT INTO economic_nodes VALUES(?,?,?,?,?,?,?,?)",
                      (node_id, kind.value, public_key, 0.0, NodeStatus.PENDING.value,
                       json.dumps(qualification or {}, sort_keys=True), ts, ts))
        return EconomicNode(node_id, kind, public_key, 0.0, NodeStatus.PENDING, dict(qualification or {}), ts)

    def activate_node(self, node_id: str, weight: Optional[float] = None) -> EconomicNode:
        with self.db.transaction() as c:
            node = self.get_node(node_id)
            if node.status is NodeStatus.REMOVED:
                raise PolicyError("node_removed", f"node {node_id} has been removed")
            w = compute_node_weight(node.kind, node.qualification) if weight is None else float(weight)
            if w < 0:
                raise InputError("weight must be non-negative")
            clash = c.execute("SELECT node_id FROM economic_nodes WHERE public_key=? AND status='active' AND node_id<>?",
                              (node.public_key, node_id)).fetchone()
            if clash:
                raise PolicyError("public_key_in_use", f"public key already used by active node {clash[0]}")
            c.execute("UPDATE economic_nodes SET status='active', weight=?, updated_at=? WHERE node_id=?",
                      (w, iso_z(self.time.now()), node_id))
        node.status, node.weight = NodeStatus.ACTIVE, w
        return node

    def set_node_status(self, node_id: str, status: NodeStatus) -> EconomicNode:
        """Move a node out of ``active``. Its weight drops to zero."""
        if status is NodeStatus.ACTIVE:
            return self.activate_node(node_id)
        with self.db.transaction() as c:
            node = self.get_node(node_id)
            if node.status is NodeStatus.REMOVED:
                raise PolicyError("node_removed", f"node {node_id} has been removed")
            c.execute("UPDATE economic_nodes SET status=?, weight=0, updated_at=? WHERE node_id=?",
                      (status.value, iso_z(self.time.now()), node_id))
        node.status, node.weight = status, 0.0
        return node

    def get_node(self, node_id: str) -> EconomicNode:
        r = self.db.query_one("SELECT * FROM economic_nodes WHERE node_id=?", (node_id,))
        if not r:
            raise NotFoundError(f"unknown economic node {node_id}")
        return _node_from_row(r)

    def list_nodes(self, status: Optional[NodeStatus] = None) -> List[EconomicNode]:
        if status:
            rows = self.db.query("SELECT * FROM economic_nodes WHERE status=? ORDER BY node_id", (status.value,))
        else:
            rows = self.db.query("SELECT * FROM economic_nodes ORDER BY node_id")
        return [_node_from_row(r) for r in rows]

    # ── Snapshot ─────────────────────────────────────────────────────
    def snapshot(self) -> RegistrySnapshot:
        with self.db.transaction() as c:
            ms = c.execute("SELECT username, public_key, layer, active, updated_at FROM maintainers WHERE active=1").fetchall()
            ks = c.execute("SELECT username, public_key, active, updated_at FROM emergency_keyholders WHERE active=1").fetchall()
            ns = c.execute("SELECT * FROM economic_nodes").fetchall()
        return RegistrySnapshot(
            maintainers=MappingProxyType({r[0]: Maintainer(r[0], r[1], r[2], True, r[4]) for r in ms}),
            keyholders=MappingProxyType({r[0]: Keyholder(r[0], r[1], True, r[3]) for r in ks}),
            nodes=MappingProxyType({r["node_id"]: _node_from_row(r) for r in ns}),
        )

def _node_from_row(r) -> EconomicNode:
    return EconomicNode(
        node_id=r["node_id"], kind=NodeKind(r["kind"]), public_key=r["public_key"], weight=float(r["weight"]),
        status=NodeStatus(r["status"]), qualification=json.loads(r["qualification_json"] or "{}"),
        registered_at=r["registered_at"],
    )
