"""
Append-only, hash-chained audit log with Merkle-root verification.

Entry hash::

    this_log_hash = sha256(canonical_json(entry without this_log_hash) || ascii(prev_log_hash))

Entry 0 links to the zero hash. The Merkle tree is built over the raw
32-byte digests of ``this_log_hash``; parents are ``sha256(left || right)``
and an odd tail is paired with itself, so a single-entry log has a root
equal to that entry's hash.

The log owns its append cursor. Appends are globally serialized inside the
caller's database transaction, so a decision and its audit entry commit
together. Any chain or Merkle failure flips the log to read-only.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from mergewarden.db import GovernanceDB
from mergewarden.errors import (
    BadTimestamp, BrokenChain, ConflictError, CorruptionError, DuplicateJobId, InputError, MerkleMismatch, NotFoundError,
)
from mergewarden.util import ZERO_HASH, Telemetry, TimeAuthority, iso_z, json_canon, parse_z

logger = logging.getLogger(__name__)

APPEND_RACE_RETRIES = 5

# =============================================================================
# ENTRY
# =============================================================================

@dataclass
class AuditLogEntry:
    seq: int
    timestamp: str
    job_id: str
    job_type: str
    actor: Optional[str]
    payload: Dict[str, Any]
    prev_log_hash: str
    this_log_hash: str = ""

    def body(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("this_log_hash")
        return d

    def canonical_bytes(self) -> bytes:
        return json_canon(self.body()).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes() + self.prev_log_hash.encode("ascii")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AuditLogEntry":
        try:
            return cls(
                seq=int(d["seq"]), timestamp=d["timestamp"], job_id=d["job_id"], job_type=d["job_type"],
                actor=d.get("actor"), payload=d.get("payload") or {}, prev_log_hash=d["prev_log_hash"],
                this_log_hash=d.get("this_log_hash", ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InputError(f"malformed audit entry: {exc}") from exc

# =============================================================================
# VERIFICATION
# =============================================================================

def verify_entries(entries: Sequence[AuditLogEntry]) -> int:
    """Walk the log from the first entry; raise on the first broken invariant.

    Checks per entry, in order: prev link, recomputed hash, timestamp order,
    job_id uniqueness. Returns the number of entries verified.
    """
    prev_hash = ZERO_HASH
    prev_ts = None
    seen = set()
    for i, e in enumerate(entries):
        if e.prev_log_hash != prev_hash:
            raise BrokenChain(i, "prev_log_hash does not match previous entry")
        if e.compute_hash() != e.this_log_hash:
            raise BrokenChain(i, "recomputed this_log_hash differs")
        try:
            ts = parse_z(e.timestamp)
        except (TypeError, ValueError) as exc:
            raise BadTimestamp(i) from exc
        if prev_ts is not None and ts < prev_ts:
            raise BadTimestamp(i)
        if e.job_id in seen:
            raise DuplicateJobId(e.job_id)
        seen.add(e.job_id)
        prev_hash, prev_ts = e.this_log_hash, ts
    return len(entries)

def find_tampered(entries: Sequence[AuditLogEntry]) -> List[int]:
    """Indices whose stored hash or back-link does not match, for forensic reports."""
    bad = []
    prev_hash = ZERO_HASH
    for i, e in enumerate(entries):
        if e.prev_log_hash != prev_hash or e.compute_hash() != e.this_log_hash:
            bad.append(i)
        prev_hash = e.this_log_hash
    return bad

def find_gaps(entries: Sequence[AuditLogEntry]) -> List[Tuple[int, int]]:
    """(expected_seq, found_seq) pairs where the numbering skips."""
    gaps = []
    base = entries[0].seq if entries else 0
    for i, e in enumerate(entries):
        expected = base + i
        if e.seq != expected:
            gaps.append((expected, e.seq))
    return gaps

# =============================================================================
# MERKLE TREE
# =============================================================================

def _leaf(h: str) -> bytes:
    try:
        raw = bytes.fromhex(h)
    except ValueError as exc:
        raise InputError(f"not a hex digest: {h!r}") from exc
    if len(raw) != 32:
        raise InputError("leaf must be a 32-byte sha256 digest")
    return raw

def _parent(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(left + right).digest()

def merkle_root(hashes: Sequence[str]) -> str:
    if not hashes:
        return ZERO_HASH
    level = [_leaf(h) for h in hashes]
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        level = [_parent(level[i], level[i + 1]) for i in range(0, len(level), 2)]
    return level[0].hex()

def merkle_proof(hashes: Sequence[str], index: int) -> List[Dict[str, str]]:
    """Sibling path from leaf ``index`` to the root."""
    if not 0 <= index < len(hashes):
        raise NotFoundError(f"leaf {index} out of range")
    level = [_leaf(h) for h in hashes]
    proof = []
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        sibling = index ^ 1
        proof.append({"side": "left" if sibling < index else "right", "hash": level[sibling].hex()})
        level = [_parent(level[i], level[i + 1]) for i in range(0, len(level), 2)]
        index //= 2
    return proof

def verify_merkle_proof(leaf_hash: str, proof: Iterable[Dict[str, str]], root: str) -> bool:
    node = _leaf(leaf_hash)
    for step in proof:
        sib = _leaf(step["hash"])
        node = _parent(sib, node) if step["side"] == "left" else _parent(node, sib)
    return node.hex() == root

def verify_merkle_root(entries: Sequence[AuditLogEntry], expected: str) -> str:
    actual = merkle_root([e.this_log_hash for e in entries])
    if actual != expected:
        raise MerkleMismatch(expected, actual)
    return actual

# =============================================================================
# FILE FORMAT (JSON Lines)
# =============================================================================

def export_jsonl(entries: Iterable[AuditLogEntry], path: Union[str, Path]) -> int:
    n = 0
    with open(path, "w", encoding="utf-8") as f:
        for e in entries:
            f.write(json_canon(e.to_dict()) + "\n")
            n += 1
    return n

def load_jsonl(path: Union[str, Path]) -> List[AuditLogEntry]:
    entries = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                entries.append(AuditLogEntry.from_dict(json.loads(line)))
            except json.JSONDecodeError as exc:
                raise InputError(f"line {lineno}: invalid JSON") from exc
    return entries

def verify_file(path: Union[str, Path], expected_root: Optional[str] = None) -> Dict[str, Any]:
    entries = load_jsonl(path)
    verify_entries(entries)
    root = merkle_root([e.this_log_hash for e in entries])
    if expected_root is not None and root != expected_root:
        raise MerkleMismatch(expected_root, root)
    return {"entries": len(entries), "merkle_root": root, "tip": entries[-1].this_log_hash if entries else ZERO_HASH}

# =============================================================================
# AUDIT LOG
# =============================================================================

@dataclass
class Checkpoint:
    id: int
    seq_start: int
    seq_end: int
    merkle_root: str
    created_at: str

class AuditLog:
    def __init__(self, db: GovernanceDB, time_authority: TimeAuthority = None, telemetry: Telemetry = None):
        self.db = db
        self.time = time_authority or TimeAuthority()
        self.telemetry = telemetry or Telemetry()
        self._append_lock = threading.Lock()
        self._corruption: Optional[str] = None
        self._startup_chain_check()

    # ── Health ───────────────────────────────────────────────────────
    def _startup_chain_check(self):
        try:
            n = self.verify()
        except CorruptionError:
            logger.critical("audit chain failed verification at startup; entering read-only mode")
            return
        logger.info("audit chain verified (%d entries)", n)

    @property
    def read_only(self) -> bool:
        return self._corruption is not None

    @property
    def corruption(self) -> Optional[str]:
        return self._corruption

    def _enter_read_only(self, exc: CorruptionError):
        if self._corruption is None:
            logger.critical("audit log corruption: %s", exc)
            self.telemetry.inc("mw_audit_corruption_total", {"code": exc.code})
        self._corruption = str(exc)
        self.telemetry.set_gauge("mw_audit_read_only", 1)

    def ensure_writable(self):
        if self._corruption:
            raise CorruptionError(f"audit log is read-only: {self._corruption}")

    # ── Append ───────────────────────────────────────────────────────
    def append(self, job_type: str, payload: Dict[str, Any] = None, actor: Optional[str] = None) -> AuditLogEntry:
        self.ensure_writable()
        payload = json.loads(json_canon(payload or {}))
        with self.db.transaction() as c, self._append_lock:
            for _ in range(APPEND_RACE_RETRIES):
                tip = c.execute("SELECT seq, timestamp, this_log_hash FROM audit_log ORDER BY seq DESC LIMIT 1").fetchone()
                now = self.time.now()
                if tip is not None and parse_z(tip["timestamp"]) > now:
                    ts = tip["timestamp"]
                else:
                    ts = iso_z(now)
                entry = AuditLogEntry(
                    seq=tip["seq"] + 1 if tip else 0,
                    timestamp=ts,
                    job_id=str(uuid.uuid4()),
                    job_type=job_type,
                    actor=actor,
                    payload=payload,
                    prev_log_hash=tip["this_log_hash"] if tip else ZERO_HASH,
                )
                entry.this_log_hash = entry.compute_hash()
                try:
                    c.execute("INSERT INTO audit_log VALUES(?,?,?,?,?,?,?,?)",
                              (entry.seq, entry.timestamp, entry.job_id, entry.job_type, entry.actor,
                               json_canon(entry.payload), entry.prev_log_hash, entry.this_log_hash))
                except sqlite3.IntegrityError:
                    logger.warning("audit append lost race at seq %d; re-reading tip", entry.seq)
                    continue
                break
            else:
                raise ConflictError("audit append kept losing the race for the chain tip")
        self.telemetry.inc("mw_audit_appends_total", {"job_type": job_type})
        return entry

    # ── Read ─────────────────────────────────────────────────────────
    def entries(self, start: int = 0, end: Optional[int] = None) -> List[AuditLogEntry]:
        if end is None:
            rows = self.db.query("SELECT * FROM audit_log WHERE seq>=? ORDER BY seq", (start,))
        else:
            rows = self.db.query("SELECT * FROM audit_log WHERE seq>=? AND seq<=? ORDER BY seq", (start, end))
        return [_entry_from_row(r) for r in rows]

    def tail(self, n: int = 50) -> List[AuditLogEntry]:
        rows = self.db.query("SELECT * FROM audit_log ORDER BY seq DESC LIMIT ?", (int(n),))
        return [_entry_from_row(r) for r in reversed(rows)]

    def by_type(self, job_type: str) -> List[AuditLogEntry]:
        return [_entry_from_row(r) for r in self.db.query("SELECT * FROM audit_log WHERE job_type=? ORDER BY seq", (job_type,))]

    def count(self) -> int:
        return self.db.query_one("SELECT COUNT(*) FROM audit_log")[0]

    def tip(self) -> str:
        r = self.db.query_one("SELECT this_log_hash FROM audit_log ORDER BY seq DESC LIMIT 1")
        return r[0] if r else ZERO_HASH

    # ── Verify ───────────────────────────────────────────────────────
    def verify(self) -> int:
        try:
            return verify_entries(self.entries())
        except CorruptionError as exc:
            self._enter_read_only(exc)
            raise

    def merkle_root(self, upto: Optional[int] = None) -> str:
        return merkle_root([e.this_log_hash for e in self.entries(0, upto)])

    def verify_root(self, expected: str, upto: Optional[int] = None) -> str:
        try:
            return verify_merkle_root(self.entries(0, upto), expected)
        except MerkleMismatch as exc:
            self._enter_read_only(exc)
            raise

    def proof(self, seq: int) -> Dict[str, Any]:
        hashes = [e.this_log_hash for e in self.entries()]
        path = merkle_proof(hashes, seq)
        return {"seq": seq, "leaf": hashes[seq], "proof": path, "root": merkle_root(hashes)}

    def export(self, path: Union[str, Path]) -> int:
        return export_jsonl(self.entries(), path)

    # ── Checkpoints ──────────────────────────────────────────────────
    def checkpoint(self, actor: Optional[str] = None) -> Optional[Checkpoint]:
        """Anchor the Merkle root over the not-yet-checkpointed range."""
        self.verify()
        with self.db.transaction() as c:
            last = c.execute("SELECT MAX(seq_end) FROM audit_checkpoints").fetchone()[0]
            start = 0 if last is None else last + 1
            hi = c.execute("SELECT MAX(seq) FROM audit_log").fetchone()[0]
            if hi is None or hi < start:
                return None
            root = merkle_root([e.this_log_hash for e in self.entries(start, hi)])
            created = iso_z(self.time.now())
            cur = c.execute("INSERT INTO audit_checkpoints(seq_start, seq_end, merkle_root, created_at) VALUES(?,?,?,?)",
                            (start, hi, root, created))
            cp = Checkpoint(cur.lastrowid, start, hi, root, created)
            self.append("audit_checkpoint", {"seq_start": start, "seq_end": hi, "merkle_root": root}, actor=actor)
        return cp

    def checkpoints(self) -> List[Checkpoint]:
        return [Checkpoint(r[0], r[1], r[2], r[3], r[4])
                for r in self.db.query("SELECT id, seq_start, seq_end, merkle_root, created_at FROM audit_checkpoints ORDER BY id")]

    def verify_checkpoints(self) -> int:
        for cp in self.checkpoints():
            try:
                verify_merkle_root(self.entries(cp.seq_start, cp.seq_end), cp.merkle_root)
            except MerkleMismatch as exc:
                self._enter_read_only(exc)
                raise
        return len(self.checkpoints())

def _entry_from_row(r) -> AuditLogEntry:
    return AuditLogEntry(
        seq=r["seq"], timestamp=r["timestamp"], job_id=r["job_id"], job_type=r["job_type"], actor=r["actor"],
        payload=json.loads(r["payload_json"]), prev_log_hash=r["prev_log_hash"], this_log_hash=r["this_log_hash"],
    )
