"""
SQLite persistence.

One connection shared by all threads, guarded by a reentrant lock. Every
multi-statement write runs inside ``transaction()``; nested calls join the
outer transaction so a decision and its audit entries commit together.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from mergewarden.errors import TransientError

logger = logging.getLogger(__name__)

DEFAULT_DB_FILE = ".mergewarden.db"
SCHEMA_USER_VERSION = 1

# =============================================================================
# PERSISTENCE
# =============================================================================

class GovernanceDB:
    def __init__(self, db_file: str = DEFAULT_DB_FILE):
        self.db_file = db_file
        self.conn = sqlite3.connect(db_file, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def _init_schema(self):
        with self.transaction():
            for stmt in _SCHEMA.split(";\n"):
                if stmt.strip():
                    self.conn.execute(stmt)
            self.conn.execute(
                "INSERT OR IGNORE INTO meta(k, v) VALUES('schema_user_version', ?)", (str(SCHEMA_USER_VERSION),)
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise TransientError(f"database busy: {exc}") from exc
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self._depth = 0
                self.conn.execute("ROLLBACK")
                raise
            self._depth = 0
            try:
                self.conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self.conn.execute("ROLLBACK")
                raise TransientError(f"commit failed: {exc}") from exc

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def integrity_check(self) -> bool:
        r = self.query_one("PRAGMA integrity_check;")
        return bool(r) and r[0] == "ok"

    def get_meta(self, k: str, default: str = None) -> Optional[str]:
        r = self.query_one("SELECT v FROM meta WHERE k=?", (k,))
        return r[0] if r else default

    def set_meta(self, k: str, v: str):
        with self.transaction():
            self.conn.execute("INSERT INTO meta VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v", (k, v))

    def close(self):
        with self._lock:
            self.conn.close()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta(k TEXT PRIMARY KEY, v TEXT);

CREATE TABLE IF NOT EXISTS maintainers(
  id INTEGER PRIMARY KEY,
  username TEXT NOT NULL,
  public_key TEXT NOT NULL,
  layer INT NOT NULL CHECK(layer BETWEEN 1 AND 5),
  active INT NOT NULL DEFAULT 1,
  updated_at TEXT NOT NULL,
  UNIQUE(username, public_key)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_maintainers_active ON maintainers(username) WHERE active=1;

CREATE TABLE IF NOT EXISTS emergency_keyholders(
  id INTEGER PRIMARY KEY,
  username TEXT NOT NULL,
  public_key TEXT NOT NULL,
  active INT NOT NULL DEFAULT 1,
  updated_at TEXT NOT NULL,
  UNIQUE(username, public_key)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_keyholders_active ON emergency_keyholders(username) WHERE active=1;

CREATE TABLE IF NOT EXISTS economic_nodes(
  node_id TEXT PRIMARY KEY,
  kind TEXT NOT NULL,
  public_key TEXT NOT NULL,
  weight REAL NOT NULL DEFAULT 0 CHECK(weight >= 0),
  status TEXT NOT NULL,
  qualification_json TEXT,
  registered_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  CHECK(status = 'active' OR weight = 0)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_nodes_active_key ON economic_nodes(public_key) WHERE status='active';

CREATE TABLE IF NOT EXISTS pull_requests(
  repo TEXT NOT NULL,
  number INT NOT NULL,
  head_sha TEXT,
  title TEXT,
  body TEXT,
  author TEXT,
  changed_paths_json TEXT,
  tier INT NOT NULL CHECK(tier BETWEEN 1 AND 5),
  tier_overridden INT NOT NULL DEFAULT 0,
  opened_at TEXT NOT NULL,
  state TEXT NOT NULL DEFAULT 'open',
  governance_status TEXT NOT NULL DEFAULT 'pending',
  review_period_met INT NOT NULL DEFAULT 0,
  signatures_met INT NOT NULL DEFAULT 0,
  veto_active INT NOT NULL DEFAULT 0,
  last_verdict TEXT,
  last_reasons_json TEXT,
  status_text TEXT,
  updated_at TEXT NOT NULL,
  PRIMARY KEY(repo, number)
);

CREATE TABLE IF NOT EXISTS signatures(
  id INTEGER PRIMARY KEY,
  repo TEXT NOT NULL,
  number INT NOT NULL,
  signer TEXT NOT NULL,
  signature TEXT NOT NULL,
  created_at TEXT NOT NULL,
  status TEXT NOT NULL,
  reason TEXT,
  FOREIGN KEY(repo, number) REFERENCES pull_requests(repo, number)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_signatures_accepted ON signatures(repo, number, signer) WHERE status='accepted';

CREATE TABLE IF NOT EXISTS veto_signals(
  id INTEGER PRIMARY KEY,
  repo TEXT NOT NULL,
  number INT NOT NULL,
  node_id TEXT NOT NULL,
  node_kind TEXT NOT NULL,
  kind TEXT NOT NULL,
  weight REAL NOT NULL,
  signature TEXT NOT NULL,
  rationale TEXT,
  created_at TEXT NOT NULL,
  active INT NOT NULL DEFAULT 1,
  deactivated_at TEXT,
  FOREIGN KEY(repo, number) REFERENCES pull_requests(repo, number),
  FOREIGN KEY(node_id) REFERENCES economic_nodes(node_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_veto_active ON veto_signals(repo, number, node_id) WHERE active=1;

CREATE TABLE IF NOT EXISTS active_emergencies(
  emergency_id TEXT PRIMARY KEY,
  scope TEXT NOT NULL,
  tier TEXT NOT NULL,
  activated_by TEXT NOT NULL,
  reason TEXT NOT NULL,
  evidence TEXT NOT NULL,
  signers_json TEXT,
  activated_at TEXT NOT NULL,
  expires_at TEXT NOT NULL,
  extension_count INT NOT NULL DEFAULT 0,
  state TEXT NOT NULL,
  ended_at TEXT,
  post_mortem_deadline TEXT,
  post_mortem_url TEXT,
  post_mortem_at TEXT,
  security_audit_deadline TEXT,
  security_audit_url TEXT,
  security_audit_at TEXT,
  CHECK(expires_at >= activated_at)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_emergency_scope_active ON active_emergencies(scope) WHERE state='active';

CREATE TABLE IF NOT EXISTS audit_log(
  seq INTEGER PRIMARY KEY,
  timestamp TEXT NOT NULL,
  job_id TEXT NOT NULL UNIQUE,
  job_type TEXT NOT NULL,
  actor TEXT,
  payload_json TEXT NOT NULL,
  prev_log_hash TEXT NOT NULL,
  this_log_hash TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_checkpoints(
  id INTEGER PRIMARY KEY,
  seq_start INT NOT NULL,
  seq_end INT NOT NULL,
  merkle_root TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ruleset_config(
  id INT PRIMARY KEY CHECK(id=1),
  version INT NOT NULL,
  ruleset_json TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_events(
  fingerprint TEXT PRIMARY KEY,
  event_type TEXT NOT NULL,
  received_at TEXT NOT NULL
)
"""
