import datetime
import tempfile
import unittest
import uuid
from pathlib import Path

from mergewarden.audit import (
    AuditLog, AuditLogEntry, export_jsonl, find_gaps, find_tampered, merkle_proof, merkle_root, verify_entries,
    verify_file, verify_merkle_proof,
)
from mergewarden.db import GovernanceDB
from mergewarden.errors import BadTimestamp, BrokenChain, CorruptionError, DuplicateJobId, MerkleMismatch
from mergewarden.util import ZERO_HASH, FixedTimeAuthority, iso_z

UTC = datetime.timezone.utc
T0 = datetime.datetime(2025, 1, 1, tzinfo=UTC)


def flip_bit(h: str) -> str:
    return format(int(h[0], 16) ^ 1, "x") + h[1:]


def chain(timestamps, job_ids=None):
    entries = []
    prev = ZERO_HASH
    for i, ts in enumerate(timestamps):
        e = AuditLogEntry(i, ts, job_ids[i] if job_ids else str(uuid.uuid4()), "test", None, {"i": i}, prev)
        e.this_log_hash = e.compute_hash()
        entries.append(e)
        prev = e.this_log_hash
    return entries


class AuditLogTests(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.db_file = str(Path(self._td.name) / "audit.db")
        self.db = GovernanceDB(self.db_file)
        self.clock = FixedTimeAuthority(T0)
        self.log = AuditLog(self.db, self.clock)

    def tearDown(self):
        self.db.close()
        self._td.cleanup()

    def fill(self, n):
        for i in range(n):
            self.log.append("event", {"i": i}, actor="tester")
            self.clock.advance(seconds=1)

    def test_first_entry_links_to_zero_hash(self):
        e = self.log.append("event", {"k": "v"})
        self.assertEqual(e.seq, 0)
        self.assertEqual(e.prev_log_hash, ZERO_HASH)
        self.assertEqual(e.this_log_hash, e.compute_hash())

    def test_chain_links(self):
        self.fill(6)
        entries = self.log.entries()
        for i in range(1, len(entries)):
            self.assertEqual(entries[i].prev_log_hash, entries[i - 1].this_log_hash)
        self.assertEqual(self.log.verify(), 6)
        self.assertEqual(self.log.tip(), entries[-1].this_log_hash)

    def test_broken_chain_at_five(self):
        self.fill(8)
        row = self.db.query_one("SELECT prev_log_hash FROM audit_log WHERE seq=5")
        self.db.execute("UPDATE audit_log SET prev_log_hash=? WHERE seq=5", (flip_bit(row[0]),))
        with self.assertRaises(BrokenChain) as ctx:
            verify_entries(self.log.entries())
        self.assertEqual(ctx.exception.index, 5)
        self.assertEqual(find_tampered(self.log.entries()), [5])

    def test_corruption_makes_log_read_only(self):
        self.fill(3)
        self.db.execute("UPDATE audit_log SET payload_json='{\"i\":99}' WHERE seq=1")
        with self.assertRaises(BrokenChain):
            self.log.verify()
        self.assertTrue(self.log.read_only)
        with self.assertRaises(CorruptionError):
            self.log.append("event", {})
        self.assertEqual(len(self.log.tail(10)), 3)

    def test_startup_detects_corruption(self):
        self.fill(3)
        self.db.execute("UPDATE audit_log SET job_type='forged' WHERE seq=2")
        reopened = AuditLog(self.db, self.clock)
        self.assertTrue(reopened.read_only)
        self.assertIn("entry 2", reopened.corruption)

    def test_timestamp_clamped_when_clock_regresses(self):
        first = self.log.append("event", {})
        self.clock.set(T0 - datetime.timedelta(hours=1))
        second = self.log.append("event", {})
        self.assertEqual(second.timestamp, first.timestamp)
        self.log.verify()

    def test_job_ids_unique(self):
        self.fill(5)
        ids = [e.job_id for e in self.log.entries()]
        self.assertEqual(len(set(ids)), 5)

    def test_single_entry_merkle_root_is_entry_hash(self):
        e = self.log.append("event", {})
        self.assertEqual(self.log.merkle_root(), e.this_log_hash)

    def test_empty_merkle_root(self):
        self.assertEqual(self.log.merkle_root(), ZERO_HASH)

    def test_merkle_root_verification(self):
        self.fill(5)
        root = self.log.merkle_root()
        self.assertEqual(self.log.verify_root(root), root)
        with self.assertRaises(MerkleMismatch):
            self.log.verify_root(flip_bit(root))
        self.assertTrue(self.log.read_only)

    def test_merkle_root_prefix(self):
        self.fill(4)
        hashes = [e.this_log_hash for e in self.log.entries()]
        self.assertEqual(self.log.merkle_root(upto=2), merkle_root(hashes[:3]))

    def test_inclusion_proofs(self):
        self.fill(7)
        hashes = [e.this_log_hash for e in self.log.entries()]
        root = merkle_root(hashes)
        for i, h in enumerate(hashes):
            self.assertTrue(verify_merkle_proof(h, merkle_proof(hashes, i), root), i)
        self.assertFalse(verify_merkle_proof(hashes[0], merkle_proof(hashes, 1), root))
        p = self.log.proof(3)
        self.assertEqual(p["root"], root)
        self.assertTrue(verify_merkle_proof(p["leaf"], p["proof"], p["root"]))

    def test_checkpoints(self):
        self.fill(4)
        cp = self.log.checkpoint(actor="ops")
        self.assertEqual((cp.seq_start, cp.seq_end), (0, 3))
        self.assertEqual(self.log.entries()[-1].job_type, "audit_checkpoint")
        self.fill(2)
        cp2 = self.log.checkpoint()
        self.assertEqual((cp2.seq_start, cp2.seq_end), (4, 6))
        self.assertEqual(self.log.verify_checkpoints(), 2)

    def test_jsonl_round_trip(self):
        self.fill(5)
        out = Path(self._td.name) / "audit.jsonl"
        self.assertEqual(self.log.export(out), 5)
        result = verify_file(out, expected_root=self.log.merkle_root())
        self.assertEqual(result["entries"], 5)
        self.assertEqual(result["tip"], self.log.tip())
        with self.assertRaises(MerkleMismatch):
            verify_file(out, expected_root=ZERO_HASH)


class EntryVerificationTests(unittest.TestCase):
    def test_bad_timestamp(self):
        ts = [iso_z(T0 + datetime.timedelta(seconds=s)) for s in (0, 1, 2, 1)]
        with self.assertRaises(BadTimestamp) as ctx:
            verify_entries(chain(ts))
        self.assertEqual(ctx.exception.index, 3)

    def test_duplicate_job_id(self):
        ts = [iso_z(T0)] * 3
        with self.assertRaises(DuplicateJobId):
            verify_entries(chain(ts, ["a", "b", "a"]))

    def test_gaps(self):
        entries = chain([iso_z(T0)] * 3)
        entries[2].seq = 5
        self.assertEqual(find_gaps(entries), [(2, 5)])

    def test_exported_tampered_file(self):
        with tempfile.TemporaryDirectory() as td:
            entries = chain([iso_z(T0)] * 4)
            entries[2].payload = {"i": "forged"}
            path = Path(td) / "a.jsonl"
            export_jsonl(entries, path)
            with self.assertRaises(BrokenChain) as ctx:
                verify_file(path)
            self.assertEqual(ctx.exception.index, 2)


if __name__ == "__main__":
    unittest.main()
