import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from helpers import EngineFixture, pr_payload

from mergewarden.audit import export_jsonl, load_jsonl
from mergewarden.cli import main


def run(argv):
    out = io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(io.StringIO()):
        code = main(argv)
    return code, out.getvalue()


class AuditCliTests(unittest.TestCase):
    def setUp(self):
        self.fx = EngineFixture()
        self.fx.maintainers("alice", "bob")
        self.fx.engine.handle_webhook("pull_request", pr_payload("acme/docs", 1, "Fix typo"))
        self.root = self.fx.engine.audit.merkle_root()
        self._td = tempfile.TemporaryDirectory()
        self.out = Path(self._td.name) / "audit.jsonl"

    def tearDown(self):
        self.fx.close()
        self._td.cleanup()

    def test_export_then_verify(self):
        code, text = run(["export", "--db", self.fx.db_file, "--out", str(self.out)])
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(text)["merkle_root"], self.root)

        code, text = run(["verify", str(self.out), "--merkle-root", self.root])
        self.assertEqual(code, 0)
        self.assertTrue(json.loads(text)["verified"])

    def test_verify_reports_tampering(self):
        self.fx.engine.audit.export(self.out)
        entries = load_jsonl(self.out)
        entries[2].payload["forged"] = True
        export_jsonl(entries, self.out)

        code, text = run(["verify", str(self.out)])
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(text)["index"], 2)

        code, text = run(["tampered", str(self.out)])
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(text)["tampered"], [2])

    def test_missing_database(self):
        code, _ = run(["export", "--db", str(Path(self._td.name) / "nope.db"), "--out", str(self.out)])
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
