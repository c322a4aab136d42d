"""
Offline audit-log tooling.

    mergewarden-audit verify audit.jsonl [--merkle-root HEX]
    mergewarden-audit export --db .mergewarden.db --out audit.jsonl
    mergewarden-audit tampered audit.jsonl
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from mergewarden.audit import AuditLog, find_gaps, find_tampered, load_jsonl, verify_file
from mergewarden.db import GovernanceDB
from mergewarden.errors import CorruptionError, InputError

logger = logging.getLogger(__name__)


def _emit(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_verify(args: argparse.Namespace) -> int:
    try:
        result = verify_file(args.path, expected_root=args.merkle_root)
    except CorruptionError as exc:
        _emit({"verified": False, "error": exc.code, "detail": str(exc), "index": getattr(exc, "index", None)})
        return 1
    result["verified"] = True
    _emit(result)
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    if not args.db.exists():
        raise InputError(f"no database at {args.db}")
    db = GovernanceDB(str(args.db))
    try:
        log = AuditLog(db)
        n = log.export(args.out)
        _emit({"exported": n, "out": str(args.out), "merkle_root": log.merkle_root(), "read_only": log.read_only})
    finally:
        db.close()
    return 0


def cmd_tampered(args: argparse.Namespace) -> int:
    entries = load_jsonl(args.path)
    bad = find_tampered(entries)
    gaps = find_gaps(entries)
    _emit({"entries": len(entries), "tampered": bad, "gaps": [list(g) for g in gaps]})
    return 1 if bad or gaps else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="mergewarden-audit", description="Verify and export MergeWarden audit logs.")
    parser.add_argument("--log-level", default="WARNING")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("verify", help="check hash chain, timestamps, job ids and optionally the Merkle root")
    p.add_argument("path", type=Path)
    p.add_argument("--merkle-root", default=None)
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("export", help="write the audit log of a database as JSONL")
    p.add_argument("--db", type=Path, required=True)
    p.add_argument("--out", type=Path, required=True)
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("tampered", help="list entries whose recomputed hash differs and sequence gaps")
    p.add_argument("path", type=Path)
    p.set_defaults(func=cmd_tampered)

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        return args.func(args)
    except (InputError, OSError) as exc:
        logger.error("%s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
