import datetime
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from mergewarden.crypto import SigningIdentity, approval_message, emergency_message, signal_message, withdraw_message
from mergewarden.engine import GovernanceEngine
from mergewarden.ruleset import Settings
from mergewarden.status import InMemoryStatusPublisher
from mergewarden.util import FixedTimeAuthority

UTC = datetime.timezone.utc
T0 = datetime.datetime(2025, 1, 1, tzinfo=UTC)

EVIDENCE = "Remote crash in block relay reproduced on mainnet nodes; exploit published; patch and regression test attached to the advisory."


def utc(*args) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=UTC)


def identities(*names: str, algorithm: str = "ed25519") -> Dict[str, SigningIdentity]:
    return {n: SigningIdentity.generate(n, algorithm) for n in names}


class EngineFixture:
    """Engine on a temp-file database with a fixed clock and an in-memory publisher."""

    def __init__(self, start: datetime.datetime = T0, **settings):
        self._td = tempfile.TemporaryDirectory()
        self.db_file = str(Path(self._td.name) / "mw.db")
        settings.setdefault("retry_base_delay", 0.001)
        self.settings = Settings(db_file=self.db_file, **settings)
        self.clock = FixedTimeAuthority(start)
        self.publisher = InMemoryStatusPublisher()
        self.engine = GovernanceEngine(settings=self.settings, time_authority=self.clock, publisher=self.publisher)

    def close(self):
        self.engine.close()
        self._td.cleanup()

    def maintainers(self, *names: str) -> Dict[str, SigningIdentity]:
        ids = identities(*names, algorithm=self.settings.signature_algorithm)
        for n, ident in ids.items():
            self.engine.enroll_maintainer(n, ident.pubkey_hex)
        return ids

    def keyholders(self, *names: str) -> Dict[str, SigningIdentity]:
        ids = identities(*names, algorithm=self.settings.signature_algorithm)
        for n, ident in ids.items():
            self.engine.enroll_keyholder(n, ident.pubkey_hex)
        return ids

    def node(self, node_id: str, kind: str, weight: float) -> SigningIdentity:
        ident = SigningIdentity.generate(node_id, self.settings.signature_algorithm)
        self.engine.register_node(node_id, kind, ident.pubkey_hex)
        self.engine.activate_node(node_id, weight)
        return ident

    def job_types(self) -> List[str]:
        return [e.job_type for e in self.engine.audit.entries()]


# ── Payload builders ────────────────────────────────────────────────

def pr_payload(repo: str, number: int, title: str, body: str = "", author: str = "dev", action: str = "opened",
               created_at: Optional[str] = "2025-01-01T00:00:00Z", changed_paths: Optional[List[str]] = None,
               head_sha: str = "a" * 40, merged: bool = False) -> dict:
    pr = {"number": number, "title": title, "body": body, "user": {"login": author}, "head": {"sha": head_sha},
          "merged": merged}
    if created_at:
        pr["created_at"] = created_at
    payload = {"action": action, "repository": {"full_name": repo}, "pull_request": pr}
    if changed_paths is not None:
        payload["changed_paths"] = changed_paths
    return payload


def comment_payload(repo: str, number: int, user: str, body: str) -> dict:
    return {
        "action": "created",
        "repository": {"full_name": repo},
        "issue": {"number": number},
        "comment": {"user": {"login": user}, "body": body},
    }


def sign_payload(repo: str, number: int, signer: SigningIdentity) -> dict:
    sig = signer.sign(approval_message(repo, number))
    return comment_payload(repo, number, signer.name, f"LGTM\n/governance-sign {sig}")


def review_payload(repo: str, number: int, user: str, state: str = "approved") -> dict:
    return {
        "action": "submitted",
        "repository": {"full_name": repo},
        "pull_request": {"number": number},
        "review": {"state": state, "user": {"login": user}},
    }


def veto_payload(repo: str, number: int, node: SigningIdentity, rationale: str = "breaks soft-fork rules",
                 kind: str = "veto") -> dict:
    return {
        "action": "signal", "repository": repo, "number": number, "node_id": node.name, "kind": kind,
        "rationale": rationale, "signature": node.sign(signal_message(kind, node.name, repo, number, rationale)),
    }


def withdraw_payload(repo: str, number: int, node: SigningIdentity) -> dict:
    return {"action": "withdraw", "repository": repo, "number": number, "node_id": node.name,
            "signature": node.sign(withdraw_message(node.name, repo, number))}


def emergency_payload(tier: str, signers: List[SigningIdentity], reason: str = "CVE in p2p message parsing",
                      evidence: str = EVIDENCE, activated_by: str = "kh0", repository: Optional[str] = None) -> dict:
    msg = emergency_message(tier, reason)
    payload = {
        "action": "activate", "tier": tier, "activated_by": activated_by, "reason": reason, "evidence": evidence,
        "signatures": [{"signer": s.name, "signature": s.sign(msg)} for s in signers],
    }
    if repository:
        payload["repository"] = repository
    return payload
