import datetime
import unittest
from types import MappingProxyType

from mergewarden.crypto import SignatureVerifier, SigningIdentity, approval_message
from mergewarden.evaluators import (
    elapsed_days, evaluate_review, evaluate_threshold, required_review_days, signatures_met,
)
from mergewarden.registry import Keyholder, Maintainer, RegistrySnapshot
from mergewarden.ruleset import Ruleset, SignerPool, TierRule

UTC = datetime.timezone.utc


def snapshot(maintainers=(), keyholders=()):
    return RegistrySnapshot(
        maintainers=MappingProxyType({i.name: Maintainer(i.name, i.pubkey_hex, 1, True, "") for i in maintainers}),
        keyholders=MappingProxyType({i.name: Keyholder(i.name, i.pubkey_hex, True, "") for i in keyholders}),
        nodes=MappingProxyType({}),
    )


class ReviewPeriodTests(unittest.TestCase):
    def setUp(self):
        self.opened = datetime.datetime(2025, 1, 1, tzinfo=UTC)
        self.rs = Ruleset()

    def test_elapsed_days_floors(self):
        self.assertEqual(elapsed_days(self.opened, self.opened + datetime.timedelta(days=6, hours=23)), 6)
        self.assertEqual(elapsed_days(self.opened, self.opened + datetime.timedelta(days=7, minutes=1)), 7)

    def test_tier1_met_after_seven_days(self):
        rule = self.rs.rule(1)
        r = evaluate_review(self.opened, rule, self.rs, datetime.datetime(2025, 1, 7, 23, 59, tzinfo=UTC))
        self.assertFalse(r.met)
        self.assertEqual(r.remaining_days, 1)
        self.assertEqual(r.earliest_merge, datetime.datetime(2025, 1, 8, tzinfo=UTC))
        r = evaluate_review(self.opened, rule, self.rs, datetime.datetime(2025, 1, 8, 0, 1, tzinfo=UTC))
        self.assertTrue(r.met)
        self.assertEqual(r.remaining_days, 0)

    def test_emergency_lowers_but_never_lengthens(self):
        self.assertEqual(required_review_days(self.rs.rule(2), self.rs, "urgent"), 7)
        self.assertEqual(required_review_days(self.rs.rule(5), self.rs, "critical"), 0)
        self.assertEqual(required_review_days(self.rs.rule(1), self.rs, "elevated"), 7)
        self.assertEqual(required_review_days(self.rs.rule(3), self.rs, None), 90)

    def test_zero_day_tier_met_immediately(self):
        r = evaluate_review(self.opened, self.rs.rule(4), self.rs, self.opened)
        self.assertTrue(r.met)


class ThresholdTests(unittest.TestCase):
    def setUp(self):
        self.verifier = SignatureVerifier()
        self.ms = [SigningIdentity.generate(n) for n in ("alice", "bob", "charlie", "dave", "erin")]
        self.snap = snapshot(self.ms)
        self.rule = TierRule(3, 5, 7)
        self.msg = approval_message("acme/docs", 7)

    def test_counts_distinct_valid_signers(self):
        sigs = [(m.name, m.sign(self.msg)) for m in self.ms[:3]]
        sigs.append(("alice", self.ms[0].sign(self.msg)))
        res = evaluate_threshold("acme/docs", 7, self.rule, sigs, self.snap, self.verifier)
        self.assertEqual(res.count, 3)
        self.assertTrue(res.met)
        self.assertEqual(res.signers, ["alice", "bob", "charlie"])
        self.assertEqual(res.pending, ["dave", "erin"])

    def test_signature_for_other_pr_does_not_count(self):
        other = approval_message("acme/docs", 8)
        sigs = [(m.name, m.sign(other)) for m in self.ms[:3]]
        res = evaluate_threshold("acme/docs", 7, self.rule, sigs, self.snap, self.verifier)
        self.assertEqual(res.count, 0)
        self.assertEqual(res.invalid, ["alice", "bob", "charlie"])

    def test_removed_signer_drops_out(self):
        sigs = [(m.name, m.sign(self.msg)) for m in self.ms[:3]]
        smaller = snapshot(self.ms[1:])
        self.assertFalse(signatures_met("acme/docs", 7, self.rule, sigs, smaller, self.verifier))

    def test_keyholder_pool(self):
        kh = [SigningIdentity.generate(f"kh{i}") for i in range(4)]
        rule = TierRule(4, 7, 0, signer_pool=SignerPool.KEYHOLDERS)
        snap = snapshot(self.ms, kh)
        maint_sigs = [(m.name, m.sign(self.msg)) for m in self.ms[:4]]
        self.assertEqual(evaluate_threshold("acme/docs", 7, rule, maint_sigs, snap, self.verifier).count, 0)
        kh_sigs = [(k.name, k.sign(self.msg)) for k in kh]
        self.assertTrue(evaluate_threshold("acme/docs", 7, rule, kh_sigs, snap, self.verifier).met)


if __name__ == "__main__":
    unittest.main()
