import datetime
import unittest

from helpers import EngineFixture, pr_payload, sign_payload, veto_payload, withdraw_payload

from mergewarden.engine import REASON_VETO, Verdict
from mergewarden.errors import PolicyError
from mergewarden.registry import NodeKind, compute_node_weight

REPO = "acme/core"
MAINTAINERS = ("alice", "bob", "charlie", "dave", "erin")


class NodeWeightTests(unittest.TestCase):
    def test_weights(self):
        self.assertEqual(compute_node_weight(NodeKind.MINING_POOL, {"hashpower_percent": 35}), 0.35)
        self.assertEqual(compute_node_weight(NodeKind.EXCHANGE, {"holdings_btc": 5000, "daily_volume_usd": 1e8}), 0.65)
        self.assertEqual(compute_node_weight(NodeKind.CUSTODIAN, {"holdings_btc": 50000}), 1.0)
        self.assertEqual(compute_node_weight(NodeKind.PAYMENT_PROCESSOR, {"monthly_volume_usd": 25e6}), 0.5)
        self.assertEqual(compute_node_weight(NodeKind.MAJOR_HOLDER, {}), 0.0)


class VetoScenarioTests(unittest.TestCase):
    def setUp(self):
        opened = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)
        self.fx = EngineFixture(start=opened)
        self.eng = self.fx.engine
        self.ms = self.fx.maintainers(*MAINTAINERS)
        self.pool_a = self.fx.node("pool-a", "mining_pool", 0.35)
        self.pool_b = self.fx.node("pool-b", "mining_pool", 0.65)
        self.exch = self.fx.node("exch-1", "exchange", 0.5)
        self.cust = self.fx.node("cust-1", "custodian", 0.5)
        self.eng.handle_webhook("pull_request", pr_payload(REPO, 42, "[CONSENSUS-ADJACENT] Update validation",
                                                           created_at="2025-01-01T00:00:00Z"))
        self.fx.clock.advance(days=200)
        for m in MAINTAINERS:
            self.eng.handle_webhook("issue_comment", sign_payload(REPO, 42, self.ms[m]))

    def tearDown(self):
        self.fx.close()

    def test_unvetoed_pr_merges(self):
        d = self.eng.evaluate(REPO, 42)
        self.assertEqual(d.verdict, Verdict.MERGE_OK)
        self.assertEqual(d.tier, 3)

    def test_mining_veto_blocks(self):
        res = self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a))
        d = res.decision
        self.assertEqual(d.verdict, Verdict.BLOCKED)
        self.assertEqual(d.reasons, [REASON_VETO])
        self.assertAlmostEqual(d.veto.mining_veto_pct, 35.0)
        self.assertIn("Economic Veto Active", d.status.text)
        self.assertEqual(self.fx.publisher.latest(REPO, 42).state.value, "failure")

    def test_economic_veto_threshold(self):
        d = self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.exch)).decision
        self.assertAlmostEqual(d.veto.economic_veto_pct, 50.0)
        self.assertEqual(d.verdict, Verdict.BLOCKED)

    def test_support_signal_does_not_block(self):
        d = self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_b, kind="support")).decision
        self.assertEqual(d.verdict, Verdict.MERGE_OK)
        self.assertEqual(d.veto.support_count, 1)

    def test_replacement_keeps_one_active_signal(self):
        self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a))
        d = self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a, kind="abstain")).decision
        self.assertEqual(d.verdict, Verdict.MERGE_OK)
        active = self.eng.veto.signals(REPO, 42)
        self.assertEqual([s.kind.value for s in active], ["abstain"])
        first = self.eng.veto.signals(REPO, 42, active_only=False)[0]
        self.assertFalse(first.active)
        added = self.eng.audit.by_type("veto_signal_added")
        self.assertEqual(added[-1].payload["replaced_signal"], first.id)

    def test_withdraw_lifts_veto(self):
        self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a))
        res = self.eng.handle_webhook("veto", withdraw_payload(REPO, 42, self.pool_a))
        self.assertEqual(res.decision.verdict, Verdict.MERGE_OK)
        self.assertIn("veto_withdrawn", self.fx.job_types())

    def test_withdraw_without_veto(self):
        with self.assertRaises(PolicyError) as ctx:
            self.eng.handle_webhook("veto", withdraw_payload(REPO, 42, self.pool_a))
        self.assertEqual(ctx.exception.reason, "no_active_veto")
        self.assertIn("policy_violation", self.fx.job_types())

    def test_replayed_refused_withdraw_audited_once(self):
        payload = withdraw_payload(REPO, 42, self.pool_a)
        with self.assertRaises(PolicyError):
            self.eng.handle_webhook("veto", payload, delivery_id="w-1")
        n = self.eng.audit.count()
        for _ in range(2):
            res = self.eng.handle_webhook("veto", payload, delivery_id="w-1")
            self.assertEqual(res.outcome, "duplicate")
        self.assertEqual(self.eng.audit.count(), n)
        self.assertEqual(len(self.eng.audit.by_type("policy_violation")), 1)

    def test_withdraw_on_merged_pr_changes_nothing(self):
        self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a))
        self.eng.handle_webhook("pull_request", pr_payload(REPO, 42, "[CONSENSUS-ADJACENT] Update validation",
                                                           action="closed", merged=True))
        res = self.eng.handle_webhook("veto", withdraw_payload(REPO, 42, self.pool_a))
        self.assertEqual(res.detail, "pr_not_open")
        self.assertIsNone(res.decision)
        self.assertEqual(len(self.eng.veto.signals(REPO, 42)), 1)
        self.assertNotIn("veto_withdrawn", self.fx.job_types())

    def test_forged_signal_rejected(self):
        payload = veto_payload(REPO, 42, self.pool_a)
        payload["rationale"] = "something else"
        res = self.eng.handle_webhook("veto", payload)
        self.assertEqual(res.detail, "veto_signal_rejected")
        self.assertEqual(res.decision.verdict, Verdict.MERGE_OK)

    def test_suspended_node_signals_retired(self):
        self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a))
        self.eng.set_node_status("pool-a", "suspended")
        d = self.eng.evaluate(REPO, 42)
        self.assertEqual(d.verdict, Verdict.MERGE_OK)
        self.assertEqual(self.eng.veto.signals(REPO, 42), [])
        res = self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a, rationale="again"))
        self.assertEqual(res.detail, "veto_signal_rejected")

    def test_weights_are_snapshotted(self):
        self.eng.handle_webhook("veto", veto_payload(REPO, 42, self.pool_a))
        self.eng.activate_node("pool-a", 0.1)
        d = self.eng.evaluate(REPO, 42)
        self.assertAlmostEqual(d.veto.mining_veto_weight, 0.35)
        self.assertAlmostEqual(d.veto.mining_veto_pct, 0.35 / 0.75 * 100, places=4)

    def test_veto_disabled_below_tier_three(self):
        self.eng.handle_webhook("pull_request", pr_payload(REPO, 43, "Fix typo"))
        d = self.eng.handle_webhook("veto", veto_payload(REPO, 43, self.pool_b)).decision
        self.assertFalse(d.veto.enabled)
        self.assertNotIn(REASON_VETO, d.reasons)


if __name__ == "__main__":
    unittest.main()
