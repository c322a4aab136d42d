import datetime
import unittest

from helpers import EVIDENCE, T0, EngineFixture, emergency_payload, pr_payload

from mergewarden.crypto import emergency_message, extension_message
from mergewarden.emergency import EmergencyState, EmergencyTier, KeyholderSignature
from mergewarden.errors import BrokenChain, InputError, PolicyError
from mergewarden.ruleset import EmergencyScope

KEYHOLDERS = ("kh0", "kh1", "kh2", "kh3", "kh4", "kh5", "kh6")
REASON = "CVE in p2p message parsing"


class EmergencyLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.fx = EngineFixture()
        self.eng = self.fx.engine
        self.kh = self.fx.keyholders(*KEYHOLDERS)
        self.ctl = self.eng.emergency

    def tearDown(self):
        self.fx.close()

    def sigs(self, message, n):
        return [KeyholderSignature(k, self.kh[k].sign(message)) for k in KEYHOLDERS[:n]]

    def activate(self, tier, n, reason=REASON, evidence=EVIDENCE, scope="global"):
        return self.ctl.activate(scope, tier, "kh0", reason, evidence, self.sigs(emergency_message(tier.value, reason), n))

    def test_critical_activation_expiry_and_obligations(self):
        em = self.activate(EmergencyTier.CRITICAL, 4)
        self.assertEqual(em.expires_at, T0 + datetime.timedelta(days=7))
        self.assertEqual(em.signers, ["kh0", "kh1", "kh2", "kh3"])

        with self.assertRaises(PolicyError) as ctx:
            self.ctl.extend("global", "kh0", self.sigs(extension_message("critical", REASON, 1), 7))
        self.assertEqual(ctx.exception.reason, "no_extension_allowed_critical")

        # Activation at T0 is day 1: the window closes on day 8 (T0+7) and the
        # post-mortem is due 30 days later on day 38 (T0+37), the audit on day 68.
        self.fx.clock.advance(days=8)
        em = self.ctl.observe("global")
        self.assertEqual(em.state, EmergencyState.EXPIRED)
        self.assertEqual(em.post_mortem_deadline, T0 + datetime.timedelta(days=37))
        self.assertEqual(em.security_audit_deadline, T0 + datetime.timedelta(days=67))
        self.assertIn("emergency_expired", self.fx.job_types())

        em = self.ctl.record_post_mortem("global", "https://example.org/pm", "kh0")
        self.assertEqual(em.state, EmergencyState.EXPIRED)
        em = self.ctl.record_security_audit("global", "https://example.org/audit", "kh1")
        self.assertEqual(em.state, EmergencyState.INACTIVE)
        self.assertIsNone(self.ctl.observe("global"))
        self.assertIn("emergency_closed", self.fx.job_types())

    def test_expiry_is_observed_by_decisions(self):
        self.activate(EmergencyTier.CRITICAL, 4)
        self.fx.clock.advance(days=7)
        self.eng.handle_webhook("pull_request", pr_payload("acme/docs", 1, "Fix typo"))
        self.assertEqual(self.ctl.current("global").state, EmergencyState.EXPIRED)

    def test_expiry_readable_while_log_read_only(self):
        self.activate(EmergencyTier.CRITICAL, 4)
        self.eng.db.execute("UPDATE audit_log SET job_type='forged' WHERE seq=1")
        with self.assertRaises(BrokenChain):
            self.eng.audit.verify()
        self.fx.clock.advance(days=8)
        em = self.eng.current_emergency()
        self.assertEqual(em.state, EmergencyState.EXPIRED)
        self.assertEqual(em.post_mortem_deadline, T0 + datetime.timedelta(days=37))
        self.assertEqual(self.ctl.current("global").state, EmergencyState.ACTIVE)
        self.assertNotIn("emergency_expired", self.fx.job_types())

    def test_insufficient_signatures(self):
        with self.assertRaises(PolicyError) as ctx:
            self.activate(EmergencyTier.CRITICAL, 3)
        self.assertEqual(ctx.exception.reason, "insufficient_signatures")
        self.assertIsNone(self.ctl.current("global"))

    def test_signatures_over_other_tier_do_not_count(self):
        sigs = self.sigs(emergency_message("urgent", REASON), 7)
        with self.assertRaises(PolicyError):
            self.ctl.activate("global", EmergencyTier.CRITICAL, "kh0", REASON, EVIDENCE, sigs)

    def test_non_keyholders_ignored(self):
        sigs = self.sigs(emergency_message("critical", REASON), 3)
        sigs.append(KeyholderSignature("mallory", self.kh["kh3"].sign(emergency_message("critical", REASON))))
        with self.assertRaises(PolicyError):
            self.ctl.activate("global", EmergencyTier.CRITICAL, "kh0", REASON, EVIDENCE, sigs)

    def test_insufficient_evidence(self):
        with self.assertRaises(PolicyError) as ctx:
            self.activate(EmergencyTier.CRITICAL, 7, evidence="trust me")
        self.assertEqual(ctx.exception.reason, "insufficient_evidence")

    def test_one_active_per_scope(self):
        self.activate(EmergencyTier.ELEVATED, 6)
        with self.assertRaises(PolicyError) as ctx:
            self.activate(EmergencyTier.CRITICAL, 4)
        self.assertEqual(ctx.exception.reason, "emergency_already_active")

    def test_urgent_single_extension(self):
        em = self.activate(EmergencyTier.URGENT, 5)
        em = self.ctl.extend("global", "kh0", self.sigs(extension_message("urgent", REASON, 1), 6))
        self.assertEqual(em.extension_count, 1)
        self.assertEqual(em.expires_at, T0 + datetime.timedelta(days=60))
        with self.assertRaises(PolicyError) as ctx:
            self.ctl.extend("global", "kh0", self.sigs(extension_message("urgent", REASON, 2), 7))
        self.assertEqual(ctx.exception.reason, "max_extensions_reached")

    def test_extension_needs_threshold(self):
        self.activate(EmergencyTier.ELEVATED, 6)
        with self.assertRaises(PolicyError) as ctx:
            self.ctl.extend("global", "kh0", self.sigs(extension_message("elevated", REASON, 1), 5))
        self.assertEqual(ctx.exception.reason, "insufficient_signatures")

    def test_cannot_extend_after_expiry(self):
        self.activate(EmergencyTier.URGENT, 5)
        self.fx.clock.advance(days=31)
        with self.assertRaises(PolicyError) as ctx:
            self.ctl.extend("global", "kh0", self.sigs(extension_message("urgent", REASON, 1), 6))
        self.assertEqual(ctx.exception.reason, "emergency_expired")

    def test_obligations_only_after_end(self):
        self.activate(EmergencyTier.URGENT, 5)
        with self.assertRaises(PolicyError) as ctx:
            self.ctl.record_post_mortem("global", "https://example.org/pm", "kh0")
        self.assertEqual(ctx.exception.reason, "no_expired_emergency")

    def test_urgent_needs_no_security_audit(self):
        self.activate(EmergencyTier.URGENT, 5)
        self.ctl.deactivate("global", "kh0", "patched")
        with self.assertRaises(PolicyError) as ctx:
            self.ctl.record_security_audit("global", "https://example.org/a", "kh0")
        self.assertEqual(ctx.exception.reason, "security_audit_not_required")
        em = self.ctl.record_post_mortem("global", "https://example.org/pm", "kh0")
        self.assertEqual(em.state, EmergencyState.INACTIVE)

    def test_deactivate_sets_deadlines_from_end(self):
        self.activate(EmergencyTier.URGENT, 5)
        self.fx.clock.advance(days=2)
        em = self.ctl.deactivate("global", "kh0")
        self.assertEqual(em.post_mortem_deadline, T0 + datetime.timedelta(days=62))

    def test_tier_parse(self):
        self.assertIs(EmergencyTier.parse(1), EmergencyTier.CRITICAL)
        self.assertIs(EmergencyTier.parse("Elevated"), EmergencyTier.ELEVATED)
        with self.assertRaises(InputError):
            EmergencyTier.parse("apocalyptic")


class EmergencyWebhookTests(unittest.TestCase):
    def setUp(self):
        self.fx = EngineFixture()
        self.eng = self.fx.engine
        self.kh = self.fx.keyholders(*KEYHOLDERS)

    def tearDown(self):
        self.fx.close()

    def test_activation_via_webhook_shortens_review(self):
        self.fx.maintainers("alice", "bob", "charlie", "dave")
        self.eng.handle_webhook("pull_request", pr_payload("acme/core", 3, "[FEATURE] new rpc"))
        self.fx.clock.advance(days=8)
        self.assertEqual(self.eng.evaluate("acme/core", 3).review.required_days, 30)

        signers = [self.kh[k] for k in KEYHOLDERS[:5]]
        res = self.eng.handle_webhook("emergency", emergency_payload("urgent", signers))
        self.assertEqual(res.outcome, "processed")
        d = self.eng.evaluate("acme/core", 3)
        self.assertEqual(d.review.required_days, 7)
        self.assertTrue(d.review.met)
        self.assertIn("Emergency Tier Active: Urgent Security Issue", d.status.text)

    def test_policy_violation_is_audited(self):
        signers = [self.kh[k] for k in KEYHOLDERS[:4]]
        with self.assertRaises(PolicyError):
            self.eng.handle_webhook("emergency", emergency_payload("critical", signers, evidence="short"))
        entries = self.eng.audit.by_type("policy_violation")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].payload["reason"], "insufficient_evidence")

    def test_replayed_activation_is_duplicate(self):
        payload = emergency_payload("critical", [self.kh[k] for k in KEYHOLDERS[:4]])
        self.eng.handle_webhook("emergency", payload, delivery_id="d-1")
        res = self.eng.handle_webhook("emergency", payload, delivery_id="d-1")
        self.assertEqual(res.outcome, "duplicate")
        self.assertEqual(len(self.eng.audit.by_type("emergency_activated")), 1)

    def test_replayed_refused_activation_audited_once(self):
        payload = emergency_payload("critical", [self.kh[k] for k in KEYHOLDERS[:3]])
        with self.assertRaises(PolicyError):
            self.eng.handle_webhook("emergency", payload, delivery_id="e-1")
        n = self.eng.audit.count()
        res = self.eng.handle_webhook("emergency", payload, delivery_id="e-1")
        self.assertEqual(res.outcome, "duplicate")
        self.assertEqual(self.eng.audit.count(), n)
        self.assertEqual(len(self.eng.audit.by_type("policy_violation")), 1)

    def test_repository_scope(self):
        self.fx.close()
        self.fx = EngineFixture(emergency_scope=EmergencyScope.REPOSITORY)
        self.eng = self.fx.engine
        self.kh = self.fx.keyholders(*KEYHOLDERS)
        signers = [self.kh[k] for k in KEYHOLDERS[:4]]
        self.eng.handle_webhook("emergency", emergency_payload("critical", signers, repository="acme/core"))
        self.assertIsNotNone(self.eng.current_emergency("acme/core"))
        self.assertIsNone(self.eng.current_emergency("acme/docs"))
        with self.assertRaises(InputError):
            self.eng.handle_webhook("emergency", emergency_payload("critical", signers))


if __name__ == "__main__":
    unittest.main()
