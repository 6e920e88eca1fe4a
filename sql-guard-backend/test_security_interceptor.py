"""
End-to-end tests for the SecurityInterceptor pipeline.

Covers the six reference requests, fail-closed behaviour, the SQL entry
point's invariant checks and the audit helpers.
"""

import unittest
from unittest import mock

from caller_context import CallerContext, Role
from guard_config import DEFAULT_CATALOG_PATH
from permission_evaluator import ADMIN_SUGGESTION, FORMULA_DENIAL_PREFIX
from security_interceptor import (
    EMPTY_MESSAGE,
    FAULT_MESSAGE,
    INJECTION_MESSAGE,
    AllowedFull,
    AllowedPartial,
    Denied,
    SecurityInterceptor,
)
from semantic_catalog import CatalogStore, SecurityLevel, SemanticDictionary

DECISION_KEYS = {
    "allowed", "security_level", "rewritten_query", "denial_message", "blocked_fields",
    "allowed_fields", "partial", "suggestion", "audit_trail",
}


def _stages(decision):
    return [entry.split(":", 1)[0] for entry in decision.audit_trail]


class InterceptorTestCase(unittest.TestCase):

    def setUp(self):
        self.store = CatalogStore.from_path(DEFAULT_CATALOG_PATH)
        self.interceptor = SecurityInterceptor(self.store)
        self.sales = CallerContext(role=Role.SALES, caller_id="s1")
        self.manager = CallerContext(role=Role.MANAGER, caller_id="m1")
        self.admin = CallerContext(role=Role.ADMIN, caller_id="a1")


class TestReferenceRequests(InterceptorTestCase):

    def test_restricted_indicator_denied(self):
        decision = self.interceptor.intercept("帮我查询一下本月的毛利情况", self.sales)
        self.assertIsInstance(decision, Denied)
        self.assertFalse(decision.allowed)
        self.assertIs(decision.security_level, SecurityLevel.L1)
        self.assertIn("毛利", decision.blocked_fields)
        self.assertEqual(decision.denial_message, "毛利涉及核心财务数据，需 Admin 权限")
        self.assertEqual(decision.audit_trail[-1], "DENIED: restricted indicator")

    def test_formula_attempt_denied(self):
        decision = self.interceptor.intercept("算下每个订单的（销售价 - 进货价）之和", self.sales)
        self.assertIsInstance(decision, Denied)
        self.assertTrue(decision.denial_message.startswith(FORMULA_DENIAL_PREFIX))
        self.assertEqual(decision.suggestion, ADMIN_SUGGESTION)
        self.assertIn("毛利", decision.blocked_fields)
        self.assertEqual(decision.audit_trail[-1], "DENIED: formula intent")

    def test_english_formula_attempt_denied(self):
        decision = self.interceptor.intercept("sell price minus cost price for each order", self.sales)
        self.assertIsInstance(decision, Denied)
        self.assertIs(decision.security_level, SecurityLevel.L1)
        self.assertTrue(decision.denial_message.startswith(FORMULA_DENIAL_PREFIX))
        self.assertIn("毛利", decision.blocked_fields)
        self.assertEqual(decision.audit_trail[-1], "DENIED: formula intent")

    def test_english_indicator_denied(self):
        decision = self.interceptor.intercept("show me the margin", self.sales)
        self.assertIsInstance(decision, Denied)
        self.assertEqual(decision.blocked_fields, ("毛利",))
        self.assertEqual(decision.denial_message, "毛利涉及核心财务数据，需 Admin 权限")

    def test_owner_column_probe_denied_at_injection_stage(self):
        decision = self.interceptor.intercept("查询订单并显示用户表的 owner_id", self.sales)
        self.assertIsInstance(decision, Denied)
        self.assertEqual(decision.denial_message, INJECTION_MESSAGE)
        self.assertEqual(_stages(decision), ["RECEIVED", "INJECTION_CHECKED", "DENIED"])
        self.assertEqual(
            decision.audit_trail[1],
            "INJECTION_CHECKED: INJECTION_SUSPECTED rule 'owner_id_probe' (column_probing)",
        )
        self.assertEqual(decision.audit_trail[-1], "DENIED: INJECTION_SUSPECTED")

    def test_mixed_request_partial(self):
        decision = self.interceptor.intercept("查看订单数和毛利", self.sales)
        self.assertIsInstance(decision, AllowedPartial)
        self.assertTrue(decision.allowed)
        self.assertIs(decision.security_level, SecurityLevel.L0)
        self.assertEqual(decision.allowed_fields, ("订单数",))
        self.assertEqual(decision.blocked_fields, ("毛利",))
        self.assertEqual(decision.partial.suggestion, "建议仅查询 订单数 等公开指标")
        self.assertEqual(
            decision.rewritten_query,
            "默认时间范围（近30天）：仅查询用户 s1 名下的数据：查询订单数",
        )
        self.assertNotIn("毛利", decision.rewritten_query)

    def test_partial_keeps_time_scope(self):
        decision = self.interceptor.intercept("本月的订单数和毛利", self.sales)
        self.assertIsInstance(decision, AllowedPartial)
        self.assertEqual(decision.rewritten_query, "仅查询用户 s1 名下的数据：查询本月的订单数")

    def test_admin_sees_everything(self):
        decision = self.interceptor.intercept("分析全国各区域的毛利率和欠款情况", self.admin)
        self.assertIsInstance(decision, AllowedFull)
        self.assertIs(decision.security_level, SecurityLevel.L0)
        self.assertEqual(decision.allowed_fields, ("毛利", "毛利率", "欠款"))
        self.assertIsNone(decision.to_dict()["blocked_fields"])
        self.assertIn("仅查询用户 a1 名下的数据：", decision.rewritten_query)

    def test_public_request_rewritten(self):
        decision = self.interceptor.intercept("查看订单数", self.manager)
        self.assertIsInstance(decision, AllowedFull)
        self.assertEqual(
            decision.rewritten_query,
            "默认时间范围（近30天）：仅查询用户 m1 名下的数据：查看订单数",
        )
        self.assertEqual(
            _stages(decision),
            ["RECEIVED", "INJECTION_CHECKED", "CLASSIFIED", "SCANNED", "DECIDED", "REWRITTEN"],
        )


class TestFailClosed(InterceptorTestCase):

    def test_empty_text(self):
        for text in ["", "   ", None]:
            with self.subTest(text=text):
                decision = self.interceptor.intercept(text, self.sales)
                self.assertIsInstance(decision, Denied)
                self.assertEqual(decision.denial_message, EMPTY_MESSAGE)
                self.assertEqual(_stages(decision), ["RECEIVED", "DENIED"])

    def test_internal_error_becomes_denied(self):
        with mock.patch("security_interceptor.evaluate", side_effect=RuntimeError("boom")):
            with self.assertLogs("security_interceptor", level="ERROR"):
                decision = self.interceptor.intercept("查看订单数", self.admin)
        self.assertIsInstance(decision, Denied)
        self.assertIs(decision.security_level, SecurityLevel.L1)
        self.assertEqual(decision.denial_message, FAULT_MESSAGE)
        self.assertNotIn("boom", decision.denial_message)
        self.assertEqual(decision.audit_trail[-1], "DENIED: EVALUATION_FAULT")

    def test_uses_current_catalog(self):
        self.store.swap(SemanticDictionary.from_dict({
            "indicators": {
                "order_count": {"name": "订单数", "fields": ["order_id"], "level": "L1", "formula": "COUNT(*)"},
            }
        }))
        decision = self.interceptor.intercept("查看订单数", self.sales)
        self.assertIsInstance(decision, Denied)
        self.assertEqual(decision.denial_message, "订单数涉及敏感数据，需 Admin 权限")


class TestGeneratedSQL(InterceptorTestCase):

    def test_rewrite_adds_scope_and_window(self):
        decision = self.interceptor.rewrite_generated_sql("SELECT name FROM orders GROUP BY name", "u1")
        self.assertIsInstance(decision, AllowedFull)
        self.assertEqual(
            decision.rewritten_query,
            "SELECT name FROM orders WHERE owner_id = 'u1' "
            "AND created_at >= date('now', '-30 days') GROUP BY name",
        )
        self.assertEqual(_stages(decision), ["RECEIVED", "REWRITTEN"])

    def test_duplicate_ownership_denied(self):
        decision = self.interceptor.rewrite_generated_sql(
            "SELECT * FROM orders WHERE owner_id = 'u1' AND owner_id = 'u1'", "u1"
        )
        self.assertIsInstance(decision, Denied)
        self.assertEqual(decision.denial_message, FAULT_MESSAGE)
        self.assertEqual(decision.audit_trail[-1], "DENIED: REWRITE_INVARIANT")

    def test_or_tautology_rescoped(self):
        decision = self.interceptor.rewrite_generated_sql(
            "SELECT * FROM orders WHERE owner_id = 'u1' OR 1 = 1", "u1"
        )
        self.assertIsInstance(decision, AllowedFull)
        self.assertTrue(decision.rewritten_query.startswith(
            "SELECT * FROM orders WHERE owner_id = 'u1' AND (owner_id = 'u1' OR 1 = 1)"
        ))

    def test_subquery_predicate_allowed(self):
        sql = "SELECT name FROM (SELECT name, owner_id FROM orders WHERE owner_id = 'u1') t"
        decision = self.interceptor.rewrite_generated_sql(sql, "u1")
        self.assertIsInstance(decision, AllowedFull)
        self.assertEqual(
            decision.rewritten_query,
            f"{sql} WHERE owner_id = 'u1' AND created_at >= date('now', '-30 days')",
        )

    def test_set_operator_denied(self):
        for sql in [
            "SELECT name FROM orders UNION SELECT name FROM orders",
            "SELECT name FROM orders WHERE owner_id = 'u1' UNION ALL SELECT name FROM orders",
        ]:
            with self.subTest(sql=sql):
                decision = self.interceptor.rewrite_generated_sql(sql, "u1")
                self.assertIsInstance(decision, Denied)
                self.assertEqual(decision.denial_message, FAULT_MESSAGE)
                self.assertEqual(decision.audit_trail[-1], "DENIED: REWRITE_INVARIANT")

    def test_multiple_statements_denied(self):
        decision = self.interceptor.rewrite_generated_sql("SELECT 1; DROP TABLE orders", "u1")
        self.assertIsInstance(decision, Denied)
        self.assertEqual(decision.audit_trail[-1], "DENIED: REWRITE_INVARIANT")

    def test_invalid_caller_id_denied(self):
        for caller_id in ["", "u1' OR '1'='1", "u1\n", None]:
            with self.subTest(caller_id=caller_id):
                decision = self.interceptor.rewrite_generated_sql("SELECT name FROM orders", caller_id)
                self.assertIsInstance(decision, Denied)
                self.assertEqual(decision.audit_trail[-1], "DENIED: EVALUATION_FAULT")


class TestProperties(InterceptorTestCase):

    def _restricted_terms(self):
        for indicator in self.store.current.restricted_indicators():
            yield indicator.name
            yield from indicator.synonyms

    def test_no_leak_for_non_admin(self):
        for caller in (self.sales, self.manager):
            for term in self._restricted_terms():
                with self.subTest(role=caller.role, term=term):
                    decision = self.interceptor.intercept(f"查看{term}", caller)
                    self.assertIsInstance(decision, Denied)

    def test_admin_universality(self):
        for term in self._restricted_terms():
            with self.subTest(term=term):
                self.assertIsInstance(self.interceptor.intercept(f"查看{term}", self.admin), AllowedFull)


class TestAuditHelpers(InterceptorTestCase):

    def test_to_dict_shape(self):
        decisions = [
            self.interceptor.intercept("查看毛利", self.sales),
            self.interceptor.intercept("查看订单数", self.sales),
            self.interceptor.intercept("查看订单数和毛利", self.sales),
        ]
        for decision in decisions:
            with self.subTest(decision=type(decision).__name__):
                payload = decision.to_dict()
                self.assertEqual(set(payload), DECISION_KEYS)
                self.assertEqual(payload["allowed"], decision.allowed)
                self.assertIsInstance(payload["audit_trail"], list)

        partial = decisions[2].to_dict()
        self.assertEqual(partial["security_level"], "L0")
        self.assertEqual(partial["partial"]["allowed_query"], "允许查询：订单数")
        self.assertEqual(partial["partial"]["blocked_query"], "已屏蔽：毛利")

    def test_security_log(self):
        lines = self.interceptor.security_log("查看毛利", self.sales)
        self.assertEqual(lines[0], "用户：User_s1")
        self.assertEqual(lines[1], "角色：Sales")
        self.assertEqual(lines[2], "查询：查看毛利")
        self.assertEqual(lines[3], "结果：拒绝（L1）")
        self.assertEqual(lines[4], "拒绝原因：毛利涉及核心财务数据，需 Admin 权限")
        self.assertTrue(any(line.startswith("审计：DECIDED") for line in lines))
        self.assertTrue(lines[-1].startswith("时间："))

    def test_batch_intercept(self):
        decisions = self.interceptor.batch_intercept(["查看毛利", "查看订单数和毛利", ""], self.sales)
        self.assertEqual(
            [type(d) for d in decisions],
            [Denied, AllowedPartial, Denied],
        )


if __name__ == "__main__":
    unittest.main()
