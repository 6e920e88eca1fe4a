"""
Tests for caller identity validation.
"""

import unittest

from caller_context import CallerContext, Role


class TestCallerContext(unittest.TestCase):

    def test_valid_ids(self):
        for caller_id in ["u1", "sales.east-01", "A_B", "x" * 64]:
            with self.subTest(caller_id=caller_id):
                self.assertEqual(CallerContext(role=Role.SALES, caller_id=caller_id).caller_id, caller_id)

    def test_invalid_ids(self):
        for caller_id in ["", "u1\n", "u1 ", "u1' OR '1'='1", "用户1", "x" * 65, None, 7]:
            with self.subTest(caller_id=caller_id):
                with self.assertRaises(ValueError):
                    CallerContext(role=Role.SALES, caller_id=caller_id)

    def test_role_from_string(self):
        caller = CallerContext(role="Manager", caller_id="m1")
        self.assertIs(caller.role, Role.MANAGER)
        self.assertFalse(caller.role.has_l1_access)
        self.assertTrue(CallerContext(role="Admin", caller_id="a1").role.has_l1_access)

    def test_unknown_role(self):
        with self.assertRaises(ValueError):
            CallerContext(role="Root", caller_id="r1")

    def test_display_name(self):
        self.assertEqual(CallerContext(role=Role.SALES, caller_id="s1").display_name, "User_s1")
        self.assertEqual(
            CallerContext(role=Role.SALES, caller_id="s1", username="张三").display_name,
            "张三",
        )


if __name__ == "__main__":
    unittest.main()
