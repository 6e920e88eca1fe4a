"""
Tests for the indicator catalog: loading, validation failures, immutability
and atomic reload. No DB required.
"""

import dataclasses
import json
import os
import tempfile
import unittest

from guard_config import DEFAULT_CATALOG_PATH
from guard_errors import CatalogLoadError, GuardCode
from semantic_catalog import CatalogStore, SecurityLevel, SemanticDictionary, load_catalog


def _write(directory: str, name: str, content: str) -> str:
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def _minimal(version="9.9", level="L1", fields=None):
    return {
        "version": version,
        "indicators": {
            "margin": {
                "name": "毛利",
                "synonyms": ["利润"],
                "fields": fields if fields is not None else ["售价", "进价"],
                "level": level,
                "formula": "售价 - 进价",
            }
        },
    }


class TestLoadDefaultCatalog(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.catalog = load_catalog(DEFAULT_CATALOG_PATH)

    def test_version_and_counts(self):
        self.assertEqual(self.catalog.version, "1.3.0")
        self.assertEqual(len(self.catalog.indicators), 9)
        self.assertEqual(len(self.catalog.restricted_indicators()), 5)

    def test_levels_parsed(self):
        self.assertIs(self.catalog.get("gross_margin").level, SecurityLevel.L1)
        self.assertIs(self.catalog.get("order_count").level, SecurityLevel.L0)
        self.assertTrue(self.catalog.get("outstanding_debt").is_restricted)

    def test_field_index(self):
        keys = [ind.key for ind in self.catalog.indicators_with_field("进货价")]
        self.assertEqual(keys, ["gross_margin", "gross_margin_rate", "purchase_cost"])
        self.assertTrue(self.catalog.is_restricted_field("cost_price"))
        self.assertFalse(self.catalog.is_restricted_field("order_id"))
        self.assertIn("debt_amount", self.catalog.all_fields())

    def test_display_names_follow_catalog_order(self):
        names = self.catalog.display_names(["outstanding_debt", "order_count", "gross_margin"])
        self.assertEqual(names, ["订单数", "毛利", "欠款"])

    def test_denial_messages(self):
        self.assertEqual(
            self.catalog.get("gross_margin").effective_denial_message(),
            "毛利涉及核心财务数据，需 Admin 权限",
        )

    def test_catalog_formula_patterns_loaded(self):
        self.assertIn("回款.*?[-\\+].*?欠款", self.catalog.formula_patterns)

    def test_immutable(self):
        with self.assertRaises(TypeError):
            self.catalog.indicators["x"] = None
        with self.assertRaises(dataclasses.FrozenInstanceError):
            self.catalog.version = "2"
        with self.assertRaises(dataclasses.FrozenInstanceError):
            self.catalog.get("gross_margin").level = SecurityLevel.L0


class TestCatalogLoadFailures(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def _assert_rejected(self, content: str):
        path = _write(self.tmp.name, "catalog.json", content)
        with self.assertRaises(CatalogLoadError) as ctx:
            load_catalog(path)
        self.assertIs(ctx.exception.code, GuardCode.CATALOG_LOAD)

    def test_missing_file(self):
        with self.assertRaises(CatalogLoadError):
            load_catalog(os.path.join(self.tmp.name, "absent.json"))

    def test_invalid_json(self):
        self._assert_rejected("{ not json")

    def test_not_an_object(self):
        self._assert_rejected("[1, 2, 3]")

    def test_duplicate_indicator_key(self):
        self._assert_rejected(
            '{"indicators": {'
            '"m": {"name": "a", "fields": ["x"], "level": "L0", "formula": "x"},'
            '"m": {"name": "b", "fields": ["y"], "level": "L0", "formula": "y"}}}'
        )

    def test_duplicate_nested_attribute(self):
        self._assert_rejected(
            '{"indicators": {"m": {"name": "a", "name": "b", "fields": ["x"], '
            '"level": "L0", "formula": "x"}}}'
        )

    def test_unknown_level(self):
        self._assert_rejected(json.dumps(_minimal(level="L2")))

    def test_empty_field_list(self):
        self._assert_rejected(json.dumps(_minimal(fields=[])))

    def test_missing_required_attribute(self):
        raw = _minimal()
        del raw["indicators"]["margin"]["formula"]
        self._assert_rejected(json.dumps(raw))

    def test_no_indicators(self):
        self._assert_rejected('{"version": "1", "indicators": {}}')

    def test_invalid_formula_pattern(self):
        raw = _minimal()
        raw["rules"] = {"formula_patterns": ["(unclosed"]}
        self._assert_rejected(json.dumps(raw))

    def test_from_dict_rejects_schema_violation(self):
        with self.assertRaises(CatalogLoadError):
            SemanticDictionary.from_dict({"indicators": {"m": {"name": "a"}}})


class TestCatalogStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.path = _write(self.tmp.name, "catalog.json", json.dumps(_minimal(version="1")))
        self.store = CatalogStore.from_path(self.path)

    def test_reload_swaps_reference(self):
        before = self.store.current
        _write(self.tmp.name, "catalog.json", json.dumps(_minimal(version="2")))
        fresh = self.store.reload()
        self.assertEqual(fresh.version, "2")
        self.assertIs(self.store.current, fresh)
        # Earlier snapshot is untouched
        self.assertEqual(before.version, "1")

    def test_failed_reload_keeps_previous(self):
        bad = _write(self.tmp.name, "bad.json", "{ broken")
        with self.assertRaises(CatalogLoadError):
            self.store.reload(bad)
        self.assertEqual(self.store.current.version, "1")
        self.assertEqual(str(self.store.source_path), self.path)

    def test_swap_returns_previous(self):
        replacement = SemanticDictionary.from_dict(_minimal(version="3"))
        previous = self.store.swap(replacement)
        self.assertEqual(previous.version, "1")
        self.assertEqual(self.store.current.version, "3")

    def test_reload_without_path(self):
        store = CatalogStore(SemanticDictionary.from_dict(_minimal()))
        with self.assertRaises(CatalogLoadError):
            store.reload()


if __name__ == "__main__":
    unittest.main()
