"""
Tests for the validation chain (no DB required).
"""

import unittest

from config import SqlRepairSettings
from database import TableRef
from query_validator import (
    EMPTY_QUERY_ERROR,
    JOIN_WITHOUT_ON_WARNING,
    LIMIT_WARNING,
    MISSING_WHERE_WARNING,
    NESTED_AGGREGATE_WARNING,
    PERCENTILE_WARNING,
    QueryValidator,
    has_nested_aggregate,
    remove_order_by_before_set_operator,
    replace_percentile_window,
    validate_and_clean_query,
)
from sql_error_handler import SqlValidationError


class FakeSchemaProvider:
    def __init__(self, tables=None, error=None):
        self.tables = tables or []
        self.error = error

    def get_all_tables(self):
        if self.error:
            raise self.error
        return self.tables


class TestCleaningSteps(unittest.TestCase):

    def test_order_by_before_union_removed(self):
        sql = "SELECT Name FROM A ORDER BY Name UNION ALL SELECT Name FROM B ORDER BY Name"
        result = remove_order_by_before_set_operator(sql)
        self.assertEqual(result.fixed_query, "SELECT Name FROM A\nUNION ALL SELECT Name FROM B ORDER BY Name")
        self.assertEqual(result.warnings, ["Removed ORDER BY clause before UNION ALL (not allowed in SQL Server)"])

    def test_order_by_in_subquery_branch_kept(self):
        sql = "SELECT a FROM (SELECT TOP 5 a FROM t ORDER BY a) x UNION SELECT a FROM u"
        self.assertFalse(remove_order_by_before_set_operator(sql).changed)

    def test_percentile_replaced_under_group_by(self):
        sql = (
            "SELECT Region, PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY Freight) "
            "OVER (PARTITION BY Region) AS Median FROM Orders GROUP BY Region"
        )
        result = replace_percentile_window(sql)
        self.assertEqual(
            result.fixed_query,
            "SELECT Region, AVG(CAST(Freight AS FLOAT)) AS Median FROM Orders GROUP BY Region",
        )
        self.assertEqual(result.warnings, [PERCENTILE_WARNING])

    def test_percentile_without_group_by_kept(self):
        sql = (
            "SELECT Region, PERCENTILE_CONT(0.5) WITHIN GROUP (ORDER BY Freight) "
            "OVER (PARTITION BY Region) AS Median FROM Orders"
        )
        self.assertFalse(replace_percentile_window(sql).changed)

    def test_nested_aggregate_detection(self):
        self.assertTrue(has_nested_aggregate("SELECT AVG(SUM(x)) FROM t GROUP BY a"))
        self.assertTrue(has_nested_aggregate("SELECT MAX((SELECT COUNT(*) FROM y)) FROM t"))
        self.assertFalse(has_nested_aggregate("SELECT SUM(SUM(x)) OVER () FROM t GROUP BY a"))
        self.assertFalse(has_nested_aggregate("SELECT SUM(x) FROM t WHERE note = 'SUM(COUNT(y))'"))

    def test_validate_and_clean_query(self):
        result = validate_and_clean_query("```sql\nSELECT AVG(SUM(x)) FROM t GROUP BY a\n```")
        self.assertEqual(result.fixed_query, "SELECT AVG(SUM(x)) FROM t GROUP BY a")
        self.assertEqual(result.warnings, [NESTED_AGGREGATE_WARNING])

    def test_validate_and_clean_query_rejects_bad_input(self):
        with self.assertRaises(SqlValidationError):
            validate_and_clean_query("   ")
        with self.assertRaises(SqlValidationError):
            validate_and_clean_query(None)

    def test_unextractable_output_gives_empty_query(self):
        self.assertEqual(validate_and_clean_query("Hello there, how are you today?").fixed_query, "")


class TestQueryValidator(unittest.TestCase):

    # --- Repairs ---

    def test_mixed_aggregate_restructured(self):
        result = QueryValidator().validate("SELECT CustomerID, SUM(Amount) FROM Orders")
        self.assertTrue(result.is_valid)
        self.assertTrue(result.fixed_query.startswith("WITH SourceData AS ("))
        self.assertEqual(result.warnings, [
            "Restructured mixed aggregate query into SourceData/AggregatedData CTEs",
            MISSING_WHERE_WARNING,
        ])

    def test_group_by_when_cte_disabled(self):
        validator = QueryValidator(settings=SqlRepairSettings(use_cte_restructuring=False))
        result = validator.validate("SELECT CustomerID, SUM(Amount) FROM Orders WHERE Amount > 0")
        self.assertEqual(
            result.fixed_query,
            "SELECT CustomerID, SUM(Amount) FROM Orders WHERE Amount > 0 GROUP BY CustomerID",
        )

    def test_scope_reference_fixed(self):
        sql = (
            "SELECT RegionData.Region FROM (SELECT ShipRegion AS Region, ShipRegion FROM Orders) AS RegionData "
            "WHERE Orders.ShipRegion = 'WA'"
        )
        result = QueryValidator().validate(sql)
        self.assertIn("WHERE RegionData.ShipRegion = 'WA'", result.fixed_query)
        self.assertIn(
            "Fixed table reference in WHERE clause: Orders.ShipRegion -> RegionData.ShipRegion",
            result.warnings,
        )

    def test_clean_query_unchanged(self):
        sql = "SELECT OrderID FROM Orders WHERE Freight > 10"
        result = QueryValidator().validate(sql)
        self.assertTrue(result.is_valid)
        self.assertEqual(result.fixed_query, sql)
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.errors, [])

    def test_clause_keyword_column_names_survive(self):
        sql = "SELECT e.[Join Date], e.Name FROM Employees e WHERE e.[Join Date] > '2020-01-01'"
        result = QueryValidator().validate(sql)
        self.assertEqual(result.fixed_query, sql)
        self.assertNotIn(JOIN_WITHOUT_ON_WARNING, result.warnings)
        self.assertNotIn("Repaired malformed JOIN syntax", result.warnings)

    def test_title_case_where_clause_survives(self):
        sql = "SELECT Name\nFROM Customers\nWhere Country Is Not Null"
        result = QueryValidator().validate(sql)
        self.assertEqual(result.fixed_query, sql)
        self.assertNotIn(MISSING_WHERE_WARNING, result.warnings)

    def test_limit_warning(self):
        result = QueryValidator().validate("SELECT Name FROM Products WHERE Price > 1 LIMIT 5")
        self.assertIn(LIMIT_WARNING, result.warnings)

    # --- Schema ---

    def test_unknown_table_warned(self):
        provider = FakeSchemaProvider([TableRef("dbo", "Orders")])
        sql = (
            "SELECT o.OrderID, c.Name FROM Orders o "
            "JOIN Customers c ON o.CustomerID = c.CustomerID WHERE o.Freight > 1"
        )
        result = QueryValidator(schema_provider=provider).validate(sql)
        self.assertTrue(result.is_valid)
        self.assertEqual(result.warnings, ["Table 'dbo.Customers' may not exist in the database schema"])

    def test_qualified_table_checked_against_schema(self):
        provider = FakeSchemaProvider([TableRef("dbo", "Orders")])
        result = QueryValidator(schema_provider=provider).validate("SELECT 1 FROM Sales.Orders WHERE 1 = 1")
        self.assertIn("Table 'Sales.Orders' may not exist in the database schema", result.warnings)

    def test_cte_name_not_treated_as_table(self):
        provider = FakeSchemaProvider([TableRef("dbo", "Orders")])
        sql = (
            "WITH Recent AS (SELECT OrderID FROM Orders WHERE Freight > 1) "
            "SELECT OrderID FROM Recent WHERE OrderID > 5"
        )
        result = QueryValidator(schema_provider=provider).validate(sql)
        self.assertEqual(result.warnings, [])

    def test_schema_lookup_failure_is_not_fatal(self):
        provider = FakeSchemaProvider(error=RuntimeError("connection refused"))
        result = QueryValidator(schema_provider=provider).validate("SELECT OrderID FROM Orders WHERE 1 = 1")
        self.assertTrue(result.is_valid)
        self.assertEqual(result.warnings, [])

    # --- Rejections ---

    def test_empty_input(self):
        result = QueryValidator().validate("")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [EMPTY_QUERY_ERROR])

    def test_prose_only_input(self):
        result = QueryValidator().verify("I could not write a query for that request.")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, [EMPTY_QUERY_ERROR])

    def test_non_string_input(self):
        result = QueryValidator().validate(None)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors, ["Invalid SQL query: expected a string, got NoneType"])

    def test_to_dict(self):
        payload = QueryValidator().validate("").to_dict()
        self.assertEqual(payload["is_valid"], False)
        self.assertIsNone(payload["fixed_query"])


if __name__ == "__main__":
    unittest.main()
