"""
Tests for SQL Server dialect fixes (no DB required).
"""

import unittest

from syntax_fixer import fix_sql_server_syntax_issues, fix_top_offset_conflict, validate_and_fix_sql_query


class TestTopOffsetConflict(unittest.TestCase):

    def test_top_removed_offset_kept(self):
        sql = "SELECT TOP 10 * FROM T ORDER BY X OFFSET 5 ROWS FETCH NEXT 10 ROWS ONLY"
        result = fix_top_offset_conflict(sql)
        self.assertEqual(result.fixed_query, "SELECT * FROM T ORDER BY X OFFSET 5 ROWS FETCH NEXT 10 ROWS ONLY")
        self.assertEqual(result.warnings, ["Removed TOP clause that conflicts with OFFSET/FETCH"])

    def test_top_with_ties_removed(self):
        sql = "SELECT TOP (5) WITH TIES Name FROM T ORDER BY Name OFFSET 0 ROWS"
        result = fix_top_offset_conflict(sql)
        self.assertEqual(result.fixed_query, "SELECT Name FROM T ORDER BY Name OFFSET 0 ROWS")

    def test_top_without_offset_kept(self):
        sql = "SELECT TOP 10 * FROM T ORDER BY X"
        result = fix_top_offset_conflict(sql)
        self.assertEqual(result.fixed_query, sql)
        self.assertFalse(result.changed)

    def test_offset_in_subquery_does_not_touch_outer_top(self):
        sql = "SELECT TOP 3 * FROM (SELECT x FROM T ORDER BY x OFFSET 1 ROWS) d"
        self.assertEqual(fix_top_offset_conflict(sql).fixed_query, sql)


class TestSqlServerSyntax(unittest.TestCase):

    # --- ORDER BY in subquery ---

    def test_subquery_order_by_gets_top(self):
        sql = "SELECT * FROM (SELECT Name FROM Products ORDER BY Name) p"
        result = fix_sql_server_syntax_issues(sql)
        self.assertEqual(result.fixed_query, "SELECT * FROM (SELECT TOP 100 Name FROM Products ORDER BY Name) p")
        self.assertEqual(
            result.warnings,
            ["Added TOP 100 to subquery with ORDER BY (TOP, OFFSET or FOR XML is required)"],
        )

    def test_subquery_with_for_xml_untouched(self):
        sql = "SELECT (SELECT Name FROM Products ORDER BY Name FOR XML PATH('')) AS Names"
        self.assertEqual(fix_sql_server_syntax_issues(sql).fixed_query, sql)

    # --- DISTINCT + ORDER BY ---

    def test_distinct_order_by_gets_top(self):
        sql = "SELECT DISTINCT Name FROM Products ORDER BY Name"
        result = fix_sql_server_syntax_issues(sql)
        self.assertEqual(result.fixed_query, "SELECT DISTINCT TOP 100 Name FROM Products ORDER BY Name")

    # --- FETCH normalisation ---

    def test_fetch_first_normalized(self):
        sql = "SELECT Name FROM Products ORDER BY Name OFFSET 0 ROW FETCH FIRST 5 ROWS ONLY"
        result = fix_sql_server_syntax_issues(sql)
        self.assertEqual(
            result.fixed_query,
            "SELECT Name FROM Products ORDER BY Name OFFSET 0 ROWS FETCH NEXT 5 ROWS ONLY",
        )
        self.assertEqual(result.warnings, ["Normalized OFFSET/FETCH syntax"])

    # --- Safety ---

    def test_literal_untouched(self):
        sql = "SELECT Name FROM Products WHERE Note = '(SELECT x FROM y ORDER BY x)'"
        result = fix_sql_server_syntax_issues(sql)
        self.assertEqual(result.fixed_query, sql)
        self.assertEqual(result.warnings, [])

    def test_union_level_skipped(self):
        sql = "SELECT * FROM (SELECT a FROM t UNION SELECT a FROM u ORDER BY a) x"
        self.assertEqual(fix_sql_server_syntax_issues(sql).fixed_query, sql)

    def test_idempotent(self):
        sql = "SELECT DISTINCT * FROM (SELECT Name FROM Products ORDER BY Name) p ORDER BY Name"
        once = fix_sql_server_syntax_issues(sql).fixed_query
        self.assertEqual(fix_sql_server_syntax_issues(once).fixed_query, once)

    def test_empty_query_invalid(self):
        result = validate_and_fix_sql_query("   ")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.warnings, ["Empty SQL query"])


if __name__ == "__main__":
    unittest.main()
