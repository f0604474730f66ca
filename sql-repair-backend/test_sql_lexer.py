"""
Tests for the literal-aware, depth-aware SQL helpers (no DB required).
"""

import unittest

from sql_lexer import (
    blank_nested,
    enclosing_scope_end,
    enclosing_scope_start,
    extract_balanced,
    find_matching_paren,
    find_subquery_spans,
    is_keyword,
    is_placeholder,
    mask_literals,
    rewrite_masked,
    split_top_level,
    strip_brackets,
    unmask_literals,
)


class TestMaskLiterals(unittest.TestCase):

    # --- Masking ---

    def test_string_and_line_comment_masked(self):
        masked, saved = mask_literals("SELECT 'a' -- note\nFROM t")
        self.assertEqual(masked, "SELECT __STRL0000__ __CMNT0001__\nFROM t")
        self.assertEqual(saved, ["'a'", "-- note"])

    def test_unicode_prefix_is_part_of_literal(self):
        masked, saved = mask_literals("WHERE x = N'Café'")
        self.assertEqual(masked, "WHERE x = __STRL0000__")
        self.assertEqual(saved, ["N'Café'"])

    def test_doubled_quote_stays_inside_literal(self):
        masked, saved = mask_literals("WHERE name = 'O''Brien' AND y = 1")
        self.assertEqual(masked, "WHERE name = __STRL0000__ AND y = 1")
        self.assertEqual(saved, ["'O''Brien'"])

    def test_block_comment_masked(self):
        masked, saved = mask_literals("SELECT /* (SELECT x) */ 1")
        self.assertEqual(masked, "SELECT __CMNT0000__ 1")

    def test_quote_inside_brackets_is_not_a_literal(self):
        sql = "SELECT * FROM [Customer's Orders]"
        masked, saved = mask_literals(sql)
        self.assertEqual(masked, sql)
        self.assertEqual(saved, [])

    def test_unmask_restores_original(self):
        sql = "SELECT 'x' AS a, N'y' AS b -- trailing\nFROM t /* done */"
        masked, saved = mask_literals(sql)
        self.assertEqual(unmask_literals(masked, saved), sql)

    def test_rewrite_masked_leaves_literals_alone(self):
        sql = "SELECT 'select' FROM t"
        result = rewrite_masked(sql, lambda text: text.replace("SELECT", "SELECT TOP 1"))
        self.assertEqual(result, "SELECT TOP 1 'select' FROM t")

    def test_placeholder_detection(self):
        self.assertTrue(is_placeholder("__STRL0003__"))
        self.assertTrue(is_placeholder(" __CMNT0000__ "))
        self.assertFalse(is_placeholder("Orders"))


class TestBalancedExtraction(unittest.TestCase):

    def test_stops_at_matching_close(self):
        self.assertEqual(extract_balanced("a, (b), ')' ) rest"), "a, (b), ')' ")

    def test_unbalanced_returns_remainder(self):
        self.assertEqual(extract_balanced("a (b"), "a (b")

    def test_square_brackets(self):
        self.assertEqual(extract_balanced("Order [x]] rest", "[", "]"), "Order [x]")

    def test_paren_inside_comment_ignored(self):
        self.assertEqual(extract_balanced("x -- )\n) tail"), "x -- )\n")

    def test_find_matching_paren(self):
        self.assertEqual(find_matching_paren("SUM(a) + (b)", 3), 5)
        self.assertIsNone(find_matching_paren("SUM(a", 3))


class TestDepthViews(unittest.TestCase):

    def test_blank_nested_keeps_length_and_outer_parens(self):
        text = "SELECT a, SUM(b) FROM t"
        view = blank_nested(text)
        self.assertEqual(view, "SELECT a, SUM( ) FROM t")
        self.assertEqual(len(view), len(text))

    def test_blank_nested_hides_subquery_keywords(self):
        view = blank_nested("SELECT * FROM (SELECT x FROM y ORDER BY x) d")
        self.assertNotIn("ORDER", view)
        self.assertEqual(view.count("SELECT"), 1)

    def test_split_top_level(self):
        self.assertEqual(
            split_top_level("a, SUM(b, c), 'x,y'"),
            ["a", "SUM(b, c)", "'x,y'"],
        )

    def test_find_subquery_spans_nested(self):
        text = "SELECT * FROM (SELECT x FROM (SELECT 1 AS x) i) o"
        spans = find_subquery_spans(text)
        self.assertEqual(len(spans), 2)
        self.assertEqual(spans[0][0], text.index("(SELECT x"))
        self.assertEqual(text[spans[1][0]:spans[1][1] + 1], "(SELECT 1 AS x)")

    def test_enclosing_scope(self):
        text = "SELECT (a + b) FROM t"
        self.assertEqual(enclosing_scope_start(text, 8), 7)
        self.assertEqual(enclosing_scope_end(text, 8), 13)
        self.assertEqual(enclosing_scope_start(text, 0), -1)
        self.assertEqual(enclosing_scope_end(text, 0), len(text))


class TestIdentifiers(unittest.TestCase):

    def test_strip_brackets(self):
        self.assertEqual(strip_brackets("[Order Details]"), "Order Details")
        self.assertEqual(strip_brackets('"Orders"'), "Orders")
        self.assertEqual(strip_brackets("Orders"), "Orders")

    def test_is_keyword(self):
        self.assertTrue(is_keyword("select"))
        self.assertFalse(is_keyword("Orders"))


if __name__ == "__main__":
    unittest.main()
