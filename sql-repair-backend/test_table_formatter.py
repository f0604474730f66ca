"""
Tests for table name formatting (no DB required).
"""

import unittest

from table_formatter import format_table_name, format_table_names_in_query, split_table_name


class TestFormatTableName(unittest.TestCase):

    def test_split_table_name(self):
        self.assertEqual(split_table_name("[dbo].[Order Details]"), ["dbo", "Order Details"])
        self.assertEqual(split_table_name("Sales.Customer"), ["Sales", "Customer"])

    def test_table_always_bracketed(self):
        self.assertEqual(format_table_name("Orders"), "[Orders]")

    def test_plain_schema_left_bare(self):
        self.assertEqual(format_table_name("dbo.Order Details"), "dbo.[Order Details]")
        self.assertEqual(format_table_name("[dbo].[Products]"), "dbo.[Products]")

    def test_schema_with_space_bracketed(self):
        self.assertEqual(format_table_name("[Sales Data].Orders"), "[Sales Data].[Orders]")


class TestFormatTableNamesInQuery(unittest.TestCase):

    def test_from_and_join_formatted(self):
        sql = "SELECT * FROM dbo.Products p JOIN Orders o ON p.ID = o.ProductID"
        self.assertEqual(
            format_table_names_in_query(sql),
            "SELECT * FROM dbo.[Products] p JOIN [Orders] o ON p.ID = o.ProductID",
        )

    def test_function_call_untouched(self):
        sql = "SELECT * FROM dbo.fn_Orders(1) f"
        self.assertEqual(format_table_names_in_query(sql), sql)

    def test_literal_untouched(self):
        sql = "SELECT * FROM [Orders] WHERE note = 'FROM Orders'"
        self.assertEqual(format_table_names_in_query(sql), sql)

    def test_fully_bracketed_chain_output_canonicalised(self):
        sql = "FROM [dbo].[Order Details] od INNER JOIN [dbo].[Products] p ON od.ProductID = p.ProductID"
        self.assertEqual(
            format_table_names_in_query(sql),
            "FROM dbo.[Order Details] od INNER JOIN dbo.[Products] p ON od.ProductID = p.ProductID",
        )

    def test_idempotent(self):
        once = format_table_names_in_query("SELECT * FROM dbo.Products")
        self.assertEqual(format_table_names_in_query(once), once)


if __name__ == "__main__":
    unittest.main()
