"""
Tests for the validation and execution pipeline.

Most cases use a fake executor; the last class runs end to end against an
in-memory SQLite database.
"""

import unittest

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import SqlRepairSettings
from database import DatabaseManager
from query_pipeline import SqlRepairPipeline, create_pipeline
from query_validator import EMPTY_QUERY_ERROR

GROUP_BY_MESSAGE = (
    "Column 'Orders.CustomerID' is invalid in the select list because it is not contained "
    "in either an aggregate function or the GROUP BY clause."
)


class FakeExecutor:
    def __init__(self, error_for=None, rows=None):
        self.error_for = error_for or (lambda sql: None)
        self.rows = rows if rows is not None else [{"Name": "Chai"}, {"Name": "Chang"}]
        self.executed = []

    def __call__(self, sql):
        self.executed.append(sql)
        message = self.error_for(sql)
        if message:
            raise Exception(message)
        return self.rows


class TestSqlRepairPipeline(unittest.TestCase):

    def test_success(self):
        executor = FakeExecutor()
        result = SqlRepairPipeline(executor).run("```sql\nSELECT Name FROM Products WHERE Price > 1\n```")
        self.assertTrue(result.success)
        self.assertEqual(result.sql_query, "SELECT Name FROM Products WHERE Price > 1")
        self.assertEqual(result.row_count, 2)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.warnings, [])
        self.assertIsNone(result.error)

    def test_validation_failure_skips_execution(self):
        executor = FakeExecutor()
        result = SqlRepairPipeline(executor).run("")
        self.assertFalse(result.success)
        self.assertEqual(result.error, EMPTY_QUERY_ERROR)
        self.assertEqual(executor.executed, [])

    def test_retry_fix_warnings_returned(self):
        settings = SqlRepairSettings(auto_fix_group_by=False, use_cte_restructuring=False)
        executor = FakeExecutor(lambda sql: None if "GROUP BY" in sql else GROUP_BY_MESSAGE)
        result = SqlRepairPipeline(executor, settings=settings).run(
            "SELECT CustomerID, SUM(Amount) FROM Orders WHERE Amount > 0"
        )
        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(result.sql_query, "SELECT CustomerID, SUM(Amount) FROM Orders WHERE Amount > 0 GROUP BY CustomerID")
        self.assertEqual(result.warnings, ["Added missing GROUP BY clause: GROUP BY CustomerID"])

    def test_failure_message_suggests_tables(self):
        executor = FakeExecutor(lambda sql: "Invalid object name 'dbo.Product'.")
        pipeline = SqlRepairPipeline(executor, table_names_fn=lambda: ["dbo.Products", "dbo.Orders"])
        result = pipeline.run("SELECT Name FROM dbo.Product WHERE Price > 1")
        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 1)
        self.assertIn("Did you mean one of these tables?\n- dbo.Products", result.error)

    def test_failure_when_table_listing_breaks(self):
        def broken():
            raise RuntimeError("connection lost")

        executor = FakeExecutor(lambda sql: "Invalid object name 'dbo.Product'.")
        result = SqlRepairPipeline(executor, table_names_fn=broken).run("SELECT Name FROM dbo.Product WHERE 1 = 1")
        self.assertFalse(result.success)
        self.assertIn("Check the table name and try again.", result.error)

    def test_to_dict(self):
        payload = SqlRepairPipeline(FakeExecutor()).run("SELECT Name FROM Products WHERE 1 = 1").to_dict()
        self.assertEqual(payload["row_count"], 2)
        self.assertTrue(payload["success"])
        self.assertIn("execution_time", payload)


class TestPipelineWithSqlite(unittest.TestCase):

    def setUp(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        with engine.begin() as conn:
            conn.exec_driver_sql("CREATE TABLE Products (ProductID INTEGER PRIMARY KEY, Name TEXT, Price REAL)")
            conn.exec_driver_sql("INSERT INTO Products VALUES (1, 'Chai', 18.0), (2, 'Chang', 19.0)")
        self.database = DatabaseManager(engine=engine, default_schema="main")
        self.pipeline = create_pipeline(SqlRepairSettings(default_schema="main"), database=self.database)

    def tearDown(self):
        self.database.dispose()

    def test_end_to_end(self):
        raw = "Here is the query:\n```sql\nSELECT `Name` FROM Products WHERE Price > 18.5;\n```"
        result = self.pipeline.run(raw)
        self.assertTrue(result.success, result.error)
        self.assertEqual(result.data, [{"Name": "Chang"}])
        self.assertEqual(result.warnings, [])

    def test_unknown_table_reported(self):
        result = self.pipeline.run("SELECT Name FROM Product WHERE Price > 1")
        self.assertFalse(result.success)
        self.assertIn("Table 'main.Product' may not exist in the database schema", result.warnings)
        self.assertTrue(result.error.startswith("SQL Error:"))


if __name__ == "__main__":
    unittest.main()
