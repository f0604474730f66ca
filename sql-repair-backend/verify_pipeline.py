"""
Pipeline Verification Script
Runs typical broken LLM outputs through the repair chain and prints what changed.
Executes against DATABASE_URL when it is set, otherwise validates only.
"""
import sys

from config import SqlRepairSettings, configure_logging
from query_validator import QueryValidator

SAMPLES = [
    (
        "Dot-fused JOIN chain",
        "```sql\nSELECT od.Quantity, p.ProductName\n"
        "FROM [dbo.Order Details.od.INNER.JOIN.[dbo.Products.p.ON.od.ProductID = p.ProductID]\n```",
    ),
    (
        "Aggregate mixed with bare column",
        "SELECT CustomerID, SUM(Freight) AS TotalFreight FROM Orders",
    ),
    (
        "Outer reference to a table hidden in a derived table",
        "SELECT RegionData.Region, COUNT(*) AS OrderCount\n"
        "FROM (SELECT ShipRegion AS Region FROM Orders) AS RegionData\n"
        "WHERE Orders.ShipRegion IS NOT NULL\n"
        "GROUP BY RegionData.Region",
    ),
    (
        "TOP together with OFFSET/FETCH",
        "SELECT TOP 10 ProductName FROM Products ORDER BY ProductName OFFSET 5 ROWS FETCH NEXT 10 ROWS ONLY",
    ),
    (
        "Prose, backticks and LIMIT",
        "Here is the query you asked for:\nSELECT `ProductName` FROM Products WHERE UnitPrice > 20 LIMIT 5\n"
        "This lists five expensive products.",
    ),
]


def show(description, raw, result):
    print(f"\n{'='*60}")
    print(f"SAMPLE: {description}")
    print(f"{'='*60}")
    print(f"RAW:\n{raw}")
    print("-"*60)
    print(f"VALID: {result.is_valid}")
    print(f"FIXED:\n{result.fixed_query}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    for error in result.errors:
        print(f"  error: {error}")


def main():
    settings = SqlRepairSettings.from_env()
    configure_logging(settings.log_level)

    if not settings.database_url:
        validator = QueryValidator(settings=settings)
        for description, raw in SAMPLES:
            show(description, raw, validator.validate(raw))
        return 0

    from query_pipeline import create_pipeline

    pipeline = create_pipeline(settings)
    for description, raw in SAMPLES:
        show(description, raw, pipeline.validator.validate(raw))
        result = pipeline.run(raw)
        print("-"*60)
        print(f"EXECUTED: success={result.success} rows={result.row_count} attempts={result.attempts}")
        if result.error:
            print(result.error)
    return 0


if __name__ == "__main__":
    sys.exit(main())
