"""Step-batched vector aggregation operators, result ordering and query result assembly."""

__version__ = "0.1.0"

__all__ = [
    "accumulator",
    "tables",
    "countvalues",
    "hashaggregate",
    "khashaggregate",
    "sort",
    "explain",
    "remote",
    "engine",
]