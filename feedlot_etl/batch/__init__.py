"""
Spark batch parsing.
"""

from .readers import CSVReader, CsvParseOptions
from .spark import create_spark_session

__all__ = [
    "CSVReader",
    "CsvParseOptions",
    "create_spark_session",
]
