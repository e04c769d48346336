"""
Source file readers.
"""

from .csv_reader import CSVReader, CsvParseOptions, detect_separator

__all__ = [
    "CSVReader",
    "CsvParseOptions",
    "detect_separator",
]
