"""
Shared test helpers: a plain CSV parser and builders for the two export formats.
"""
import csv
import io
from datetime import date, timedelta
from typing import Any


class DictCsvParser:
    """
    Minimal CSV parser for unit tests.

    Mirrors the Spark reader's output: one dict per row, all values strings,
    empty cells as None.
    """

    def __init__(self, separator: str = ","):
        self.separator = separator
        self.calls = 0

    def parse(self, data: bytes, options: Any = None) -> list[dict[str, Any]]:
        self.calls += 1
        separator = (options or {}).get("separator") or self.separator
        reader = csv.DictReader(io.StringIO(data.decode("utf-8")), delimiter=separator)
        return [{k: (v if v != "" else None) for k, v in row.items()} for row in reader]


def recent_day(days_ago: int = 2) -> str:
    return (date.today() - timedelta(days=days_ago)).isoformat()


def _csv(header: str, rows: list[tuple], separator: str = ",") -> bytes:
    lines = [header.replace(",", separator)]
    for row in rows:
        lines.append(separator.join("" if v is None else str(v) for v in row))
    return ("\n".join(lines) + "\n").encode("utf-8")


def feed_deviation_csv(rows: list[tuple], separator: str = ",") -> bytes:
    """Build a feed deviation export from (date, equipment, curral, shift, dieta, planned, actual) tuples."""
    return _csv("data,equipamento,curral,turno,dieta,kg_planejado,kg_real", rows, separator)


def feeding_treatment_csv(rows: list[tuple], separator: str = ",") -> bytes:
    """Build a feeding treatment export from (date, time, shift, curral, trateiro, dieta, type, kg) tuples."""
    return _csv("data,hora,turno,curral,trateiro,dieta,tipo_trato,quantidade_kg", rows, separator)
