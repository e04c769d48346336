"""
CSV reader using Spark for parsing uploaded exports.
"""

import math
from typing import Any, Optional

from pydantic import BaseModel
from pyspark.sql import SparkSession

from ...core.errors import ParseError
from ...observability.logger import get_logger, log_operation
from ..spark import create_spark_session

logger = get_logger(__name__)

SEPARATORS = (",", ";", "\t", "|")
FALLBACK_SEPARATOR = ","
SAMPLE_LINES = 10
MIN_CONFIDENCE = 0.7
ENCODINGS = ("utf-8-sig", "latin-1")


class CsvParseOptions(BaseModel):
    """
    Attributes:
        separator: Field separator; detected from the content when None
        header: Whether the first line holds column names
        encoding: Force a text encoding instead of trying utf-8 then latin-1
    """

    separator: Optional[str] = None
    header: bool = True
    encoding: Optional[str] = None


def _count_unquoted(line: str, separator: str) -> int:
    count = 0
    quote = None
    i = 0
    while i < len(line):
        char = line[i]
        if quote is None and char in ('"', "'"):
            quote = char
        elif char == quote:
            if i + 1 < len(line) and line[i + 1] == quote:
                i += 1
            else:
                quote = None
        elif quote is None and char == separator:
            count += 1
        i += 1
    return count


def analyze_separators(text: str, sample_lines: int = SAMPLE_LINES) -> dict[str, dict[str, float]]:
    """
    Score each candidate separator over the first lines.

    score = average count per line * consistency * share of lines containing it,
    where consistency is 1 - (stddev / mean) of the non-zero counts.
    """
    lines = [line for line in text.splitlines()[:sample_lines] if line.strip()]
    analysis = {}
    for separator in SEPARATORS:
        counts = [_count_unquoted(line, separator) for line in lines]
        non_zero = [c for c in counts if c > 0]
        consistency = 0.0
        if len(non_zero) > 1:
            mean = sum(non_zero) / len(non_zero)
            std_dev = math.sqrt(sum((c - mean) ** 2 for c in non_zero) / len(non_zero))
            consistency = max(0.0, 1 - std_dev / mean)
        elif len(non_zero) == 1:
            consistency = 1.0
        frequency = sum(counts) / len(lines) if lines else 0.0
        coverage = len(non_zero) / len(lines) if lines else 0.0
        analysis[separator] = {
            "count": sum(counts),
            "consistency": consistency,
            "score": frequency * consistency * coverage,
        }
    return analysis


def detect_separator(data: bytes | str, min_confidence: float = MIN_CONFIDENCE) -> str:
    """Most likely separator of a CSV payload; ',' when no candidate is convincing."""
    text = data if isinstance(data, str) else decode(data)
    analysis = analyze_separators(text)
    scores = sorted((entry["score"] for entry in analysis.values()), reverse=True)
    best = max(SEPARATORS, key=lambda sep: analysis[sep]["score"])

    top, second = scores[0], scores[1]
    confidence = min(1.0, top / max(second * 2, 0.1)) if top > 0 else 0.0
    if confidence < min_confidence:
        return FALLBACK_SEPARATOR
    return best


def decode(data: bytes, encoding: Optional[str] = None) -> str:
    if encoding:
        return data.decode(encoding)
    for candidate in ENCODINGS:
        try:
            return data.decode(candidate)
        except UnicodeDecodeError:
            continue
    # latin-1 decodes any byte sequence, so this is unreachable
    raise ParseError("Failed to parse file: unknown text encoding")


class CSVReader:
    """
    Parses CSV payloads into row dicts using Spark.

    All values are read as strings (no schema inference); type coercion is
    the pipeline validator's job. Empty cells come back as None.
    """

    def __init__(self, spark: Optional[SparkSession] = None, app_name: str = "FeedlotETL"):
        """
        Args:
            spark: Active Spark session; a local one is created on first parse
                (and stopped by close()) when omitted
            app_name: Application name for a session created here
        """
        self._spark = spark
        self._owns_session = False
        self.app_name = app_name

    @property
    def spark(self) -> SparkSession:
        if self._spark is None:
            self._spark = create_spark_session(self.app_name)
            self._owns_session = True
        return self._spark

    def close(self) -> None:
        if self._owns_session and self._spark is not None:
            self._spark.stop()
            self._spark = None
            self._owns_session = False

    def detect_separator(self, data: bytes | str) -> str:
        return detect_separator(data)

    def parse(
        self,
        data: bytes,
        options: CsvParseOptions | dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """
        Parse a CSV payload.

        Args:
            data: Raw file content
            options: Parse options, as a model or a plain dict

        Returns:
            One dict per data row, keyed by header

        Raises:
            ParseError: If the payload is empty or cannot be parsed
        """
        if isinstance(options, dict):
            options = CsvParseOptions(**options)
        options = options or CsvParseOptions()
        try:
            text = decode(data, options.encoding)
        except (UnicodeDecodeError, LookupError) as e:
            raise ParseError(f"Failed to parse file: cannot decode content ({e})") from e

        lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            raise ParseError("Failed to parse file: no content")

        separator = options.separator or detect_separator(text)

        try:
            with log_operation("Spark CSV read", logger=logger, separator=separator, lines=len(lines)):
                df = self.spark.read \
                    .option("header", str(options.header).lower()) \
                    .option("sep", separator) \
                    .option("inferSchema", "false") \
                    .option("mode", "PERMISSIVE") \
                    .csv(self.spark.sparkContext.parallelize(lines))
                rows = [row.asDict() for row in df.collect()]
        except Exception as e:
            raise ParseError(f"Failed to parse file: {e}") from e

        logger.info("CSV parsed", extra={"rows": len(rows), "separator": separator})
        return rows
