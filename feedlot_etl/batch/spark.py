"""
Spark session factory.
"""

from pyspark.sql import SparkSession


def create_spark_session(app_name: str = "FeedlotETL") -> SparkSession:
    """Local Spark session with adaptive query execution."""
    return SparkSession.builder \
        .appName(app_name) \
        .master("local[*]") \
        .config("spark.sql.adaptive.enabled", "true") \
        .config("spark.sql.adaptive.coalescePartitions.enabled", "true") \
        .config("spark.ui.enabled", "false") \
        .getOrCreate()
