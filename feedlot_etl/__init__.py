"""
Feedlot ETL orchestration and consistency engine.

Loads organization-scoped feedlot CSV exports into a dimensional fact store
with an explicit file lifecycle, retry/dead-letter handling, referential
integrity resolution and idempotent upserts.
"""

__version__ = "0.1.0"
