"""Environment variables, staging naming, retry budget and read chunking constants."""

import os

from dotenv import load_dotenv

# Load .env from PUSH_ENV_FILE (defaults to ./.env)
load_dotenv(os.getenv("PUSH_ENV_FILE", ".env"))

# --- Database Connection Vars ---
SQL_SERVER_HOST = os.getenv("SQL_SERVER_HOST", "")
SQL_SERVER_PORT = int(os.getenv("SQL_SERVER_PORT", "1433"))
SQL_SERVER_USER = os.getenv("SQL_SERVER_USER", "")
SQL_SERVER_PASSWORD = os.getenv("SQL_SERVER_PASSWORD", "")

# Destination database for pushes and incremental reads
TARGET_DB = os.getenv("TARGET_DB", "master")

# Schema used when a resource path carries only a table name
DEFAULT_SCHEMA = os.getenv("DEFAULT_SCHEMA", "dbo")

# --- ODBC Driver ---
ODBC_DRIVER = os.getenv("ODBC_DRIVER", "ODBC Driver 18 for SQL Server")

# ---------------------------------------------------------------------------
# Staging tables
# ---------------------------------------------------------------------------
# Staging table for destination <name> is <STAGING_PREFIX><name> in the same
# schema. schema/staging_cleanup.py relies on this prefix to find orphans left
# behind by killed processes.
STAGING_PREFIX = os.getenv("STAGING_PREFIX", "precog_temp_")

# Orphan cleanup only drops staging tables created at least this many hours
# ago. Younger ones may belong to a push still running on another destination.
STAGING_ORPHAN_MIN_AGE_HOURS = int(os.getenv("STAGING_ORPHAN_MIN_AGE_HOURS", "24"))

# Secondary indexes created on staging/destination tables for the id or
# filter column are named <INDEX_PREFIX><name>.
INDEX_PREFIX = os.getenv("INDEX_PREFIX", "precog_idx_")

# ---------------------------------------------------------------------------
# Retry budget for ingest and commit-time reconciliation
# ---------------------------------------------------------------------------
# Staging setup/teardown never retries. Ingest and reconciliation retry with
# exponential backoff until RETRY_MAX_DURATION_SECONDS has elapsed.
RETRY_MAX_DURATION_SECONDS = float(os.getenv("RETRY_MAX_DURATION_SECONDS", "600"))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0"))
RETRY_MAX_DELAY_SECONDS = float(os.getenv("RETRY_MAX_DELAY_SECONDS", "30.0"))

# --- Read path ---
# Rows per DataFrame chunk handed back to the platform from incremental reads.
RESULT_CHUNK_SIZE = int(os.getenv("RESULT_CHUNK_SIZE", "4096"))

# --- Write path ---
# Rows per RowBatch when the CLI slices an input file.
INGEST_BATCH_SIZE = int(os.getenv("INGEST_BATCH_SIZE", "4096"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
# Database holding ops.PushLog. Empty disables the SQL Server log handler.
LOG_DB = os.getenv("LOG_DB", "")
