"""DuckDB-backed checkpoint storage."""
