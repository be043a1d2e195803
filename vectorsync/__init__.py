"""vectorsync: keep an ANN vector index in sync with a database table."""

__version__ = "0.1.0"
