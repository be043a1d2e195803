"""Command-line interface for vectorsync."""
