"""Core types, configuration and exceptions for vectorsync."""
