"""Concrete providers for the ANN capability, checkpoint storage and sources."""
