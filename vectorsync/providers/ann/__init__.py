"""ANN capability adapters."""
