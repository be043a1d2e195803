"""Reference change stream and row scan sources."""
