"""External surfaces of vectorsync."""
