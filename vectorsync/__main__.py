"""Entry point for running vectorsync as a module: python -m vectorsync.

This enables:
    python -m vectorsync [command] [args]
    python -m vectorsync checkpoints list --index items_embedding_idx
"""

import sys

from vectorsync.api.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
