"""Main entry point for ``python -m changerelay``."""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
