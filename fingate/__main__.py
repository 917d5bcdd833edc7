"""fingate CLI entry point: python -m fingate"""

from __future__ import annotations

import sys

from fingate.cli import main

if __name__ == "__main__":
    sys.exit(main())
