"""Module entry to expose `python -m sxrefine` CLI.

Delegates to `sxrefine.cli.main`.
"""

import sys

from .cli import main

if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
