"""Allow ``python -m kol_wager_engine``."""

import sys

from kol_wager_engine.cli import main

if __name__ == "__main__":
    sys.exit(main())
