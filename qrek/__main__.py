"""Allow ``python -m qrek``."""

import sys

from qrek.server import main


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
