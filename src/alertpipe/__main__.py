"""Allow ``python -m alertpipe``."""

import sys

from alertpipe.cli import main

if __name__ == "__main__":
    sys.exit(main())
