"""
Allow running ssd as a module: python -m ssd
"""

import sys

from ssd.cli import main

if __name__ == "__main__":
    sys.exit(main())
