#!/usr/bin/env python3
"""Entry point for busloc_hub package."""

import sys

from .cli import main


if __name__ == "__main__":
    sys.exit(main())
