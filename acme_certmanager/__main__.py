#!/usr/bin/env python3
"""
Entry point for running acme_certmanager as a module.
Usage: python -m acme_certmanager
"""

import sys

from acme_certmanager.cli import main

if __name__ == "__main__":
    sys.exit(main())
