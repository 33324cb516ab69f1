#!/usr/bin/env python3

"""Checkout wrapper.

The project is packaged under `src/route53_dns`. This wrapper allows running
`./dns-operator.py` from a fresh checkout without installing it first.

Note: This file tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from route53_dns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
