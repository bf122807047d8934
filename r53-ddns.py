#!/usr/bin/env python3

"""Run r53-ddns straight from a source checkout.

    ./r53-ddns.py -z Z0123456789 -d home.example.com. --once

Installed copies get the `r53-ddns` console script instead.
"""

import sys
from pathlib import Path

# src/ layout: make r53_ddns importable without installing.
sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from r53_ddns.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
