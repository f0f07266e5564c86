#!/usr/bin/env python3

"""Run cddns from a source checkout.

The package lives under `src/cddns`; this script puts `src` on sys.path so
`./cddns-cli.py inventory check` works before `pip install`.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from cddns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
