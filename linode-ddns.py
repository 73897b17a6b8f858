#!/usr/bin/env python3

"""Run linode-ddns from a source checkout.

The package lives under `src/linode_ddns`; this lets `./linode-ddns.py` be
dropped into a crontab without installing it first.

Note: This file tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from linode_ddns.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
