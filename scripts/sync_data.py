#!/usr/bin/env python3
"""
CLI wrapper for bucketsync when running from a source checkout.

Usage:
    python scripts/sync_data.py sync data/ s3://my-bucket/data/ --delete --yes
    python scripts/sync_data.py cp s3://my-bucket/raw/big.bin data/ --restart
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.bucketsync.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
