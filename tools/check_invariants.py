#!/usr/bin/env python3
"""TrustWork config checks against the shipped config directory."""

import sys
from pathlib import Path

from trustwork.policy.checks import check_config


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"


def check() -> int:
    errors = check_config(CONFIG_DIR)
    if errors:
        print("Invariant check failed:")
        for error in errors:
            print(f"- {error}")
        return 1
    print("Invariant checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(check())
