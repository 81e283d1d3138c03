"""Runtime environment detection for dev vs frozen (bundled) mode."""

import sys


def is_bundled() -> bool:
    """Return True when running from a frozen executable bundle."""
    return getattr(sys, "frozen", False)
