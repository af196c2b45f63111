#!/usr/bin/env python3
"""
CLI wrapper for a collection run.

Usage:
    python -m scripts.collect --sources=arxiv,github --max-results=5
    python -m scripts.collect --fail-fast --last-12h
"""

import sys

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/", 2)[0])

from aidigest.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
