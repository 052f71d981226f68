"""
Main entry point for running git-vault as a module.

Usage:
    python -m gitvault <command> [options]
"""

from .cli import main
import sys

if __name__ == "__main__":
    sys.exit(main())
