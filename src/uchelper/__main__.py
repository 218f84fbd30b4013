"""
Entry point for running uchelper as a module.

Usage:
    python -m uchelper [command] [options]
"""

from uchelper.cli import main

if __name__ == "__main__":
    main()
