"""CLI entry point for aistudio.cli module.

Enables execution via: python -m aistudio.cli
"""

from aistudio.cli.cleanup import main

if __name__ == "__main__":
    main()
