"""CLI entry point for pixelrelay.cli module.

Enables execution via: python -m pixelrelay.cli
"""

from pixelrelay.cli.sweep_tasks import main

if __name__ == "__main__":
    raise SystemExit(main())
