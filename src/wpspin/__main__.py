"""wp-spin CLI entry point.

This module allows execution with `python -m wpspin` and simply
forwards to the top-level `wpspin.cli` entry function.
"""

from __future__ import annotations

from .cli import cli


def main() -> None:  # pragma: no cover – convenience wrapper
    """Invoke the wp-spin CLI."""
    cli(obj={})


if __name__ == "__main__":  # pragma: no cover – executed via `python -m`
    main()
