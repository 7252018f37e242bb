"""hatimer command-line interface."""

from hatimer.cli.app import app

__all__ = ["app"]
