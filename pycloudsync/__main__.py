"""Allow running as ``python -m pycloudsync``."""

from .cli import run

run()
