"""Allow ``python -m witness``."""

from witness.cli.main import run

run()
