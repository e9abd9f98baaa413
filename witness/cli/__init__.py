"""Command-line interface for witness."""
