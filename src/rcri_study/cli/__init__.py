"""Command-line interface (rcri)."""
