"""Command-line interface for the workflow harness."""
