"""Command-line interface for the runner/submission harness."""
