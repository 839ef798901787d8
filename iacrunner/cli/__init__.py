"""Command line interface for the runner."""
