"""Step runner for infrastructure-as-code tasks."""

__version__ = "0.1.0"
