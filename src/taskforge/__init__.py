"""Task orchestration and sandbox execution engine."""

__version__ = "0.1.0"
