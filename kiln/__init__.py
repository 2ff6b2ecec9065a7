"""kiln: staged bootstrap orchestrator for a self-hosting compiler."""

__version__ = "0.1.0"
