"""HappyClaw: per-workspace agent execution in containers or on the host."""

__version__ = "0.1.0"
