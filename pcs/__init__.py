"""School progression engine: stage gating, rounds, and certificates."""

__version__ = "0.1.0"
