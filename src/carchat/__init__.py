"""CarChat voice conversation core."""

__version__ = "1.0.0"
