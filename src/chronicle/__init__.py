"""chronicle — index AI coding conversation history without copying it."""

__version__ = "0.2.0"
