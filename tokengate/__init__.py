"""TokenGate - AI provider credential management and shared quota gating."""

__version__ = "0.1.0"
