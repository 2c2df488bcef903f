"""Full-duplex voice conversation coordinator."""

__version__ = "0.1.0"
