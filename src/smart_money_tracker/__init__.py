"""Smart Money Tracker - Entry-timing scoring and alerts for smart-money trading signals."""

__version__ = "0.1.0"
