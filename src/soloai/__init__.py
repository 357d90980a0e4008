"""SoloAI billing service: subscription reconciliation and session sync."""

__version__ = "0.1.0"
