"""Evidence-grounded quality and traceability engine for story packs."""

__version__ = "0.1.0"
