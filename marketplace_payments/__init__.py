"""Order & payment reconciliation engine for a multi-seller marketplace."""

__version__ = "1.0.0"
