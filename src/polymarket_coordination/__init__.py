"""Polymarket coordinated-trading detection engine."""

__version__ = "0.1.0"
