"""Polymarket Insider Finder - forensic wallet badge scoring for prediction markets."""

__version__ = "0.1.0"
