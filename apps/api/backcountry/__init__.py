"""Backcountry safety score: zone resolution, weather fusion and hazard scoring."""

__version__ = "1.0.0"
