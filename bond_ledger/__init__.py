"""Availability ledger and split-stay allocation service for Bond Coliving."""

__version__ = "1.0.0"
