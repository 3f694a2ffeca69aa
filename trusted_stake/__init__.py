"""Trusted Stake portfolio core."""

__version__ = "0.1.0"
