"""Sweeper Service: scheduled expiration of unattended observations."""

from .sweeper import ExpirationSweeper

__all__ = ["ExpirationSweeper"]
