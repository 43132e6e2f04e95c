"""CrowdSafe: crowd-safety incident coordination engine."""

__version__ = "0.1.0"
