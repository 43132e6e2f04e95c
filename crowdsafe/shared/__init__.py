"""Shared models, store and utilities for CrowdSafe services."""
