"""Coordination engine configuration.

Timing and traversal parameters for the incident lifecycle, the
enrichment pipeline and the expiration sweeper.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide settings, overridable from the environment."""

    # Observation TTL before the sweeper may force-resolve it
    observation_ttl_minutes: int = 10

    # Hop bound for evacuation-route traversal
    path_max_depth: int = 2

    # Ceiling for caller-requested depth; walk count grows exponentially with it
    path_depth_limit: int = 4

    # Reasoning-service retry policy: delay = base * attempt
    ai_max_attempts: int = 3
    ai_backoff_base_seconds: float = 2.0

    # A PROCESSING claim older than this may be reclaimed
    ai_processing_timeout_seconds: int = 600

    sweep_interval_seconds: int = 300

    # "memory" or "postgres"
    store_backend: str = "memory"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables.

        Environment variables:
            OBSERVATION_TTL_MINUTES (default 10)
            PATH_MAX_DEPTH (default 2)
            PATH_DEPTH_LIMIT (default 4)
            AI_MAX_ATTEMPTS (default 3)
            AI_BACKOFF_BASE_SECONDS (default 2)
            AI_PROCESSING_TIMEOUT_SECONDS (default 600)
            SWEEP_INTERVAL_SECONDS (default 300)
            STORE_BACKEND (default memory)
        """
        return cls(
            observation_ttl_minutes=int(os.getenv("OBSERVATION_TTL_MINUTES", "10")),
            path_max_depth=int(os.getenv("PATH_MAX_DEPTH", "2")),
            path_depth_limit=int(os.getenv("PATH_DEPTH_LIMIT", "4")),
            ai_max_attempts=int(os.getenv("AI_MAX_ATTEMPTS", "3")),
            ai_backoff_base_seconds=float(os.getenv("AI_BACKOFF_BASE_SECONDS", "2")),
            ai_processing_timeout_seconds=int(os.getenv("AI_PROCESSING_TIMEOUT_SECONDS", "600")),
            sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "300")),
            store_backend=os.getenv("STORE_BACKEND", "memory").lower(),
        )
