"""
TrustGraph — Configuration
Unified config for the graph store, influence solver, scorer and rank cache.

All settings load from environment variables with safe defaults for development.
In production, set TG_ENV=production to enforce required values.
"""
import os
from functools import lru_cache
from typing import Set

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_minutes(name: str, default: str) -> Set[int]:
    return {int(m) for m in os.getenv(name, default).split(",") if m.strip()}


class Settings:
    def __init__(self):
        self.ENVIRONMENT = os.getenv("TG_ENV", "development")

        # === Influence solver ===
        self.DAMPING = float(os.getenv("TG_DAMPING", "0.85"))
        self.TOLERANCE = float(os.getenv("TG_TOLERANCE", "1e-6"))
        self.MAX_ITERATIONS = int(os.getenv("TG_MAX_ITERATIONS", "100"))

        # === Composite scorer ===
        self.WEIGHT_KARMA = float(os.getenv("TG_WEIGHT_KARMA", "0.4"))
        self.WEIGHT_INFLUENCE = float(os.getenv("TG_WEIGHT_INFLUENCE", "0.4"))
        self.WEIGHT_ACTIVITY = float(os.getenv("TG_WEIGHT_ACTIVITY", "0.2"))

        # === Rank cache ===
        # false: readers wait for an in-flight recompute
        # true:  readers get the last ready snapshot while it runs
        self.SERVE_STALE = _env_bool("TG_SERVE_STALE")

        # === Persistence ===
        self.PERSISTENCE = os.getenv("TG_PERSISTENCE", "memory").lower()
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.REDIS_PREFIX = os.getenv("TG_REDIS_PREFIX", "tg")
        if self.PERSISTENCE not in ("memory", "redis"):
            raise RuntimeError(f"TG_PERSISTENCE must be 'memory' or 'redis', got {self.PERSISTENCE!r}")
        if self.is_production and self.PERSISTENCE == "memory":
            raise RuntimeError("TG_PERSISTENCE=redis is required in production. Add it to .env")

        # === Worker ===
        self.RECOMPUTE_MINUTES = _env_minutes("TG_RECOMPUTE_MINUTES", "0,10,20,30,40,50")

        # === Application ===
        self.HOST = os.getenv("TG_HOST", "0.0.0.0")
        self.PORT = int(os.getenv("TG_PORT", "8000"))
        self.LOG_LEVEL = os.getenv("TG_LOG_LEVEL", "info").lower()

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def redis_enabled(self) -> bool:
        return self.PERSISTENCE == "redis"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
