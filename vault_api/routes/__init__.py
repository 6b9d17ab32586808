"""API Routes."""

from vault_api.routes import compression, health, models

__all__ = ["compression", "health", "models"]
