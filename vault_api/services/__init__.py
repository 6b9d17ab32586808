"""Storage services."""

from vault_api.services.artifact_store import (
    ArtifactStore,
    LocalArtifactStore,
    S3ArtifactStore,
    create_artifact_store,
)
from vault_api.services.model_storage import (
    LoadedModel,
    ModelMetadata,
    ModelStorageService,
    StorageRecord,
    StorageStats,
)

__all__ = [
    "ArtifactStore", "LocalArtifactStore", "S3ArtifactStore", "create_artifact_store",
    "LoadedModel", "ModelMetadata", "ModelStorageService", "StorageRecord", "StorageStats",
]
