"""Request schemas shared by the compression and model routes."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from weightvault.codec import BackendType, CompressionLevel, CompressionOptions
from weightvault.exceptions import LayerReconstructionError, ValidationError
from weightvault.model import Model

from vault_api.services.model_storage import ModelDocument


class OptionsSchema(BaseModel):
    """Compression options; unset fields fall back to the service policy."""
    level: Optional[CompressionLevel] = None
    quantization: Optional[bool] = None
    pruning: Optional[bool] = None
    weight_sharing: Optional[bool] = None
    backend: Optional[BackendType] = None

    def resolve(self, defaults: CompressionOptions) -> CompressionOptions:
        merged = defaults.to_dict()
        merged.update(self.model_dump(exclude_none=True))
        return CompressionOptions.from_dict(merged)


class ModelPayload(BaseModel):
    model: ModelDocument
    options: OptionsSchema = Field(default_factory=OptionsSchema)

    def to_model(self) -> Model:
        """
        Build the engine model.

        Raises:
            ValidationError: unknown layer kind, bad config or bad weights
        """
        try:
            return Model.from_dict(self.model.model_dump())
        except (LayerReconstructionError, ValueError) as e:
            raise ValidationError(f"Invalid model: {e}") from e


class SaveRequest(ModelPayload):
    performance: Optional[Dict[str, Any]] = None
    scaler: Optional[Any] = None
    training_data_hash: Optional[str] = None


class CleanupRequest(BaseModel):
    max_age_ms: Optional[int] = Field(default=None, ge=0)
