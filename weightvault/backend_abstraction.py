#!/usr/bin/env python3
"""
Backend Abstraction Layer
=========================

Two interchangeable execution strategies for model compression:
- Sequential (numpy, block loop) ✅ always available
- Parallel (torch device buffers) ✅ gated by a one-time capability probe

The coordinator picks one per request and records the decision in the
result instead of re-detecting at every call site.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .artifact import CompressedArtifact, EncodedTensor, LayerEntry
from .codec import BackendType, CompressionOptions
from .exceptions import CorruptArtifactError, LayerReconstructionError
from .model import Layer, Model, SUPPORTED_DTYPES, WeightTensor, build_layer


@dataclass
class BackendStats:
    """Counters reported by a backend for one compress call."""
    pruned: int = 0
    shared: int = 0
    operations: int = 0
    device_memory_used: int = 0
    layer_failures: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BackendOutput:
    """Artifact plus the stats gathered while producing it."""
    artifact: CompressedArtifact
    stats: BackendStats


class CompressionBackend(ABC):
    """Abstract base class for compression backends"""

    backend_type: BackendType

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    def compress(self, model: Model, options: CompressionOptions) -> BackendOutput:
        """Compress every weighted layer of the model"""
        pass

    @abstractmethod
    def decompress(self, artifact: CompressedArtifact) -> Model:
        """Rebuild a model from an artifact"""
        pass


def structural_entry(layer: Layer) -> LayerEntry:
    """Entry for a layer with no tensors; it passes through unchanged."""
    return LayerEntry(kind=layer.kind, config=dict(layer.config), tensors=[])


def rebuild_model(
    artifact: CompressedArtifact,
    decode: Callable[[EncodedTensor], np.ndarray],
    name: Optional[str] = None,
) -> Model:
    """
    Reassemble a model from artifact entries.

    Args:
        artifact: Parsed artifact
        decode: Turns one encoded tensor into flat float32 values
        name: Optional model name

    Raises:
        CorruptArtifactError: a non-passthrough layer fails its factory checks
    """
    layers = []
    for index, entry in enumerate(artifact.layers):
        tensors = []
        for encoded in entry.tensors:
            values = decode(encoded)
            try:
                tensors.append(WeightTensor(
                    data=values.astype(SUPPORTED_DTYPES[encoded.dtype]),
                    shape=encoded.shape,
                    dtype=encoded.dtype,
                ))
            except ValueError as e:
                raise CorruptArtifactError(f"Layer {index}: {e}") from e
        if entry.passthrough:
            layers.append(Layer(entry.kind, dict(entry.config), tensors))
            continue
        try:
            layers.append(build_layer(entry.kind, dict(entry.config), tensors))
        except LayerReconstructionError as e:
            raise CorruptArtifactError(f"Layer {index} ({entry.kind.value}) cannot be rebuilt: {e}") from e
    return Model(layers=layers, name=name or artifact.metadata.get('model_name'))


class BackendFactory:
    """Factory for creating backend adapters"""

    _backends: Dict[BackendType, type] = {}

    @classmethod
    def register(cls, backend_type: BackendType):
        def decorator(backend_class):
            cls._backends[backend_type] = backend_class
            return backend_class
        return decorator

    @classmethod
    def create(cls, backend_type: BackendType, **kwargs) -> CompressionBackend:
        """Create backend adapter"""
        backend_type = BackendType(backend_type)
        if backend_type not in cls._backends:
            raise ValueError(f"Backend {backend_type} not supported")

        backend_class = cls._backends[backend_type]
        return backend_class(**kwargs)

    @classmethod
    def get_available_backends(cls, backends: List[CompressionBackend]) -> List[BackendType]:
        """Get list of available backends"""
        return [b.backend_type for b in backends if b.available]
