"""
WeightVault Core
================

Adaptive compression for layered numeric models.

Modules:
- model: Models, layers, weight tensors and per-kind layer factories
- codec: Levels, options, results and the tensor codec contract
- sequential: numpy block-loop backend (always available)
- parallel: torch device-buffer backend (probe-gated)
- coordinator: Backend selection, fallback and benchmarking
- artifact: Binary artifact container with codebook tensor encodings
- blob: JSON + gzip blob codec
- delta: Differential updates between models of the same topology
"""

from .exceptions import (
    WeightVaultError,
    CapabilityUnavailable,
    BackendExecutionFailure,
    LayerReconstructionError,
    CorruptArtifactError,
    TopologyMismatchError,
    ValidationError,
)

from .model import (
    WeightTensor,
    LayerKind,
    Layer,
    Model,
    build_layer,
    dense,
    dropout,
    flatten,
)

from .codec import (
    CompressionLevel,
    BackendType,
    LevelSettings,
    CompressionOptions,
    CompressionResult,
    TensorCodec,
    level_settings,
)

from .artifact import (
    CompressedArtifact,
    EncodedTensor,
    LayerEntry,
    encode_tensor,
)

from .backend_abstraction import BackendFactory, CompressionBackend
from .sequential import SequentialCodec, SequentialCompressor
from .parallel import (
    DeviceCapabilities,
    BufferScope,
    ParallelCodec,
    ParallelCompressor,
    probe_capabilities,
)

from .coordinator import (
    AdaptiveCoordinator,
    CoordinatorConfig,
    ModelAnalysis,
    CompressibilityReport,
    BenchmarkReport,
)

from .blob import PackedBlob, pack_blob, unpack_blob
from .delta import DeltaArtifact, diff, apply_delta

__version__ = "1.0.0"
__all__ = [
    # Errors
    'WeightVaultError', 'CapabilityUnavailable', 'BackendExecutionFailure',
    'LayerReconstructionError', 'CorruptArtifactError',
    'TopologyMismatchError', 'ValidationError',

    # Data model
    'WeightTensor', 'LayerKind', 'Layer', 'Model',
    'build_layer', 'dense', 'dropout', 'flatten',

    # Codec
    'CompressionLevel', 'BackendType', 'LevelSettings',
    'CompressionOptions', 'CompressionResult', 'TensorCodec', 'level_settings',

    # Artifacts
    'CompressedArtifact', 'EncodedTensor', 'LayerEntry', 'encode_tensor',

    # Backends
    'BackendFactory', 'CompressionBackend',
    'SequentialCodec', 'SequentialCompressor',
    'DeviceCapabilities', 'BufferScope', 'ParallelCodec',
    'ParallelCompressor', 'probe_capabilities',

    # Coordinator
    'AdaptiveCoordinator', 'CoordinatorConfig', 'ModelAnalysis',
    'CompressibilityReport', 'BenchmarkReport',

    # Blobs and deltas
    'PackedBlob', 'pack_blob', 'unpack_blob',
    'DeltaArtifact', 'diff', 'apply_delta',
]
