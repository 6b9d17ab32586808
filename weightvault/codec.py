"""
Tensor Codec Contract
=====================

Shared definitions for the three lossy techniques:

1. Quantization - snap values to a fixed grid of 2^(bits-1) - 1 steps
2. Pruning - zero values below a fraction of the tensor's max magnitude
3. Weight sharing - snap values to evenly spaced cluster centers

Both backends implement the same contract in float32 and must agree within
1e-5. They differ only in how they walk the tensor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Tuple

from .model import WeightTensor


# ============================================================
# LEVELS AND OPTIONS
# ============================================================

class CompressionLevel(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    MAXIMUM = "maximum"


class BackendType(str, Enum):
    """Execution strategy requested for (or used by) a compression run."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    AUTO = "auto"


@dataclass(frozen=True)
class LevelSettings:
    """Technique parameters for one compression level."""
    name: str
    bits: int
    pruning_threshold: float
    clusters: int

    @property
    def scale(self) -> int:
        return 2 ** (self.bits - 1) - 1


FAST = LevelSettings("fast", bits=16, pruning_threshold=0.10, clusters=256)
BALANCED = LevelSettings("balanced", bits=8, pruning_threshold=0.05, clusters=128)
MAXIMUM = LevelSettings("maximum", bits=4, pruning_threshold=0.01, clusters=64)

LEVELS: Dict[CompressionLevel, LevelSettings] = {
    CompressionLevel.FAST: FAST,
    CompressionLevel.BALANCED: BALANCED,
    CompressionLevel.MAXIMUM: MAXIMUM,
}


def level_settings(level) -> LevelSettings:
    if isinstance(level, LevelSettings):
        return level
    return LEVELS[CompressionLevel(level)]


@dataclass
class CompressionOptions:
    """Which techniques to run, how hard, and on which backend."""
    level: CompressionLevel = CompressionLevel.BALANCED
    quantization: bool = True
    pruning: bool = True
    weight_sharing: bool = False
    backend: BackendType = BackendType.AUTO

    def __post_init__(self):
        self.level = CompressionLevel(self.level)
        self.backend = BackendType(self.backend)

    @property
    def settings(self) -> LevelSettings:
        return LEVELS[self.level]

    def method_label(self) -> str:
        methods = []
        if self.quantization:
            methods.append("Quantization")
        if self.pruning:
            methods.append("Pruning")
        if self.weight_sharing:
            methods.append("Weight Sharing")
        return " + ".join(methods) or "None"

    def to_dict(self) -> dict:
        return {
            'level': self.level.value,
            'quantization': self.quantization,
            'pruning': self.pruning,
            'weight_sharing': self.weight_sharing,
            'backend': self.backend.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'CompressionOptions':
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class CompressionResult:
    """Size accounting for one compressed model."""
    original_size: int
    compressed_size: int
    ratio: float
    method_label: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_sizes(cls, original_size: int, compressed_size: int, method_label: str,
                   metadata: Dict[str, Any] = None) -> 'CompressionResult':
        ratio = original_size / compressed_size if compressed_size > 0 else 1.0
        return cls(
            original_size=original_size,
            compressed_size=compressed_size,
            ratio=ratio,
            method_label=method_label,
            metadata=metadata or {},
        )

    @property
    def savings(self) -> int:
        return self.original_size - self.compressed_size

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TensorStats:
    """Counters accumulated while running the technique pipeline."""
    pruned: int = 0
    shared: int = 0
    operations: int = 0

    def add(self, other: 'TensorStats'):
        self.pruned += other.pruned
        self.shared += other.shared
        self.operations += other.operations


# ============================================================
# CODEC CONTRACT
# ============================================================

class TensorCodec(ABC):
    """Pure per-tensor techniques. Every call returns a new tensor."""

    @abstractmethod
    def quantize(self, tensor: WeightTensor, level) -> WeightTensor:
        """Snap values to round(v * scale) / scale."""
        pass

    @abstractmethod
    def prune(self, tensor: WeightTensor, level) -> Tuple[WeightTensor, int]:
        """Zero values with |v| / max|v| below the level threshold."""
        pass

    @abstractmethod
    def share_weights(self, tensor: WeightTensor, level) -> Tuple[WeightTensor, int]:
        """Snap values to the nearest of `clusters` evenly spaced centers."""
        pass

    def apply(self, tensor: WeightTensor, options: CompressionOptions) -> Tuple[WeightTensor, TensorStats]:
        """Run the enabled techniques in order: quantize, prune, share."""
        stats = TensorStats()
        out = tensor
        if options.quantization:
            out = self.quantize(out, options.level)
            stats.operations += out.size
        if options.pruning:
            out, pruned = self.prune(out, options.level)
            stats.pruned += pruned
            stats.operations += out.size
        if options.weight_sharing:
            out, shared = self.share_weights(out, options.level)
            stats.shared += shared
            stats.operations += out.size
        if out is tensor:
            out = tensor.with_values(tensor.data)
        return out, stats
