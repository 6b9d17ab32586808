"""
Model Data Structures
=====================

Models are ordered lists of layers. Each layer carries a kind tag, an opaque
config map and zero or more weight tensors. Layers are rebuilt through one
factory per kind, so an unknown kind or a malformed config is caught in one
place instead of scattered string dispatch.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from .exceptions import LayerReconstructionError


SUPPORTED_DTYPES = {
    "float32": np.float32,
    "float16": np.float16,
    "float64": np.float64,
}


# ============================================================
# TENSORS
# ============================================================

@dataclass
class WeightTensor:
    """Dense float array with an explicit shape and dtype tag."""
    data: np.ndarray
    shape: Tuple[int, ...]
    dtype: str = "float32"

    def __post_init__(self):
        if self.dtype not in SUPPORTED_DTYPES:
            raise ValueError(f"Unsupported dtype: {self.dtype}")
        self.shape = tuple(int(d) for d in self.shape)
        if any(d <= 0 for d in self.shape):
            raise ValueError(f"Shape dimensions must be positive: {self.shape}")
        self.data = np.asarray(self.data, dtype=SUPPORTED_DTYPES[self.dtype]).reshape(-1)
        expected = int(np.prod(self.shape)) if self.shape else 1
        if self.data.size != expected:
            raise ValueError(
                f"Element count {self.data.size} does not match shape {self.shape}"
            )

    @classmethod
    def from_array(cls, array: np.ndarray, dtype: Optional[str] = None) -> 'WeightTensor':
        array = np.asarray(array)
        if dtype is None:
            dtype = str(array.dtype) if str(array.dtype) in SUPPORTED_DTYPES else "float32"
        return cls(data=array.reshape(-1), shape=array.shape or (1,), dtype=dtype)

    @property
    def size(self) -> int:
        return int(self.data.size)

    @property
    def nbytes(self) -> int:
        """Raw byte size at the tensor's own dtype."""
        return self.size * np.dtype(SUPPORTED_DTYPES[self.dtype]).itemsize

    def as_float32(self) -> np.ndarray:
        """Flat float32 copy used by the codecs."""
        return self.data.astype(np.float32, copy=True)

    def to_array(self) -> np.ndarray:
        return self.data.reshape(self.shape)

    def with_values(self, values: np.ndarray) -> 'WeightTensor':
        """New tensor with the same shape and dtype and the given values."""
        return WeightTensor(data=np.array(values, copy=True), shape=self.shape, dtype=self.dtype)

    def to_dict(self) -> dict:
        raw = self.data.astype(np.dtype(SUPPORTED_DTYPES[self.dtype]).newbyteorder('<')).tobytes()
        return {
            'shape': list(self.shape),
            'dtype': self.dtype,
            'data': base64.b64encode(raw).decode('ascii'),
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'WeightTensor':
        dtype = d.get('dtype', 'float32')
        if dtype not in SUPPORTED_DTYPES:
            raise ValueError(f"Unsupported dtype: {dtype}")
        raw = base64.b64decode(d['data'])
        values = np.frombuffer(raw, dtype=np.dtype(SUPPORTED_DTYPES[dtype]).newbyteorder('<'))
        return cls(data=values.astype(SUPPORTED_DTYPES[dtype]), shape=tuple(d['shape']), dtype=dtype)


# ============================================================
# LAYERS
# ============================================================

class LayerKind(str, Enum):
    """Closed set of layer kinds the engine knows how to rebuild."""
    DENSE = "dense"
    RECURRENT = "recurrent"
    CONVOLUTION = "convolution"
    POOLING = "pooling"
    DROPOUT = "dropout"
    RESHAPE = "reshape"
    FLATTEN = "flatten"
    EMBEDDING = "embedding"
    NORMALIZATION = "normalization"

    @classmethod
    def parse(cls, value: str) -> 'LayerKind':
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown layer kind: {value!r}") from None


@dataclass
class Layer:
    """A configured processing unit, optionally owning weight tensors."""
    kind: LayerKind
    config: Dict[str, Any] = field(default_factory=dict)
    weights: List[WeightTensor] = field(default_factory=list)

    @property
    def has_weights(self) -> bool:
        return len(self.weights) > 0

    @property
    def total_weights(self) -> int:
        return sum(w.size for w in self.weights)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'config': self.config,
            'weights': [w.to_dict() for w in self.weights],
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'Layer':
        return build_layer(
            LayerKind.parse(d['kind']),
            d.get('config') or {},
            [WeightTensor.from_dict(w) for w in d.get('weights', [])],
        )


@dataclass
class Model:
    """Ordered collection of layers forming one trained artifact."""
    layers: List[Layer] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def total_weights(self) -> int:
        return sum(layer.total_weights for layer in self.layers)

    @property
    def raw_size(self) -> int:
        """Bytes of every tensor at its own dtype."""
        return sum(w.nbytes for layer in self.layers for w in layer.weights)

    def weight_tensors(self) -> List[WeightTensor]:
        return [w for layer in self.layers for w in layer.weights]

    def topology(self) -> List[List[Tuple[int, ...]]]:
        return [[w.shape for w in layer.weights] for layer in self.layers]

    def fingerprint(self) -> str:
        """SHA-256 over layer kinds, shapes and raw weight bytes."""
        h = hashlib.sha256()
        for layer in self.layers:
            h.update(layer.kind.value.encode('utf-8'))
            for w in layer.weights:
                h.update(str(w.shape).encode('utf-8'))
                h.update(w.data.tobytes())
        return h.hexdigest()

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'layers': [layer.to_dict() for layer in self.layers],
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'Model':
        return cls(
            layers=[Layer.from_dict(layer) for layer in d.get('layers', [])],
            name=d.get('name'),
        )


# ============================================================
# LAYER FACTORIES
# ============================================================

def _require(kind: LayerKind, config: dict, *keys: str):
    missing = [k for k in keys if k not in config]
    if missing:
        raise LayerReconstructionError(f"{kind.value} layer config missing {missing}")


def _max_weights(kind: LayerKind, weights: List[WeightTensor], limit: int):
    if len(weights) > limit:
        raise LayerReconstructionError(
            f"{kind.value} layer accepts at most {limit} tensors, got {len(weights)}"
        )


def _positive_int(kind: LayerKind, config: dict, key: str):
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise LayerReconstructionError(f"{kind.value} layer '{key}' must be a positive int")


def _build_dense(config: dict, weights: List[WeightTensor]) -> Layer:
    _require(LayerKind.DENSE, config, 'units')
    _positive_int(LayerKind.DENSE, config, 'units')
    _max_weights(LayerKind.DENSE, weights, 2)
    units = config['units']
    if weights and weights[0].shape[-1] != units:
        raise LayerReconstructionError(
            f"dense kernel shape {weights[0].shape} does not end in units={units}"
        )
    if len(weights) == 2 and weights[1].shape != (units,):
        raise LayerReconstructionError(f"dense bias shape {weights[1].shape} != ({units},)")
    return Layer(LayerKind.DENSE, dict(config), list(weights))


def _build_recurrent(config: dict, weights: List[WeightTensor]) -> Layer:
    _require(LayerKind.RECURRENT, config, 'units')
    _positive_int(LayerKind.RECURRENT, config, 'units')
    _max_weights(LayerKind.RECURRENT, weights, 3)
    return Layer(LayerKind.RECURRENT, dict(config), list(weights))


def _build_convolution(config: dict, weights: List[WeightTensor]) -> Layer:
    _require(LayerKind.CONVOLUTION, config, 'filters', 'kernel_size')
    _positive_int(LayerKind.CONVOLUTION, config, 'filters')
    _max_weights(LayerKind.CONVOLUTION, weights, 2)
    return Layer(LayerKind.CONVOLUTION, dict(config), list(weights))


def _build_embedding(config: dict, weights: List[WeightTensor]) -> Layer:
    _require(LayerKind.EMBEDDING, config, 'input_dim', 'output_dim')
    _max_weights(LayerKind.EMBEDDING, weights, 1)
    return Layer(LayerKind.EMBEDDING, dict(config), list(weights))


def _build_normalization(config: dict, weights: List[WeightTensor]) -> Layer:
    _max_weights(LayerKind.NORMALIZATION, weights, 4)
    return Layer(LayerKind.NORMALIZATION, dict(config), list(weights))


def _structural(kind: LayerKind, *keys: str) -> Callable[[dict, List[WeightTensor]], Layer]:
    def build(config: dict, weights: List[WeightTensor]) -> Layer:
        _require(kind, config, *keys)
        _max_weights(kind, weights, 0)
        return Layer(kind, dict(config), [])
    return build


def _build_dropout(config: dict, weights: List[WeightTensor]) -> Layer:
    layer = _structural(LayerKind.DROPOUT, 'rate')(config, weights)
    rate = config['rate']
    if not isinstance(rate, (int, float)) or not 0.0 <= rate < 1.0:
        raise LayerReconstructionError(f"dropout rate must be in [0, 1), got {rate!r}")
    return layer


LAYER_FACTORIES: Dict[LayerKind, Callable[[dict, List[WeightTensor]], Layer]] = {
    LayerKind.DENSE: _build_dense,
    LayerKind.RECURRENT: _build_recurrent,
    LayerKind.CONVOLUTION: _build_convolution,
    LayerKind.POOLING: _structural(LayerKind.POOLING, 'pool_size'),
    LayerKind.DROPOUT: _build_dropout,
    LayerKind.RESHAPE: _structural(LayerKind.RESHAPE, 'target_shape'),
    LayerKind.FLATTEN: _structural(LayerKind.FLATTEN),
    LayerKind.EMBEDDING: _build_embedding,
    LayerKind.NORMALIZATION: _build_normalization,
}

_missing = set(LayerKind) - set(LAYER_FACTORIES)
if _missing:
    raise RuntimeError(f"No layer factory registered for {sorted(k.value for k in _missing)}")


def build_layer(kind: LayerKind, config: dict, weights: List[WeightTensor]) -> Layer:
    """
    Rebuild a layer from its kind, config and weight tensors.

    Raises:
        LayerReconstructionError: config or tensor count invalid for the kind
    """
    return LAYER_FACTORIES[kind](config, weights)


# Convenience constructors

def dense(units: int, kernel: np.ndarray, bias: Optional[np.ndarray] = None, **config) -> Layer:
    weights = [WeightTensor.from_array(np.asarray(kernel, dtype=np.float32))]
    if bias is not None:
        weights.append(WeightTensor.from_array(np.asarray(bias, dtype=np.float32)))
    return build_layer(LayerKind.DENSE, {'units': units, 'use_bias': bias is not None, **config}, weights)


def dropout(rate: float) -> Layer:
    return build_layer(LayerKind.DROPOUT, {'rate': rate}, [])


def flatten() -> Layer:
    return build_layer(LayerKind.FLATTEN, {}, [])
