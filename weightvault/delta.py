"""
Differential Updates
====================

A delta is the element-wise float32 difference between two models with the
same tensor layout, packed with the blob codec. Shipping a delta instead of a
full model is what makes incremental retraining cheap to store and transfer.
"""

import base64
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from .blob import pack_blob, unpack_blob
from .exceptions import CorruptArtifactError, TopologyMismatchError
from .model import Layer, Model, SUPPORTED_DTYPES, WeightTensor


logger = logging.getLogger(__name__)

DELTA_MAGIC = b'WVDELTA1'


@dataclass
class DeltaArtifact:
    payload: bytes
    original_size: int
    compressed_size: int
    ratio: float
    shapes: List[Tuple[int, ...]] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        return DELTA_MAGIC + struct.pack('<Q', self.original_size) + self.payload

    @classmethod
    def from_bytes(cls, data: bytes) -> 'DeltaArtifact':
        if len(data) < 16 or data[:8] != DELTA_MAGIC:
            raise CorruptArtifactError("Invalid delta magic")
        (original_size,) = struct.unpack('<Q', data[8:16])
        payload = data[16:]
        doc = unpack_blob(payload)
        try:
            shapes = [tuple(int(d) for d in s) for s in doc['shapes']]
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptArtifactError(f"Malformed delta: {e}") from e
        return cls(
            payload=payload,
            original_size=original_size,
            compressed_size=len(payload),
            ratio=original_size / len(payload) if payload else 1.0,
            shapes=shapes,
        )

    def deltas(self) -> List[np.ndarray]:
        doc = unpack_blob(self.payload)
        try:
            return [
                np.frombuffer(base64.b64decode(d), dtype='<f4').astype(np.float32)
                for d in doc['deltas']
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptArtifactError(f"Malformed delta: {e}") from e


def _check_topology(old: Model, new_shapes: List[Tuple[int, ...]]):
    old_shapes = [w.shape for w in old.weight_tensors()]
    if len(old_shapes) != len(new_shapes):
        raise TopologyMismatchError(
            f"Tensor count differs: {len(old_shapes)} vs {len(new_shapes)}"
        )
    for i, (a, b) in enumerate(zip(old_shapes, new_shapes)):
        if tuple(a) != tuple(b):
            raise TopologyMismatchError(f"Tensor {i} shape differs: {a} vs {b}")


def diff(old: Model, new: Model) -> DeltaArtifact:
    """
    Compute new - old for every tensor.

    Raises:
        TopologyMismatchError: tensor counts or shapes differ
    """
    new_tensors = new.weight_tensors()
    shapes = [w.shape for w in new_tensors]
    _check_topology(old, shapes)

    encoded = []
    for old_w, new_w in zip(old.weight_tensors(), new_tensors):
        delta = new_w.as_float32() - old_w.as_float32()
        encoded.append(base64.b64encode(delta.astype('<f4').tobytes()).decode('ascii'))

    blob = pack_blob({'shapes': [list(s) for s in shapes], 'deltas': encoded})
    original_size = new.raw_size
    logger.debug("Delta over %d tensors: %d -> %d bytes", len(shapes), original_size, blob.compressed_size)
    return DeltaArtifact(
        payload=blob.data,
        original_size=original_size,
        compressed_size=blob.compressed_size,
        ratio=original_size / blob.compressed_size if blob.compressed_size else 1.0,
        shapes=shapes,
    )


def apply_delta(old: Model, delta: DeltaArtifact) -> Model:
    """Rebuild the new model as old + delta, keeping old's layer structure."""
    _check_topology(old, delta.shapes)
    values = delta.deltas()
    if len(values) != len(delta.shapes):
        raise CorruptArtifactError("Delta tensor count does not match its shapes")

    index = 0
    layers = []
    for layer in old.layers:
        weights = []
        for w in layer.weights:
            d = values[index]
            if d.size != w.size:
                raise CorruptArtifactError(f"Delta tensor {index} has {d.size} values, expected {w.size}")
            updated = (w.as_float32() + d).astype(SUPPORTED_DTYPES[w.dtype])
            weights.append(WeightTensor(data=updated, shape=w.shape, dtype=w.dtype))
            index += 1
        layers.append(Layer(layer.kind, dict(layer.config), weights))
    return Model(layers=layers, name=old.name)
