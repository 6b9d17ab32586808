"""
Sequential Compressor
=====================

Reference implementation of the tensor codec. Walks each flattened tensor
in fixed-size blocks, so memory use stays flat regardless of tensor size.
Always available; used as the fallback path and as the benchmark baseline.
"""

import logging
import time
from typing import Tuple

import numpy as np

from .artifact import CompressedArtifact, EncodedTensor, LayerEntry, encode_tensor
from .backend_abstraction import (
    BackendFactory,
    BackendOutput,
    BackendStats,
    CompressionBackend,
    rebuild_model,
    structural_entry,
)
from .codec import BackendType, CompressionOptions, TensorCodec, TensorStats, level_settings
from .exceptions import LayerReconstructionError
from .model import Layer, Model, WeightTensor, build_layer


logger = logging.getLogger(__name__)

BLOCK_SIZE = 256


def _blocks(n: int):
    for start in range(0, n, BLOCK_SIZE):
        yield start, min(start + BLOCK_SIZE, n)


class SequentialCodec(TensorCodec):
    """Block-by-block numpy implementation of the three techniques."""

    def quantize(self, tensor: WeightTensor, level) -> WeightTensor:
        settings = level_settings(level)
        values = tensor.as_float32()
        if not values.any():
            return tensor.with_values(values)

        scale = np.float32(settings.scale)
        out = np.empty_like(values)
        for start, end in _blocks(values.size):
            out[start:end] = np.round(values[start:end] * scale) / scale
        return tensor.with_values(out)

    def prune(self, tensor: WeightTensor, level) -> Tuple[WeightTensor, int]:
        settings = level_settings(level)
        values = tensor.as_float32()
        if values.size == 0:
            return tensor.with_values(values), 0

        max_abs = np.float32(0.0)
        for start, end in _blocks(values.size):
            max_abs = max(max_abs, np.abs(values[start:end]).max())
        if max_abs == 0:
            return tensor.with_values(values), 0

        threshold = np.float32(settings.pruning_threshold)
        out = np.empty_like(values)
        pruned = 0
        for start, end in _blocks(values.size):
            block = values[start:end]
            mask = (np.abs(block) / max_abs) < threshold
            out[start:end] = np.where(mask, np.float32(0.0), block)
            pruned += int(mask.sum())
        return tensor.with_values(out), pruned

    def share_weights(self, tensor: WeightTensor, level) -> Tuple[WeightTensor, int]:
        settings = level_settings(level)
        values = tensor.as_float32()
        if values.size == 0:
            return tensor.with_values(values), 0

        v_min, v_max = values[0], values[0]
        for start, end in _blocks(values.size):
            block = values[start:end]
            v_min = min(v_min, block.min())
            v_max = max(v_max, block.max())
        if v_min == v_max:
            return tensor.with_values(values), 0

        step = (v_max - v_min) / np.float32(settings.clusters)
        out = np.empty_like(values)
        for start, end in _blocks(values.size):
            out[start:end] = np.round((values[start:end] - v_min) / step) * step + v_min
        return tensor.with_values(out), max(values.size - settings.clusters, 0)

    def decode(self, encoded: EncodedTensor) -> np.ndarray:
        """Expand an encoded tensor back to flat float32 values."""
        codebook, indices = encoded.decode_parts()
        if codebook is None:
            return indices
        out = np.empty(indices.size, dtype=np.float32)
        for start, end in _blocks(indices.size):
            out[start:end] = codebook[indices[start:end]]
        return out


@BackendFactory.register(BackendType.SEQUENTIAL)
class SequentialCompressor(CompressionBackend):
    """
    CPU reference compressor.

    A layer that fails (for example, its config does not satisfy the factory
    for its kind) is stored unmodified and reported in
    `stats.layer_failures`; the rest of the model is still compressed.
    """

    backend_type = BackendType.SEQUENTIAL

    def __init__(self, codec: SequentialCodec = None):
        self.codec = codec or SequentialCodec()

    def compress(self, model: Model, options: CompressionOptions) -> BackendOutput:
        start_time = time.perf_counter()
        stats = BackendStats()
        entries = []

        for index, layer in enumerate(model.layers):
            if not layer.has_weights:
                entries.append(structural_entry(layer))
                continue
            try:
                entry, layer_stats = self._compress_layer(layer, options)
            except (LayerReconstructionError, ValueError) as e:
                logger.warning(
                    "Layer %d (%s) kept uncompressed: %s", index, layer.kind.value, e
                )
                stats.layer_failures.append({
                    'index': index,
                    'kind': layer.kind.value,
                    'error': str(e),
                })
                entries.append(LayerEntry(
                    kind=layer.kind,
                    config=dict(layer.config),
                    tensors=[encode_tensor(w.as_float32(), w.shape, w.dtype) for w in layer.weights],
                    passthrough=True,
                ))
                continue
            entries.append(entry)
            stats.pruned += layer_stats.pruned
            stats.shared += layer_stats.shared
            stats.operations += layer_stats.operations

        artifact = CompressedArtifact(
            backend_type=BackendType.SEQUENTIAL,
            layers=entries,
            metadata={'model_name': model.name, 'options': options.to_dict()},
        )
        logger.debug(
            "Sequential compression of %d layers took %.1fms",
            len(model.layers), (time.perf_counter() - start_time) * 1000,
        )
        return BackendOutput(artifact=artifact, stats=stats)

    def _compress_layer(self, layer: Layer, options: CompressionOptions) -> Tuple[LayerEntry, TensorStats]:
        layer_stats = TensorStats()
        compressed = []
        for weight in layer.weights:
            out, tensor_stats = self.codec.apply(weight, options)
            compressed.append(out)
            layer_stats.add(tensor_stats)

        # Factory checks run on the compressed tensors before anything is encoded
        rebuilt = build_layer(layer.kind, layer.config, compressed)
        entry = LayerEntry(
            kind=rebuilt.kind,
            config=dict(rebuilt.config),
            tensors=[encode_tensor(w.data, w.shape, w.dtype) for w in rebuilt.weights],
        )
        return entry, layer_stats

    def decompress(self, artifact: CompressedArtifact) -> Model:
        return rebuild_model(artifact, self.codec.decode)
