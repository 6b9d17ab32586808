"""
Parallel Compressor
===================

Runs each technique as one torch kernel over a whole 2-D device buffer.

Device order: CUDA → Apple MPS → CPU (vectorised torch kernels).

A one-shot capability probe decides whether this backend may be used at
all. If the probe fails or times out, the compressor stays unavailable for
its lifetime; the probe is never retried.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, asdict
from typing import List, Optional, Tuple

import numpy as np
import torch

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
from .exceptions import BackendExecutionFailure, CapabilityUnavailable
from .model import Model, WeightTensor, build_layer


logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_ELEMENTS = 2 ** 26
MAX_BUFFER_WIDTH = 16384

# Values picked so a lossy half-float path would not round-trip them exactly
_PROBE_VALUES = [1.0000001, -2.5e-7, 65504.5, 3.1415927]


# ============================================================
# CAPABILITY PROBE
# ============================================================

@dataclass
class DeviceCapabilities:
    available: bool
    device: Optional[str] = None
    float_buffers: bool = False
    max_buffer_elements: int = 0
    max_buffer_width: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def select_device(preference: str = "auto") -> str:
    """Resolve a device preference to a torch device string."""
    if preference != "auto":
        return preference
    if torch.cuda.is_available():
        return "cuda"
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return "mps"
    return "cpu"


def _run_probe(device_preference: str, max_buffer_elements: int) -> DeviceCapabilities:
    device = select_device(device_preference)

    # Float32 round trip through a kernel on the device
    host = torch.tensor(_PROBE_VALUES, dtype=torch.float32)
    on_device = host.to(device)
    result = (on_device * torch.tensor(1.0, dtype=torch.float32, device=device)).cpu()
    float_buffers = bool(torch.equal(result, host))
    if not float_buffers:
        return DeviceCapabilities(
            available=False,
            device=device,
            error="float32 device buffers do not round-trip",
        )

    max_elements = max_buffer_elements
    if device.startswith("cuda"):
        total_memory = torch.cuda.get_device_properties(torch.device(device)).total_memory
        # Leave room for the kernel temporaries
        max_elements = min(max_elements, total_memory // (4 * 4))

    return DeviceCapabilities(
        available=True,
        device=device,
        float_buffers=True,
        max_buffer_elements=int(max_elements),
        max_buffer_width=int(min(MAX_BUFFER_WIDTH, max_elements)),
    )


def probe_capabilities(
    device_preference: str = "auto",
    max_buffer_elements: int = DEFAULT_MAX_BUFFER_ELEMENTS,
    timeout: float = 5.0,
) -> DeviceCapabilities:
    """
    Probe the parallel device once, bounded by `timeout` seconds.

    Never raises; failures are reported through `DeviceCapabilities.error`.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="weightvault-probe")
    try:
        future = pool.submit(_run_probe, device_preference, max_buffer_elements)
        caps = future.result(timeout=timeout)
    except FutureTimeout:
        caps = DeviceCapabilities(available=False, error=f"probe timed out after {timeout}s")
    except Exception as e:
        caps = DeviceCapabilities(available=False, error=f"probe failed: {e}")
    finally:
        pool.shutdown(wait=False)

    if caps.available:
        logger.info(
            "Parallel backend available on %s (max buffer %d elements)",
            caps.device, caps.max_buffer_elements,
        )
    else:
        logger.warning("Parallel backend unavailable: %s", caps.error)
    return caps


# ============================================================
# DEVICE BUFFERS
# ============================================================

def buffer_dims(n: int, max_width: int) -> Tuple[int, int]:
    """(height, width) of the 2-D buffer holding n values."""
    width = max(1, min(math.ceil(math.sqrt(n)), max_width))
    height = math.ceil(n / width)
    return height, width


class DeviceBuffer:
    """A flattened tensor laid out as a zero-padded 2-D float32 device tensor."""

    def __init__(self, data: torch.Tensor, n_valid: int):
        self.data = data
        self.n_valid = n_valid

    @property
    def nbytes(self) -> int:
        return self.data.numel() * self.data.element_size()

    def valid(self) -> torch.Tensor:
        """View of the first n_valid elements."""
        return self.data.reshape(-1)[:self.n_valid]

    def download(self) -> np.ndarray:
        return self.valid().cpu().numpy().astype(np.float32, copy=True)


class BufferScope:
    """
    Owns every device buffer acquired inside a `with` block.

    All buffers are released when the block exits, whether it returns or
    raises.

    Example:
        >>> with BufferScope("cpu", max_width=1024, max_elements=2**20) as scope:
        ...     buf = scope.upload(np.ones(10, dtype=np.float32))
    """

    def __init__(self, device: str, max_width: int, max_elements: int):
        self.device = device
        self.max_width = max_width
        self.max_elements = max_elements
        self.live: List[DeviceBuffer] = []
        self.bytes_in_use = 0
        self.peak_bytes = 0
        self.total_allocated = 0

    def __enter__(self) -> 'BufferScope':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release_all()
        return False

    def _track(self, buffer: DeviceBuffer) -> DeviceBuffer:
        self.live.append(buffer)
        self.bytes_in_use += buffer.nbytes
        self.total_allocated += 1
        self.peak_bytes = max(self.peak_bytes, self.bytes_in_use)
        return buffer

    def upload(self, values: np.ndarray) -> DeviceBuffer:
        """Copy flat float32 values into a new zero-padded device buffer."""
        flat = np.ascontiguousarray(values, dtype=np.float32).reshape(-1)
        n = flat.size
        if n > self.max_elements:
            raise BackendExecutionFailure(
                f"Tensor of {n} elements exceeds device buffer limit {self.max_elements}"
            )
        height, width = buffer_dims(n, self.max_width)
        padded = np.zeros(height * width, dtype=np.float32)
        padded[:n] = flat
        data = torch.from_numpy(padded).reshape(height, width).to(self.device)
        return self._track(DeviceBuffer(data, n))

    def upload_indices(self, indices: np.ndarray) -> DeviceBuffer:
        """Copy flat int64 codebook indices to the device."""
        flat = np.ascontiguousarray(indices, dtype=np.int64).reshape(-1)
        if flat.size > self.max_elements:
            raise BackendExecutionFailure(
                f"Index block of {flat.size} elements exceeds device buffer limit {self.max_elements}"
            )
        data = torch.from_numpy(flat).to(self.device)
        return self._track(DeviceBuffer(data, flat.size))

    def release(self, buffer: DeviceBuffer):
        if buffer in self.live:
            self.live.remove(buffer)
            self.bytes_in_use -= buffer.nbytes
            buffer.data = None

    def release_all(self):
        for buffer in list(self.live):
            self.release(buffer)
        if self.device.startswith("cuda"):
            torch.cuda.empty_cache()


# ============================================================
# KERNELS
# ============================================================

def _scalar(value, device) -> torch.Tensor:
    return torch.tensor(value, dtype=torch.float32, device=device)


def quantize_kernel(buffer: DeviceBuffer, scale: int):
    valid = buffer.valid()
    if not bool(valid.any()):
        return
    s = _scalar(scale, buffer.data.device)
    buffer.data = torch.round(buffer.data * s) / s


def prune_kernel(buffer: DeviceBuffer, threshold: float) -> int:
    valid = buffer.valid()
    if valid.numel() == 0:
        return 0
    max_abs = valid.abs().max()
    if float(max_abs) == 0.0:
        return 0
    mask = (buffer.data.abs() / max_abs) < _scalar(threshold, buffer.data.device)
    pruned = int(mask.reshape(-1)[:buffer.n_valid].sum())
    buffer.data = torch.where(mask, torch.zeros_like(buffer.data), buffer.data)
    return pruned


def share_kernel(buffer: DeviceBuffer, clusters: int) -> int:
    valid = buffer.valid()
    if valid.numel() == 0:
        return 0
    v_min, v_max = valid.min(), valid.max()
    if bool(v_min == v_max):
        return 0
    step = (v_max - v_min) / _scalar(clusters, buffer.data.device)
    buffer.data = torch.round((buffer.data - v_min) / step) * step + v_min
    return max(buffer.n_valid - clusters, 0)


class ParallelCodec(TensorCodec):
    """Torch implementation; each technique is one kernel over one buffer."""

    def __init__(self, device: str = "cpu", max_width: int = MAX_BUFFER_WIDTH,
                 max_elements: int = DEFAULT_MAX_BUFFER_ELEMENTS):
        self.device = device
        self.max_width = max_width
        self.max_elements = max_elements

    def scope(self) -> BufferScope:
        return BufferScope(self.device, self.max_width, self.max_elements)

    def quantize(self, tensor: WeightTensor, level) -> WeightTensor:
        with self.scope() as scope:
            buffer = scope.upload(tensor.as_float32())
            quantize_kernel(buffer, level_settings(level).scale)
            return tensor.with_values(buffer.download())

    def prune(self, tensor: WeightTensor, level) -> Tuple[WeightTensor, int]:
        with self.scope() as scope:
            buffer = scope.upload(tensor.as_float32())
            pruned = prune_kernel(buffer, level_settings(level).pruning_threshold)
            return tensor.with_values(buffer.download()), pruned

    def share_weights(self, tensor: WeightTensor, level) -> Tuple[WeightTensor, int]:
        with self.scope() as scope:
            buffer = scope.upload(tensor.as_float32())
            shared = share_kernel(buffer, level_settings(level).clusters)
            return tensor.with_values(buffer.download()), shared

    def run_pipeline(self, tensor: WeightTensor, options: CompressionOptions,
                     scope: BufferScope) -> Tuple[WeightTensor, TensorStats]:
        """Upload once, run every enabled kernel, download once."""
        settings = options.settings
        stats = TensorStats()
        buffer = scope.upload(tensor.as_float32())
        if options.quantization:
            quantize_kernel(buffer, settings.scale)
            stats.operations += buffer.n_valid
        if options.pruning:
            stats.pruned += prune_kernel(buffer, settings.pruning_threshold)
            stats.operations += buffer.n_valid
        if options.weight_sharing:
            stats.shared += share_kernel(buffer, settings.clusters)
            stats.operations += buffer.n_valid
        out = tensor.with_values(buffer.download())
        scope.release(buffer)
        return out, stats

    def gather(self, encoded: EncodedTensor, scope: BufferScope) -> np.ndarray:
        """Codebook lookup on the device."""
        codebook, indices = encoded.decode_parts()
        if codebook is None:
            return indices
        table = scope.upload(codebook)
        index = scope.upload_indices(indices)
        try:
            return table.valid()[index.data].cpu().numpy().astype(np.float32, copy=True)
        finally:
            scope.release(index)
            scope.release(table)


# ============================================================
# COMPRESSOR
# ============================================================

@BackendFactory.register(BackendType.PARALLEL)
class ParallelCompressor(CompressionBackend):
    """
    Whole-tensor compressor on a torch device.

    Any failure while processing a tensor is raised as
    BackendExecutionFailure; no partial artifact is ever returned.
    """

    backend_type = BackendType.PARALLEL

    def __init__(
        self,
        enabled: bool = True,
        device_preference: str = "auto",
        max_buffer_elements: int = DEFAULT_MAX_BUFFER_ELEMENTS,
        probe_timeout_seconds: float = 5.0,
        capabilities: Optional[DeviceCapabilities] = None,
    ):
        self.enabled = enabled
        self.device_preference = device_preference
        self.max_buffer_elements = max_buffer_elements
        self.probe_timeout_seconds = probe_timeout_seconds
        self._capabilities = capabilities
        self._codec: Optional[ParallelCodec] = None
        self._init_lock = threading.Lock()
        self.last_scope: Optional[BufferScope] = None

    @property
    def capabilities(self) -> DeviceCapabilities:
        """Probe result; the first caller runs the probe, concurrent callers wait for it."""
        if self._capabilities is not None:
            return self._capabilities
        with self._init_lock:
            if self._capabilities is None:
                if not self.enabled:
                    self._capabilities = DeviceCapabilities(available=False, error="disabled by configuration")
                else:
                    self._capabilities = probe_capabilities(
                        self.device_preference,
                        self.max_buffer_elements,
                        self.probe_timeout_seconds,
                    )
            return self._capabilities

    @property
    def available(self) -> bool:
        return self.capabilities.available

    @property
    def codec(self) -> ParallelCodec:
        if not self.available:
            raise CapabilityUnavailable(self.capabilities.error or "parallel backend unavailable")
        if self._codec is None:
            caps = self.capabilities
            with self._init_lock:
                if self._codec is None:
                    self._codec = ParallelCodec(caps.device, caps.max_buffer_width, caps.max_buffer_elements)
        return self._codec

    def compress(self, model: Model, options: CompressionOptions) -> BackendOutput:
        codec = self.codec
        start_time = time.perf_counter()
        stats = BackendStats()
        entries = []

        scope = codec.scope()
        self.last_scope = scope
        try:
            with scope:
                for index, layer in enumerate(model.layers):
                    if not layer.has_weights:
                        entries.append(structural_entry(layer))
                        continue
                    compressed = []
                    for weight in layer.weights:
                        out, tensor_stats = codec.run_pipeline(weight, options, scope)
                        compressed.append(out)
                        stats.pruned += tensor_stats.pruned
                        stats.shared += tensor_stats.shared
                        stats.operations += tensor_stats.operations
                    rebuilt = build_layer(layer.kind, layer.config, compressed)
                    entries.append(LayerEntry(
                        kind=rebuilt.kind,
                        config=dict(rebuilt.config),
                        tensors=[encode_tensor(w.data, w.shape, w.dtype) for w in rebuilt.weights],
                    ))
        except BackendExecutionFailure:
            raise
        except Exception as e:
            raise BackendExecutionFailure(f"Parallel compression failed: {e}") from e

        stats.device_memory_used = scope.peak_bytes
        artifact = CompressedArtifact(
            backend_type=BackendType.PARALLEL,
            layers=entries,
            metadata={'model_name': model.name, 'options': options.to_dict()},
        )
        logger.debug(
            "Parallel compression of %d layers on %s took %.1fms (peak %d bytes)",
            len(model.layers), codec.device,
            (time.perf_counter() - start_time) * 1000, scope.peak_bytes,
        )
        return BackendOutput(artifact=artifact, stats=stats)

    def decompress(self, artifact: CompressedArtifact) -> Model:
        codec = self.codec
        scope = codec.scope()
        self.last_scope = scope
        with scope:
            return rebuild_model(artifact, lambda encoded: codec.gather(encoded, scope))
