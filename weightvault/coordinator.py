"""
Adaptive Coordinator
====================

Chooses between the sequential and parallel backends per request, recovers
from parallel failures by rerunning on the sequential path, and benchmarks
the two against each other.

Built once from a CoordinatorConfig and handed to whoever needs it.

Example:
    >>> coordinator = AdaptiveCoordinator(CoordinatorConfig())
    >>> artifact, result = coordinator.compress(model, CompressionOptions())
    >>> print(f"{result.ratio:.2f}x via {result.metadata['backend']}")
"""

import asyncio
import logging
import threading
import time
import tracemalloc
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Tuple

import numpy as np
import psutil

from .artifact import CompressedArtifact
from .backend_abstraction import BackendFactory, CompressionBackend
from .codec import BackendType, CompressionLevel, CompressionOptions, CompressionResult
from .exceptions import BackendExecutionFailure, CapabilityUnavailable, CorruptArtifactError
from .model import Model
from .parallel import DEFAULT_MAX_BUFFER_ELEMENTS, ParallelCompressor
from .sequential import SequentialCompressor


logger = logging.getLogger(__name__)


QUANTIZATION_LOSS = {
    CompressionLevel.FAST: 0.02,
    CompressionLevel.BALANCED: 0.05,
    CompressionLevel.MAXIMUM: 0.10,
}
PRUNING_LOSS = {
    CompressionLevel.FAST: 0.01,
    CompressionLevel.BALANCED: 0.03,
    CompressionLevel.MAXIMUM: 0.08,
}
SHARING_LOSS = 0.02
MAX_QUALITY_LOSS = 0.20

# tracemalloc is process-wide; benchmark runs take turns measuring
_TRACE_LOCK = threading.Lock()


@dataclass
class CoordinatorConfig:
    """Thresholds and device settings for backend selection."""
    parallel_min_total_weights: int = 10_000
    parallel_min_avg_layer_size: int = 1_000
    enable_parallel: bool = True
    probe_timeout_seconds: float = 5.0
    device_preference: str = "auto"
    max_buffer_elements: int = DEFAULT_MAX_BUFFER_ELEMENTS
    sparsity_sample_size: int = 10_000
    near_zero: float = 1e-6
    speedup_threshold: float = 1.5


@dataclass
class ModelAnalysis:
    total_weights: int
    layer_count: int
    avg_layer_size: float
    sparsity_estimate: float
    parallel_suitable: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CompressibilityReport:
    sparsity: float
    redundancy: float
    quantization_potential: float
    recommended_level: CompressionLevel

    def to_dict(self) -> dict:
        d = asdict(self)
        d['recommended_level'] = self.recommended_level.value
        return d


@dataclass
class BenchmarkReport:
    sequential_time: float
    parallel_time: Optional[float]
    speedup: float
    memory: Dict[str, Optional[int]]
    ratio: float
    estimated_quality_loss: float
    recommendation: BackendType
    quality_loss_is_estimate: bool = True

    def to_dict(self) -> dict:
        d = asdict(self)
        d['recommendation'] = self.recommendation.value
        return d


class AdaptiveCoordinator:
    """
    Routes compression requests to a backend.

    With `backend=auto` the parallel backend is used only when its probe
    succeeded and the model is big enough to amortise buffer uploads.
    """

    def __init__(self, config: Optional[CoordinatorConfig] = None,
                 sequential: Optional[CompressionBackend] = None,
                 parallel: Optional[CompressionBackend] = None):
        self.config = config or CoordinatorConfig()
        self.sequential = sequential or BackendFactory.create(BackendType.SEQUENTIAL)
        self.parallel = parallel or BackendFactory.create(
            BackendType.PARALLEL,
            enabled=self.config.enable_parallel,
            device_preference=self.config.device_preference,
            max_buffer_elements=self.config.max_buffer_elements,
            probe_timeout_seconds=self.config.probe_timeout_seconds,
        )
        self.benchmark_history: Dict[str, List[BenchmarkReport]] = {}

    # --------------------------------------------------------
    # Analysis
    # --------------------------------------------------------

    def _sample(self, values: np.ndarray) -> np.ndarray:
        limit = self.config.sparsity_sample_size
        if values.size <= limit:
            return values
        stride = values.size // limit
        return values[::stride][:limit]

    def analyze(self, model: Model) -> ModelAnalysis:
        total = model.total_weights
        layer_count = len(model.layers)
        avg_layer_size = total / layer_count if layer_count else 0.0

        near_zero = 0
        sampled = 0
        for tensor in model.weight_tensors():
            sample = self._sample(tensor.as_float32())
            near_zero += int((np.abs(sample) < self.config.near_zero).sum())
            sampled += sample.size
        sparsity = near_zero / sampled if sampled else 0.0

        return ModelAnalysis(
            total_weights=total,
            layer_count=layer_count,
            avg_layer_size=avg_layer_size,
            sparsity_estimate=sparsity,
            parallel_suitable=(
                total > self.config.parallel_min_total_weights
                and avg_layer_size > self.config.parallel_min_avg_layer_size
            ),
        )

    def analyze_compressibility(self, model: Model) -> CompressibilityReport:
        """Rough estimate of how well a model will compress."""
        tensors = model.weight_tensors()
        if not tensors:
            return CompressibilityReport(0.0, 0.0, 0.0, CompressionLevel.FAST)

        values = np.concatenate([t.as_float32() for t in tensors])
        sparsity = float((np.abs(values) < self.config.near_zero).mean())
        redundancy = 1.0 - len(np.unique(np.round(values, 3))) / values.size
        potential = 0.7 * redundancy + 0.3 * sparsity

        if potential > 0.7:
            level = CompressionLevel.MAXIMUM
        elif potential > 0.4:
            level = CompressionLevel.BALANCED
        else:
            level = CompressionLevel.FAST
        return CompressibilityReport(sparsity, redundancy, potential, level)

    def select_backend(self, model: Model, options: CompressionOptions) -> CompressionBackend:
        if options.backend == BackendType.SEQUENTIAL:
            return self.sequential
        if not self.parallel.available:
            if options.backend == BackendType.PARALLEL:
                logger.info("Parallel backend requested but unavailable; using sequential")
            return self.sequential
        if options.backend == BackendType.PARALLEL:
            return self.parallel
        if self.analyze(model).parallel_suitable:
            return self.parallel
        return self.sequential

    # --------------------------------------------------------
    # Compression
    # --------------------------------------------------------

    def compress(self, model: Model, options: Optional[CompressionOptions] = None
                 ) -> Tuple[CompressedArtifact, CompressionResult]:
        """
        Compress a model on the selected backend.

        Returns:
            (artifact, result); `result.metadata['backend']` names the backend
            that actually produced the artifact.
        """
        options = options or CompressionOptions()
        start_time = time.perf_counter()
        backend = self.select_backend(model, options)
        fallback_reason = None

        try:
            output = backend.compress(model, options)
        except Exception as e:
            if backend is self.sequential:
                raise
            if isinstance(e, (BackendExecutionFailure, CapabilityUnavailable)):
                fallback_reason = str(e)
            else:
                fallback_reason = f"{type(e).__name__}: {e}"

        if fallback_reason is not None:
            logger.warning("Parallel compression failed, falling back to sequential: %s", fallback_reason)
            backend = self.sequential
            output = backend.compress(model, options)

        artifact, stats = output.artifact, output.stats
        metadata = {
            'backend': backend.backend_type.value,
            'level': options.level.value,
            'quantization_bits': options.settings.bits if options.quantization else None,
            'pruned': stats.pruned,
            'shared': stats.shared,
            'operations': stats.operations,
            'layer_failures': stats.layer_failures,
            'elapsed_ms': (time.perf_counter() - start_time) * 1000,
        }
        if backend is self.parallel:
            metadata['parallel_ops'] = stats.operations
            metadata['device_memory_used'] = stats.device_memory_used
        if fallback_reason is not None:
            metadata['fallback'] = True
            metadata['fallback_reason'] = fallback_reason

        result = CompressionResult.from_sizes(
            model.raw_size, artifact.compressed_size, options.method_label(), metadata
        )
        logger.info(
            "Compressed %s on %s: %d -> %d bytes (%.2fx)",
            model.name or "<unnamed>", metadata['backend'],
            result.original_size, result.compressed_size, result.ratio,
        )
        return artifact, result

    def decompress(self, artifact: CompressedArtifact) -> Model:
        """
        Decode on the backend that wrote the artifact when it is available.

        Parallel failures are retried on the sequential path, which decodes
        every artifact. Corrupt artifacts are not retried.
        """
        if artifact.backend_type == BackendType.PARALLEL and self.parallel.available:
            try:
                return self.parallel.decompress(artifact)
            except CorruptArtifactError:
                raise
            except Exception as e:
                logger.warning(
                    "Parallel decompression failed, falling back to sequential: %s: %s",
                    type(e).__name__, e,
                )
        return self.sequential.decompress(artifact)

    async def compress_async(self, model: Model, options: Optional[CompressionOptions] = None
                             ) -> Tuple[CompressedArtifact, CompressionResult]:
        return await asyncio.to_thread(self.compress, model, options)

    async def decompress_async(self, artifact: CompressedArtifact) -> Model:
        return await asyncio.to_thread(self.decompress, artifact)

    # --------------------------------------------------------
    # Benchmarking
    # --------------------------------------------------------

    def benchmark(self, model: Model, options: Optional[CompressionOptions] = None) -> BenchmarkReport:
        """Time both backends on the same model; parallel only if available."""
        options = options or CompressionOptions(level=CompressionLevel.BALANCED)

        with _TRACE_LOCK:
            owns_trace = not tracemalloc.is_tracing()
            if owns_trace:
                tracemalloc.start()
            else:
                tracemalloc.reset_peak()
            baseline, _ = tracemalloc.get_traced_memory()
            try:
                start = time.perf_counter()
                seq_output = self.sequential.compress(model, options)
                sequential_time = time.perf_counter() - start
                _, peak = tracemalloc.get_traced_memory()
                sequential_peak = max(peak - baseline, 0)
            finally:
                if owns_trace:
                    tracemalloc.stop()

        parallel_time = None
        parallel_memory = None
        if self.parallel.available:
            try:
                start = time.perf_counter()
                par_output = self.parallel.compress(model, options)
                parallel_time = time.perf_counter() - start
                parallel_memory = par_output.stats.device_memory_used
            except BackendExecutionFailure as e:
                logger.warning("Parallel benchmark run failed: %s", e)

        speedup = sequential_time / parallel_time if parallel_time else 1.0
        compressed = seq_output.artifact.compressed_size
        report = BenchmarkReport(
            sequential_time=sequential_time,
            parallel_time=parallel_time,
            speedup=speedup,
            memory={'sequential': sequential_peak, 'parallel': parallel_memory},
            ratio=model.raw_size / compressed if compressed else 1.0,
            estimated_quality_loss=self.estimate_quality_loss(options),
            recommendation=(
                BackendType.PARALLEL if speedup > self.config.speedup_threshold
                else BackendType.SEQUENTIAL
            ),
        )
        self.benchmark_history.setdefault(model.name or "<unnamed>", []).append(report)
        logger.info(
            "Benchmark %s: sequential %.3fs, parallel %s, recommend %s",
            model.name or "<unnamed>", sequential_time,
            f"{parallel_time:.3f}s" if parallel_time is not None else "n/a",
            report.recommendation.value,
        )
        return report

    @staticmethod
    def estimate_quality_loss(options: CompressionOptions) -> float:
        """Static heuristic, not a measurement."""
        loss = 0.0
        if options.quantization:
            loss += QUANTIZATION_LOSS[options.level]
        if options.pruning:
            loss += PRUNING_LOSS[options.level]
        if options.weight_sharing:
            loss += SHARING_LOSS
        return min(loss, MAX_QUALITY_LOSS)

    def capabilities(self) -> dict:
        caps = self.parallel.capabilities if isinstance(self.parallel, ParallelCompressor) else None
        return {
            'sequential': True,
            'parallel': self.parallel.available,
            'device': caps.device if caps else None,
            'float_buffers': caps.float_buffers if caps else False,
            'max_buffer_elements': caps.max_buffer_elements if caps else 0,
            'probe_error': caps.error if caps else None,
            'host_memory_gb': round(psutil.virtual_memory().total / (1024**3), 2),
            'cpu_count': psutil.cpu_count(),
        }
