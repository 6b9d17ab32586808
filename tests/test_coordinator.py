"""Tests for backend selection, fallback, benchmarking and the scenario ratios."""

import tracemalloc
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from weightvault.backend_abstraction import BackendOutput, CompressionBackend
from weightvault.codec import BackendType, CompressionLevel, CompressionOptions
from weightvault.coordinator import AdaptiveCoordinator, CoordinatorConfig
from weightvault.exceptions import BackendExecutionFailure, CorruptArtifactError
from weightvault.model import Model, dense
from weightvault.parallel import ParallelCompressor

from conftest import make_dense_model


class ExplodingParallel(CompressionBackend):
    """Parallel stand-in that reports itself available and always fails."""

    backend_type = BackendType.PARALLEL

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    def compress(self, model, options) -> BackendOutput:
        self.calls += 1
        raise self.error

    def decompress(self, artifact):
        raise self.error


class TestAnalysis:
    def test_small_model_not_parallel_suitable(self, coordinator, dense_model):
        analysis = coordinator.analyze(dense_model)
        assert analysis.total_weights == dense_model.total_weights
        assert analysis.layer_count == 3
        assert not analysis.parallel_suitable

    def test_large_model_parallel_suitable(self, coordinator, large_model):
        analysis = coordinator.analyze(large_model)
        assert analysis.avg_layer_size == large_model.total_weights / 2
        assert analysis.parallel_suitable

    def test_sparsity_estimate(self, coordinator):
        kernel = np.zeros((100, 100), dtype=np.float32)
        kernel[:, :25] = 1.0
        analysis = coordinator.analyze(Model(layers=[dense(100, kernel)]))
        assert analysis.sparsity_estimate == pytest.approx(0.75, abs=0.01)

    def test_compressibility_recommendation(self, coordinator):
        sparse = np.zeros((50, 50), dtype=np.float32)
        sparse[0, 0] = 1.0
        report = coordinator.analyze_compressibility(Model(layers=[dense(50, sparse)]))
        assert report.sparsity > 0.99
        assert report.recommended_level == CompressionLevel.MAXIMUM

        rng = np.random.default_rng(0)
        noisy = rng.normal(size=(50, 50)).astype(np.float32) * 100
        report = coordinator.analyze_compressibility(Model(layers=[dense(50, noisy)]))
        assert report.recommended_level == CompressionLevel.FAST

    def test_empty_model(self, coordinator):
        report = coordinator.analyze_compressibility(Model())
        assert report.recommended_level == CompressionLevel.FAST


class TestSelection:
    def test_auto_picks_sequential_for_small_models(self, coordinator, dense_model):
        _, result = coordinator.compress(dense_model, CompressionOptions())
        assert result.metadata['backend'] == "sequential"

    def test_auto_picks_parallel_for_large_models(self, coordinator, large_model):
        artifact, result = coordinator.compress(large_model, CompressionOptions())
        assert result.metadata['backend'] == "parallel"
        assert artifact.backend_type == BackendType.PARALLEL
        assert result.metadata['device_memory_used'] > 0
        assert result.metadata['parallel_ops'] > 0

    def test_explicit_sequential(self, coordinator, large_model):
        _, result = coordinator.compress(large_model, CompressionOptions(backend="sequential"))
        assert result.metadata['backend'] == "sequential"

    def test_explicit_parallel_on_small_model(self, coordinator, dense_model):
        _, result = coordinator.compress(dense_model, CompressionOptions(backend="parallel"))
        assert result.metadata['backend'] == "parallel"

    def test_parallel_request_silently_uses_sequential_when_unavailable(self, sequential_only, large_model):
        artifact, result = sequential_only.compress(large_model, CompressionOptions(backend="parallel"))
        assert result.metadata['backend'] == "sequential"
        assert artifact.backend_type == BackendType.SEQUENTIAL
        assert 'fallback' not in result.metadata

    def test_thresholds_are_tunable(self, dense_model):
        coordinator = AdaptiveCoordinator(CoordinatorConfig(
            parallel_min_total_weights=10,
            parallel_min_avg_layer_size=10,
            device_preference="cpu",
        ))
        _, result = coordinator.compress(dense_model, CompressionOptions())
        assert result.metadata['backend'] == "parallel"


class TestFallback:
    def test_execution_failure_falls_back(self, large_model, caplog):
        parallel = ExplodingParallel(BackendExecutionFailure("device lost"))
        coordinator = AdaptiveCoordinator(CoordinatorConfig(), parallel=parallel)
        artifact, result = coordinator.compress(large_model, CompressionOptions())
        assert parallel.calls == 1
        assert artifact.backend_type == BackendType.SEQUENTIAL
        assert result.metadata['backend'] == "sequential"
        assert result.metadata['fallback'] is True
        assert "device lost" in result.metadata['fallback_reason']
        assert any("falling back" in r.message for r in caplog.records)

    def test_unexpected_error_falls_back(self, large_model):
        parallel = ExplodingParallel(MemoryError("out of device memory"))
        coordinator = AdaptiveCoordinator(CoordinatorConfig(), parallel=parallel)
        _, result = coordinator.compress(large_model, CompressionOptions(backend="parallel"))
        assert result.metadata['fallback'] is True
        assert "MemoryError" in result.metadata['fallback_reason']

    def test_fallback_result_matches_sequential(self, large_model, sequential_only):
        parallel = ExplodingParallel(BackendExecutionFailure("boom"))
        coordinator = AdaptiveCoordinator(CoordinatorConfig(), parallel=parallel)
        fallback_artifact, _ = coordinator.compress(large_model, CompressionOptions())
        plain_artifact, _ = sequential_only.compress(large_model, CompressionOptions())
        assert fallback_artifact.compressed_size == plain_artifact.compressed_size

    def test_parallel_artifact_decodes_without_parallel(self, coordinator, sequential_only, large_model):
        artifact, _ = coordinator.compress(large_model, CompressionOptions(backend="parallel"))
        assert artifact.backend_type == BackendType.PARALLEL
        restored = sequential_only.decompress(artifact)
        assert restored.topology() == large_model.topology()

    def test_parallel_decode_failure_falls_back(self, coordinator, large_model, monkeypatch, caplog):
        artifact, _ = coordinator.compress(large_model, CompressionOptions(backend="parallel"))

        def broken(*args, **kwargs):
            raise RuntimeError("CUDA out of memory")

        monkeypatch.setattr("weightvault.parallel.ParallelCodec.gather", broken)
        restored = coordinator.decompress(artifact)
        assert restored.topology() == large_model.topology()
        assert any("falling back" in r.message for r in caplog.records)

    def test_corrupt_artifact_is_not_retried(self, dense_model, sequential_only):
        artifact, _ = sequential_only.compress(dense_model, CompressionOptions())
        artifact.backend_type = BackendType.PARALLEL
        parallel = ExplodingParallel(CorruptArtifactError("bad codebook"))
        coordinator = AdaptiveCoordinator(CoordinatorConfig(), parallel=parallel)
        with pytest.raises(CorruptArtifactError):
            coordinator.decompress(artifact)


class TestScenario:
    def test_balanced_1024_weights(self, sequential_only, scenario_model):
        assert scenario_model.total_weights == 1024
        artifact, result = sequential_only.compress(scenario_model, CompressionOptions())
        assert result.original_size == 4096
        assert result.ratio >= 1.2
        assert result.method_label == "Quantization + Pruning"
        assert result.metadata['quantization_bits'] == 8

        again, second = sequential_only.compress(scenario_model, CompressionOptions())
        assert again.to_bytes() == artifact.to_bytes()
        assert second.ratio == result.ratio

    def test_higher_levels_shrink(self, sequential_only, scenario_model):
        sizes = {}
        for level in CompressionLevel:
            _, result = sequential_only.compress(scenario_model, CompressionOptions(level=level))
            sizes[level] = result.compressed_size
        assert sizes[CompressionLevel.MAXIMUM] <= sizes[CompressionLevel.BALANCED]
        assert sizes[CompressionLevel.BALANCED] <= sizes[CompressionLevel.FAST]

    def test_level_ordering_on_uniform_weights(self, sequential_only):
        sizes = {level: [] for level in CompressionLevel}
        for seed in range(5):
            rng = np.random.default_rng(seed)
            kernel = rng.uniform(-1.0, 1.0, size=(100, 100)).astype(np.float32)
            model = Model(layers=[dense(100, kernel)])
            for level in CompressionLevel:
                _, result = sequential_only.compress(model, CompressionOptions(level=level))
                sizes[level].append(result.compressed_size)
        mean = {level: np.mean(values) for level, values in sizes.items()}
        assert mean[CompressionLevel.MAXIMUM] <= mean[CompressionLevel.BALANCED]
        assert mean[CompressionLevel.BALANCED] <= mean[CompressionLevel.FAST]

    def test_round_trip_shape(self, sequential_only, scenario_model):
        artifact, _ = sequential_only.compress(scenario_model, CompressionOptions())
        restored = sequential_only.decompress(artifact)
        assert [l.kind for l in restored.layers] == [l.kind for l in scenario_model.layers]
        assert restored.topology() == scenario_model.topology()


class TestQualityLoss:
    @pytest.mark.parametrize("level,expected", [
        ("fast", 0.03),
        ("balanced", 0.08),
        ("maximum", 0.18),
    ])
    def test_default_techniques(self, level, expected):
        loss = AdaptiveCoordinator.estimate_quality_loss(CompressionOptions(level=level))
        assert loss == pytest.approx(expected)

    def test_capped(self):
        options = CompressionOptions(level="maximum", weight_sharing=True)
        assert AdaptiveCoordinator.estimate_quality_loss(options) == pytest.approx(0.20)

    def test_sharing_only(self):
        options = CompressionOptions(quantization=False, pruning=False, weight_sharing=True)
        assert AdaptiveCoordinator.estimate_quality_loss(options) == pytest.approx(0.02)


class TestBenchmark:
    def test_runs_both_backends(self, coordinator, large_model):
        report = coordinator.benchmark(large_model)
        assert report.sequential_time > 0
        assert report.parallel_time is not None
        assert report.memory['sequential'] > 0
        assert report.memory['parallel'] > 0
        assert report.estimated_quality_loss == pytest.approx(0.08)
        assert report.quality_loss_is_estimate
        expected = BackendType.PARALLEL if report.speedup > 1.5 else BackendType.SEQUENTIAL
        assert report.recommendation == expected
        assert coordinator.benchmark_history["large"] == [report]

    def test_sequential_only(self, sequential_only, dense_model):
        report = sequential_only.benchmark(dense_model)
        assert report.parallel_time is None
        assert report.memory['parallel'] is None
        assert report.speedup == 1.0
        assert report.recommendation == BackendType.SEQUENTIAL

    def test_leaves_outer_memory_trace_running(self, sequential_only, dense_model):
        tracemalloc.start()
        try:
            report = sequential_only.benchmark(dense_model)
            assert tracemalloc.is_tracing()
            assert report.memory['sequential'] >= 0
        finally:
            tracemalloc.stop()

    def test_concurrent_runs(self, sequential_only):
        models = [make_dense_model(seed=seed, name=f"net-{seed}") for seed in range(4)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            reports = list(pool.map(sequential_only.benchmark, models))
        assert all(r.sequential_time > 0 for r in reports)
        assert all(r.memory['sequential'] > 0 for r in reports)
        assert not tracemalloc.is_tracing()
        assert sorted(sequential_only.benchmark_history) == [f"net-{seed}" for seed in range(4)]


def test_capabilities(coordinator, sequential_only):
    caps = coordinator.capabilities()
    assert caps['sequential'] is True
    assert caps['parallel'] is True
    assert caps["device"] == "cpu"
    assert caps["host_memory_gb"] > 0
    assert caps["cpu_count"] >= 1

    caps = sequential_only.capabilities()
    assert caps['parallel'] is False
    assert caps['probe_error'] == "disabled by configuration"


def test_default_parallel_backend_is_torch_compressor():
    assert isinstance(AdaptiveCoordinator(CoordinatorConfig(enable_parallel=False)).parallel, ParallelCompressor)


@pytest.mark.asyncio
async def test_async_wrappers(coordinator, dense_model):
    artifact, result = await coordinator.compress_async(dense_model)
    restored = await coordinator.decompress_async(artifact)
    assert restored.topology() == dense_model.topology()
    assert result.ratio > 1.0
