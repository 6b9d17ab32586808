"""
Shared fixtures: synthetic models, a temporary SQLite database, a local
artifact store and a controllable clock.
"""

import numpy as np
import pytest
import pytest_asyncio

from weightvault.codec import CompressionOptions
from weightvault.coordinator import AdaptiveCoordinator, CoordinatorConfig
from weightvault.model import Layer, LayerKind, Model, build_layer, dense, dropout, flatten, WeightTensor

from vault_api.config import Settings
from vault_api.database import Database
from vault_api.services.artifact_store import LocalArtifactStore
from vault_api.services.model_storage import ModelStorageService


class FakeClock:
    """Epoch-ms clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


def make_dense_model(units=(32, 32), inputs: int = 16, seed: int = 0, name: str = "dense-net") -> Model:
    rng = np.random.default_rng(seed)
    layers = []
    fan_in = inputs
    for i, u in enumerate(units):
        kernel = rng.normal(0.0, 0.5, size=(fan_in, u)).astype(np.float32)
        bias = rng.normal(0.0, 0.1, size=(u,)).astype(np.float32)
        layers.append(dense(u, kernel, bias, activation="relu"))
        if i == 0:
            layers.append(dropout(0.2))
        fan_in = u
    return Model(layers=layers, name=name)


def make_scenario_model() -> Model:
    """1,024 weights: one 32x32 dense kernel with a fixed seed."""
    rng = np.random.default_rng(42)
    kernel = rng.uniform(-1.0, 1.0, size=(32, 32)).astype(np.float32)
    return Model(layers=[flatten(), dense(32, kernel)], name="scenario")


def make_large_model(seed: int = 1) -> Model:
    """Big enough for automatic parallel selection (> 10k weights, > 1k per layer)."""
    rng = np.random.default_rng(seed)
    return Model(
        layers=[
            dense(128, rng.normal(0, 0.3, size=(128, 128)).astype(np.float32)),
            dense(64, rng.normal(0, 0.3, size=(128, 64)).astype(np.float32)),
        ],
        name="large",
    )


def make_mixed_model(seed: int = 3) -> Model:
    rng = np.random.default_rng(seed)
    conv = build_layer(
        LayerKind.CONVOLUTION,
        {'filters': 4, 'kernel_size': [3, 3]},
        [WeightTensor.from_array(rng.normal(size=(3, 3, 1, 4)).astype(np.float32)),
         WeightTensor.from_array(np.zeros(4, dtype=np.float32))],
    )
    pool = build_layer(LayerKind.POOLING, {'pool_size': [2, 2]}, [])
    recurrent = build_layer(
        LayerKind.RECURRENT,
        {'units': 8},
        [WeightTensor.from_array(rng.normal(size=(36, 8)).astype(np.float32))],
    )
    return Model(
        layers=[conv, pool, flatten(), recurrent, dense(4, rng.normal(size=(8, 4)).astype(np.float32))],
        name="mixed",
    )


@pytest.fixture
def dense_model() -> Model:
    return make_dense_model()


@pytest.fixture
def scenario_model() -> Model:
    return make_scenario_model()


@pytest.fixture
def large_model() -> Model:
    return make_large_model()


@pytest.fixture
def mixed_model() -> Model:
    return make_mixed_model()


@pytest.fixture
def coordinator() -> AdaptiveCoordinator:
    return AdaptiveCoordinator(CoordinatorConfig(device_preference="cpu"))


@pytest.fixture
def sequential_only() -> AdaptiveCoordinator:
    return AdaptiveCoordinator(CoordinatorConfig(enable_parallel=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'vault.db'}",
        artifact_store="local",
        artifact_dir=str(tmp_path / "artifacts"),
        device_preference="cpu",
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def artifact_store(settings) -> LocalArtifactStore:
    return LocalArtifactStore(settings.artifact_dir)


@pytest_asyncio.fixture
async def storage(database, artifact_store, settings, clock) -> ModelStorageService:
    coordinator = AdaptiveCoordinator(settings.coordinator_config())
    return ModelStorageService(database, artifact_store, coordinator, settings, clock=clock)


@pytest.fixture
def balanced() -> CompressionOptions:
    return CompressionOptions()
