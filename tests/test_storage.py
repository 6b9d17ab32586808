"""Tests for the versioned storage service."""

import json
from contextlib import asynccontextmanager
from pathlib import Path

import numpy as np
import pytest

from weightvault.blob import pack_blob, unpack_blob
from weightvault.codec import CompressionOptions
from weightvault.delta import diff
from weightvault.exceptions import CorruptArtifactError, TopologyMismatchError, ValidationError
from weightvault.model import Model

from conftest import make_mixed_model
from vault_api.services.artifact_store import LocalArtifactStore
from vault_api.services.model_storage import ModelStorageService

DAY_MS = 24 * 60 * 60 * 1000


@pytest.mark.asyncio
async def test_save_then_load_round_trip(storage, dense_model, clock):
    record = await storage.save("mnist", dense_model, performance={'accuracy': 0.97}, scaler={'mean': 0.5})
    assert record.version == str(clock.now)
    assert record.backend_type == "sequential"

    clock.advance(5_000)
    loaded = await storage.load("mnist")
    assert loaded is not None
    assert loaded.model.topology() == dense_model.topology()
    assert [l.kind for l in loaded.model.layers] == [l.kind for l in dense_model.layers]
    assert loaded.performance == {'accuracy': 0.97}
    assert loaded.scaler == {'mean': 0.5}
    assert loaded.training_data_hash == dense_model.fingerprint()
    assert loaded.record.last_used_at == clock.now
    assert loaded.metadata.last_used_at == clock.now

    listed = await storage.list_metadata()
    assert listed[0].last_used_at == clock.now


@pytest.mark.asyncio
async def test_load_missing_returns_none(storage):
    assert await storage.load("nothing") is None
    assert await storage.export("nothing") is None
    assert not await storage.exists("nothing")


@pytest.mark.asyncio
async def test_versions_are_monotonic(storage, dense_model, clock):
    first = await storage.save("m", dense_model)
    second = await storage.save("m", dense_model)
    assert int(second.version) == int(first.version) + 1

    clock.advance(60_000)
    third = await storage.save("m", dense_model)
    assert third.version == str(clock.now)
    assert third.created_at == first.created_at


@pytest.mark.asyncio
async def test_new_save_supersedes_previous_artifact(storage, artifact_store, dense_model):
    first = await storage.save("m", dense_model)
    second = await storage.save("m", dense_model)
    assert not await artifact_store.exists(first.artifact_key)
    assert await artifact_store.exists(second.artifact_key)
    assert len(await storage.list_metadata()) == 1


@pytest.mark.asyncio
async def test_failed_row_swap_removes_new_artifact(storage, settings, dense_model, monkeypatch):
    def broken_transaction():
        raise RuntimeError("database is locked")

    monkeypatch.setattr(storage.database, "transaction", broken_transaction)
    with pytest.raises(RuntimeError):
        await storage.save("m", dense_model)
    assert not await storage.exists("m")
    assert list(Path(settings.artifact_dir).rglob("*.wva")) == []


@pytest.mark.asyncio
async def test_failed_resave_keeps_previous_version(storage, artifact_store, dense_model, monkeypatch):
    first = await storage.save("m", dense_model)

    @asynccontextmanager
    async def failing_transaction():
        async with storage.database.session() as session:
            yield session
            raise RuntimeError("disk I/O error")

    monkeypatch.setattr(storage.database, "transaction", failing_transaction)
    with pytest.raises(RuntimeError):
        await storage.save("m", dense_model)
    monkeypatch.undo()

    record = await storage.get_metadata("m")
    assert record.version == first.version
    assert await artifact_store.exists(first.artifact_key)
    loaded = await storage.load("m")
    assert loaded.model.topology() == dense_model.topology()


@pytest.mark.asyncio
async def test_delete(storage, artifact_store, dense_model):
    record = await storage.save("m", dense_model)
    assert await storage.delete("m")
    assert not await storage.exists("m")
    assert not await artifact_store.exists(record.artifact_key)
    assert not await storage.delete("m")


@pytest.mark.asyncio
async def test_names_with_slashes_stay_inside_the_store(storage, dense_model):
    record = await storage.save("team/model:v1", dense_model)
    assert record.artifact_key.startswith("team%2Fmodel%3Av1/")
    assert (await storage.load("team/model:v1")) is not None


@pytest.mark.asyncio
async def test_invalid_name_rejected(storage, dense_model):
    with pytest.raises(ValidationError):
        await storage.save("..", dense_model)


@pytest.mark.asyncio
async def test_cleanup_boundary(storage, dense_model, clock):
    await storage.save("old", dense_model)
    clock.advance(10 * DAY_MS)
    await storage.save("fresh", dense_model)

    clock.advance(5 * DAY_MS)
    # "old" is exactly 15 days unused, "fresh" 5 days
    assert await storage.cleanup(max_age_ms=15 * DAY_MS) == 0
    clock.advance(1)
    assert await storage.cleanup(max_age_ms=15 * DAY_MS) == 1
    assert not await storage.exists("old")
    assert await storage.exists("fresh")


@pytest.mark.asyncio
async def test_cleanup_defaults_to_thirty_days(storage, dense_model, clock):
    await storage.save("m", dense_model)
    clock.advance(30 * DAY_MS)
    assert await storage.cleanup() == 0
    clock.advance(1)
    assert await storage.cleanup() == 1


@pytest.mark.asyncio
async def test_load_refreshes_age(storage, dense_model, clock):
    await storage.save("m", dense_model)
    clock.advance(20 * DAY_MS)
    await storage.load("m")
    clock.advance(20 * DAY_MS)
    assert await storage.cleanup() == 0


@pytest.mark.asyncio
async def test_stats(storage, dense_model, mixed_model, clock):
    empty = await storage.stats()
    assert empty.total_records == 0
    assert empty.oldest is None

    a = await storage.save("a", dense_model)
    clock.advance(1000)
    b = await storage.save("b", mixed_model)
    stats = await storage.stats()
    assert stats.total_records == 2
    assert stats.total_original_size == dense_model.raw_size + mixed_model.raw_size
    assert stats.total_compressed_size == a.compression['compressed_size'] + b.compression['compressed_size']
    assert stats.total_savings == stats.total_original_size - stats.total_compressed_size
    assert stats.avg_ratio == pytest.approx((a.compression['ratio'] + b.compression['ratio']) / 2)
    assert stats.oldest == a.created_at
    assert stats.newest == b.created_at


@pytest.mark.asyncio
async def test_missing_artifact_is_corrupt(storage, artifact_store, dense_model):
    record = await storage.save("m", dense_model)
    await artifact_store.delete(record.artifact_key)
    with pytest.raises(CorruptArtifactError):
        await storage.load("m")


@pytest.mark.asyncio
async def test_garbled_artifact_is_corrupt(storage, artifact_store, dense_model):
    record = await storage.save("m", dense_model)
    await artifact_store.put(record.artifact_key, b"garbage")
    with pytest.raises(CorruptArtifactError):
        await storage.load("m")


@pytest.mark.asyncio
async def test_zero_dimension_artifact_is_corrupt(storage, artifact_store, dense_model):
    record = await storage.save("m", dense_model)
    data = await artifact_store.get(record.artifact_key)
    await artifact_store.put(record.artifact_key, data.replace(b'"shape": [16, 32]', b'"shape": [ 0, 32]', 1))
    with pytest.raises(CorruptArtifactError):
        await storage.load("m")


class TestExportImport:
    @pytest.mark.asyncio
    async def test_export_document(self, storage, dense_model):
        record = await storage.save("m", dense_model, performance={'loss': 0.1})
        data = await storage.export("m")
        assert data[:2] == b'\x1f\x8b'
        doc = unpack_blob(data)
        assert doc['name'] == "m"
        assert doc['version'] == record.version
        assert doc['performance'] == {'loss': 0.1}
        assert doc['level'] == "balanced"
        assert len(doc['model']['layers']) == len(dense_model.layers)

    @pytest.mark.asyncio
    async def test_import_round_trip(self, storage, mixed_model, clock):
        await storage.save("orig", mixed_model, scaler=[1, 2, 3])
        data = await storage.export("orig")
        await storage.delete("orig")

        clock.advance(1000)
        name = await storage.import_(data)
        assert name == "orig"
        loaded = await storage.load("orig")
        assert loaded.scaler == [1, 2, 3]
        assert loaded.model.topology() == mixed_model.topology()
        assert loaded.record.metadata['imported_level'] == "balanced"

    @pytest.mark.asyncio
    async def test_import_reapplies_current_policy(self, storage, dense_model):
        await storage.save("m", dense_model, options=CompressionOptions(level="maximum"))
        data = await storage.export("m")
        await storage.import_(data)
        meta = (await storage.list_metadata())[0]
        assert meta.level == "balanced"
        loaded = await storage.load("m")
        assert loaded.record.metadata['imported_level'] == "maximum"

    @pytest.mark.asyncio
    async def test_import_requires_name_and_version(self, storage):
        blob = pack_blob({'model': {'layers': []}})
        with pytest.raises(ValidationError) as exc:
            await storage.import_(blob.data)
        assert "name" in str(exc.value)
        assert "version" in str(exc.value)

    @pytest.mark.asyncio
    async def test_import_rejects_length_mismatch(self, storage, dense_model):
        doc = {'name': "bad", 'version': "1", 'model': dense_model.to_dict()}
        doc['model']['layers'][0]['weights'][0]['shape'] = [16, 33]
        with pytest.raises(ValidationError) as exc:
            await storage.import_(pack_blob(doc).data)
        assert "layer 0 tensor 0" in str(exc.value)
        assert not await storage.exists("bad")

    @pytest.mark.asyncio
    async def test_import_rejects_unknown_layer_kind(self, storage, dense_model):
        doc = {'name': "bad", 'version': "1", 'model': dense_model.to_dict()}
        doc['model']['layers'][1]['kind'] = "mystery"
        with pytest.raises(ValidationError):
            await storage.import_(pack_blob(doc).data)

    @pytest.mark.asyncio
    async def test_import_rejects_garbage(self, storage):
        with pytest.raises(ValidationError):
            await storage.import_(b"\x1f\x8b garbage")
        with pytest.raises(ValidationError):
            await storage.import_(json.dumps([1, 2]).encode())


class TestDifferentialUpdates:
    @pytest.mark.asyncio
    async def test_create_and_apply(self, storage, dense_model):
        delta_base_version = (await storage.save("m", dense_model)).version
        stored = (await storage.load("m")).model

        rng = np.random.default_rng(4)
        new = Model.from_dict(stored.to_dict())
        for w in new.weight_tensors():
            w.data = w.data + rng.normal(0, 0.01, size=w.size).astype(np.float32)

        delta = await storage.create_differential_update("m", new)
        assert delta is not None
        record = await storage.apply_differential_update("m", delta)
        assert record.metadata["delta_applied"] is True
        assert int(record.version) > int(delta_base_version)

        reloaded = await storage.load("m")
        assert reloaded.model.topology() == new.topology()
        assert reloaded.metadata.level == "balanced"

    @pytest.mark.asyncio
    async def test_delta_against_missing_model(self, storage, dense_model):
        assert await storage.create_differential_update("nope", dense_model) is None
        delta = diff(dense_model, dense_model)
        assert await storage.apply_differential_update("nope", delta) is None

    @pytest.mark.asyncio
    async def test_topology_mismatch(self, storage, dense_model):
        await storage.save("m", dense_model)
        with pytest.raises(TopologyMismatchError):
            await storage.create_differential_update("m", make_mixed_model())


def test_next_version():
    assert ModelStorageService.next_version(100, None) == "100"
    assert ModelStorageService.next_version(100, "50") == "100"
    assert ModelStorageService.next_version(100, "100") == "101"
    assert ModelStorageService.next_version(100, "250") == "251"


@pytest.mark.asyncio
async def test_local_store_rejects_escaping_keys(tmp_path):
    store = LocalArtifactStore(str(tmp_path / "root"))
    with pytest.raises(ValueError):
        await store.put("../outside.bin", b"x")
    assert await store.get("missing/key") is None
    assert not await store.delete("missing/key")
