"""
Versioned Model Storage
=======================

Persists compressed models with the metadata needed for exact-version
retrieval, differential updates and age-based garbage collection.

Each name has exactly one live record. A save writes the new artifact
first, then swaps both table rows in one transaction, then removes the
superseded artifact. If the row swap fails the new artifact is removed
again. Concurrent saves to the same name race and the last
writer wins.
"""

import asyncio
import base64
import hashlib
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import numpy as np
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from sqlalchemy import delete, select, update

from weightvault.artifact import CompressedArtifact
from weightvault.blob import pack_blob, unpack_blob
from weightvault.codec import CompressionLevel, CompressionOptions
from weightvault.coordinator import AdaptiveCoordinator
from weightvault.delta import DeltaArtifact, apply_delta, diff
from weightvault.exceptions import (
    CorruptArtifactError,
    LayerReconstructionError,
    ValidationError,
)
from weightvault.model import Model, SUPPORTED_DTYPES

from vault_api.config import Settings
from vault_api.database import Database
from vault_api.db_models import MetadataRow, RecordRow
from vault_api.services.artifact_store import ArtifactStore


logger = logging.getLogger(__name__)

EXPORT_FORMAT = "weightvault-export"
EXPORT_FORMAT_VERSION = 1

Clock = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


# ============== Results ==============

@dataclass
class StorageRecord:
    name: str
    version: str
    artifact_key: str
    content_hash: str
    backend_type: str
    compression: Dict[str, Any]
    created_at: int
    updated_at: int
    last_used_at: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: RecordRow) -> 'StorageRecord':
        return cls(
            name=row.name,
            version=row.version,
            artifact_key=row.artifact_key,
            content_hash=row.content_hash,
            backend_type=row.backend_type,
            compression=dict(row.compression or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_used_at=row.last_used_at,
            metadata=dict(row.extra or {}),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ModelMetadata:
    name: str
    version: str
    size: int
    original_size: int
    ratio: float
    method: str
    level: str
    savings: int
    performance: Optional[Dict[str, Any]]
    created_at: int
    updated_at: int
    last_used_at: int

    @classmethod
    def from_row(cls, row: MetadataRow) -> 'ModelMetadata':
        return cls(
            name=row.name,
            version=row.version,
            size=row.size,
            original_size=row.original_size,
            ratio=row.ratio,
            method=row.method,
            level=row.level,
            savings=row.savings,
            performance=row.performance,
            created_at=row.created_at,
            updated_at=row.updated_at,
            last_used_at=row.last_used_at,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LoadedModel:
    model: Model
    record: StorageRecord
    metadata: ModelMetadata
    performance: Optional[Dict[str, Any]] = None
    scaler: Optional[Any] = None
    training_data_hash: Optional[str] = None


@dataclass
class StorageStats:
    total_records: int
    total_compressed_size: int
    total_original_size: int
    total_savings: int
    avg_ratio: float
    oldest: Optional[int]
    newest: Optional[int]

    def to_dict(self) -> dict:
        return asdict(self)


# ============== Export document schema ==============

class TensorDocument(BaseModel):
    shape: List[int] = Field(..., min_length=1)
    dtype: str = "float32"
    data: str

    @field_validator("shape")
    @classmethod
    def positive_dims(cls, v: List[int]) -> List[int]:
        if any(d <= 0 for d in v):
            raise ValueError("shape dimensions must be positive")
        return v

    @field_validator("dtype")
    @classmethod
    def known_dtype(cls, v: str) -> str:
        if v not in SUPPORTED_DTYPES:
            raise ValueError(f"unsupported dtype {v!r}")
        return v

    def check_length(self, where: str):
        try:
            raw = base64.b64decode(self.data, validate=True)
        except ValueError:
            raise ValidationError(f"{where}: weight data is not valid base64") from None
        expected = int(np.prod(self.shape)) * np.dtype(SUPPORTED_DTYPES[self.dtype]).itemsize
        if len(raw) != expected:
            raise ValidationError(
                f"{where}: shape {self.shape} needs {expected} bytes, got {len(raw)}"
            )


class LayerDocument(BaseModel):
    kind: str
    config: Dict[str, Any] = Field(default_factory=dict)
    weights: List[TensorDocument] = Field(default_factory=list)


class ModelDocument(BaseModel):
    name: Optional[str] = None
    layers: List[LayerDocument]


class ExportDocument(BaseModel):
    format: str = EXPORT_FORMAT
    format_version: int = EXPORT_FORMAT_VERSION
    name: str = Field(..., min_length=1, max_length=255)
    version: str = Field(..., min_length=1)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    last_used_at: Optional[int] = None
    level: Optional[str] = None
    performance: Optional[Dict[str, Any]] = None
    scaler: Optional[Any] = None
    training_data_hash: Optional[str] = None
    compression: Optional[Dict[str, Any]] = None
    model: ModelDocument


# ============== Service ==============

class ModelStorageService:
    """
    Save, load and garbage-collect compressed models.

    Usage:
        storage = ModelStorageService(db, store, coordinator, settings)
        record = await storage.save("mnist", model)
        loaded = await storage.load("mnist")
    """

    def __init__(
        self,
        database: Database,
        artifact_store: ArtifactStore,
        coordinator: AdaptiveCoordinator,
        settings: Settings,
        clock: Clock = epoch_ms,
    ):
        self.database = database
        self.store = artifact_store
        self.coordinator = coordinator
        self.settings = settings
        self.clock = clock

    @staticmethod
    def artifact_key(name: str, version: str) -> str:
        return f"{quote(name, safe='')}/{version}.wva"

    @staticmethod
    def next_version(now_ms: int, previous: Optional[str]) -> str:
        """Monotonic per-name version token."""
        if previous is None:
            return str(now_ms)
        try:
            prev = int(previous)
        except ValueError:
            return str(now_ms)
        return str(max(now_ms, prev + 1))

    async def _get_rows(self, name: str):
        async with self.database.session() as session:
            record = await session.get(RecordRow, name)
            meta = await session.get(MetadataRow, name)
            return record, meta

    # ---------- save ----------

    async def save(
        self,
        name: str,
        model: Model,
        options: Optional[CompressionOptions] = None,
        performance: Optional[Dict[str, Any]] = None,
        scaler: Optional[Any] = None,
        training_data_hash: Optional[str] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> StorageRecord:
        """
        Compress and persist a model under `name`, superseding any previous
        version.
        """
        if not name or name in (".", ".."):
            raise ValidationError(f"Invalid model name: {name!r}")
        options = options or self.settings.default_options()

        artifact, result = await self.coordinator.compress_async(model, options)
        data = artifact.to_bytes()
        content_hash = hashlib.sha256(data).hexdigest()

        previous, _ = await self._get_rows(name)
        previous_key = previous.artifact_key if previous is not None else None
        now = self.clock()
        version = self.next_version(now, previous.version if previous is not None else None)
        key = self.artifact_key(name, version)

        aux = pack_blob({
            'scaler': scaler,
            'training_data_hash': training_data_hash or model.fingerprint(),
            'performance': performance,
            'compression': result.to_dict(),
        })
        compression = result.to_dict()

        await self.store.put(key, data)
        try:
            async with self.database.transaction() as session:
                record = await session.get(RecordRow, name)
                created_at = record.created_at if record is not None else now
                if record is None:
                    record = RecordRow(name=name)
                    session.add(record)
                record.version = version
                record.artifact_key = key
                record.content_hash = content_hash
                record.backend_type = artifact.backend_type.value
                record.compression = compression
                record.aux_blob = aux.data
                record.aux_encoding = aux.encoding
                record.extra = extra_metadata or {}
                record.created_at = created_at
                record.updated_at = now
                record.last_used_at = now

                meta = await session.get(MetadataRow, name)
                if meta is None:
                    meta = MetadataRow(name=name)
                    session.add(meta)
                meta.version = version
                meta.size = result.compressed_size
                meta.original_size = result.original_size
                meta.ratio = result.ratio
                meta.method = result.method_label
                meta.level = options.level.value
                meta.savings = result.savings
                meta.performance = performance
                meta.created_at = created_at
                meta.updated_at = now
                meta.last_used_at = now
        except Exception:
            logger.warning("Saving %s version %s failed, removing its artifact", name, version)
            if key != previous_key:
                await self.store.delete(key)
            raise

        if previous_key is not None and previous_key != key:
            await self.store.delete(previous_key)

        logger.info(
            "Saved %s version %s (%d -> %d bytes, %.2fx, %s)",
            name, version, result.original_size, result.compressed_size,
            result.ratio, artifact.backend_type.value,
        )
        return StorageRecord(
            name=name,
            version=version,
            artifact_key=key,
            content_hash=content_hash,
            backend_type=artifact.backend_type.value,
            compression=compression,
            created_at=created_at,
            updated_at=now,
            last_used_at=now,
            metadata=extra_metadata or {},
        )

    # ---------- load ----------

    async def _read(self, name: str) -> Optional[LoadedModel]:
        record, meta = await self._get_rows(name)
        if record is None:
            return None
        if meta is None:
            raise CorruptArtifactError(f"Metadata row missing for {name!r}")

        data = await self.store.get(record.artifact_key)
        if data is None:
            raise CorruptArtifactError(f"Artifact {record.artifact_key!r} missing for {name!r}")
        artifact = CompressedArtifact.from_bytes(data)
        model = await self.coordinator.decompress_async(artifact)
        model.name = name

        aux = unpack_blob(record.aux_blob)
        if not isinstance(aux, dict):
            raise CorruptArtifactError(f"Auxiliary data for {name!r} is not a mapping")
        return LoadedModel(
            model=model,
            record=StorageRecord.from_row(record),
            metadata=ModelMetadata.from_row(meta),
            performance=aux.get('performance'),
            scaler=aux.get('scaler'),
            training_data_hash=aux.get('training_data_hash'),
        )

    async def load(self, name: str) -> Optional[LoadedModel]:
        """
        Load and decompress the current version of `name`.

        Returns None when no record exists. Marks the record as used.

        Raises:
            CorruptArtifactError: artifact missing or unreadable
        """
        loaded = await self._read(name)
        if loaded is None:
            return None
        now = self.clock()
        await self.touch(name, now)
        loaded.record.last_used_at = now
        loaded.metadata.last_used_at = now
        logger.info("Loaded %s version %s", name, loaded.record.version)
        return loaded

    async def touch(self, name: str, now: Optional[int] = None) -> bool:
        """Bump last_used_at on both rows."""
        now = self.clock() if now is None else now
        async with self.database.transaction() as session:
            result = await session.execute(
                update(RecordRow).where(RecordRow.name == name).values(last_used_at=now)
            )
            await session.execute(
                update(MetadataRow).where(MetadataRow.name == name).values(last_used_at=now)
            )
        return result.rowcount > 0

    async def exists(self, name: str) -> bool:
        record, _ = await self._get_rows(name)
        return record is not None

    async def get_metadata(self, name: str) -> Optional[ModelMetadata]:
        _, meta = await self._get_rows(name)
        return ModelMetadata.from_row(meta) if meta is not None else None

    # ---------- delete / list / cleanup ----------

    async def delete(self, name: str) -> bool:
        async with self.database.transaction() as session:
            record = await session.get(RecordRow, name)
            key = record.artifact_key if record is not None else None
            await session.execute(delete(RecordRow).where(RecordRow.name == name))
            meta_result = await session.execute(delete(MetadataRow).where(MetadataRow.name == name))
        if key is None and meta_result.rowcount == 0:
            return False
        if key is not None:
            await self.store.delete(key)
        logger.info("Deleted %s", name)
        return True

    async def list_metadata(self) -> List[ModelMetadata]:
        async with self.database.session() as session:
            result = await session.execute(select(MetadataRow).order_by(MetadataRow.name))
            return [ModelMetadata.from_row(row) for row in result.scalars()]

    async def cleanup(self, max_age_ms: Optional[int] = None) -> int:
        """
        Delete records unused for longer than `max_age_ms`.

        Records exactly `max_age_ms` old are kept. Not atomic across records.
        """
        if max_age_ms is None:
            max_age_ms = self.settings.cleanup_max_age_ms
        cutoff = self.clock() - max_age_ms
        async with self.database.session() as session:
            result = await session.execute(
                select(MetadataRow.name).where(MetadataRow.last_used_at < cutoff)
            )
            names = list(result.scalars())

        removed = 0
        for name in names:
            if await self.delete(name):
                removed += 1
        logger.info("Cleanup removed %d of %d stale records", removed, len(names))
        return removed

    async def stats(self) -> StorageStats:
        async with self.database.session() as session:
            result = await session.execute(select(MetadataRow))
            rows = list(result.scalars())

        if not rows:
            return StorageStats(0, 0, 0, 0, 0.0, None, None)
        return StorageStats(
            total_records=len(rows),
            total_compressed_size=sum(r.size for r in rows),
            total_original_size=sum(r.original_size for r in rows),
            total_savings=sum(r.savings for r in rows),
            avg_ratio=sum(r.ratio for r in rows) / len(rows),
            oldest=min(r.created_at for r in rows),
            newest=max(r.created_at for r in rows),
        )

    # ---------- export / import ----------

    async def export(self, name: str) -> Optional[bytes]:
        """Self-describing gzip document with full model weights."""
        loaded = await self._read(name)
        if loaded is None:
            return None
        record = loaded.record
        doc = {
            'format': EXPORT_FORMAT,
            'format_version': EXPORT_FORMAT_VERSION,
            'name': name,
            'version': record.version,
            'created_at': record.created_at,
            'updated_at': record.updated_at,
            'last_used_at': record.last_used_at,
            'level': loaded.metadata.level,
            'performance': loaded.performance,
            'scaler': loaded.scaler,
            'training_data_hash': loaded.training_data_hash,
            'compression': {
                'original_size': loaded.metadata.original_size,
                'compressed_size': loaded.metadata.size,
                'ratio': loaded.metadata.ratio,
                'method': loaded.metadata.method,
                'backend_type': record.backend_type,
            },
            'model': loaded.model.to_dict(),
        }
        blob = await asyncio.to_thread(pack_blob, doc)
        logger.info("Exported %s version %s (%d bytes)", name, record.version, blob.compressed_size)
        return blob.data

    def parse_export(self, data: bytes) -> ExportDocument:
        """
        Validate an export blob.

        Raises:
            ValidationError: with a readable reason
        """
        try:
            raw = unpack_blob(data)
        except CorruptArtifactError as e:
            raise ValidationError(f"Import blob is unreadable: {e}") from e
        if not isinstance(raw, dict):
            raise ValidationError("Import blob must contain a JSON object")
        try:
            doc = ExportDocument.model_validate(raw)
        except PydanticValidationError as e:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            details = [
                {"loc": [str(p) for p in err["loc"]], "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ]
            raise ValidationError(f"Invalid import document: {reasons}", details=details) from e

        for li, layer in enumerate(doc.model.layers):
            for ti, tensor in enumerate(layer.weights):
                tensor.check_length(f"layer {li} tensor {ti}")
        return doc

    async def import_(self, data: bytes) -> str:
        """
        Import an export blob and save it under its name.

        The current compression policy is applied; the exported level is
        kept only as `imported_level` in the record metadata.
        """
        doc = self.parse_export(data)
        try:
            model = Model.from_dict(doc.model.model_dump())
        except (LayerReconstructionError, ValueError) as e:
            raise ValidationError(f"Invalid model in import document: {e}") from e
        model.name = doc.name

        extra = {'imported_version': doc.version}
        if doc.level is not None:
            extra['imported_level'] = doc.level
        await self.save(
            doc.name,
            model,
            performance=doc.performance,
            scaler=doc.scaler,
            training_data_hash=doc.training_data_hash,
            extra_metadata=extra,
        )
        logger.info("Imported %s (exported version %s)", doc.name, doc.version)
        return doc.name

    # ---------- differential updates ----------

    async def create_differential_update(self, name: str, new_model: Model) -> Optional[DeltaArtifact]:
        """
        Delta from the stored version of `name` to `new_model`.

        Raises:
            TopologyMismatchError: tensor layout differs
        """
        loaded = await self._read(name)
        if loaded is None:
            return None
        return await asyncio.to_thread(diff, loaded.model, new_model)

    async def apply_differential_update(
        self,
        name: str,
        delta: DeltaArtifact,
        options: Optional[CompressionOptions] = None,
    ) -> Optional[StorageRecord]:
        """Apply a delta to the stored version and save the result as a new version."""
        loaded = await self._read(name)
        if loaded is None:
            return None
        updated = await asyncio.to_thread(apply_delta, loaded.model, delta)
        updated.name = name
        return await self.save(
            name,
            updated,
            options=options or CompressionOptions(
                level=CompressionLevel(loaded.metadata.level),
                pruning=self.settings.enable_pruning,
                weight_sharing=self.settings.enable_weight_sharing,
                backend=self.settings.compression_backend,
            ),
            performance=loaded.performance,
            scaler=loaded.scaler,
            extra_metadata=dict(loaded.record.metadata, delta_applied=True),
        )
