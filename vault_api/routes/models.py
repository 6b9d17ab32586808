"""Stored Model Routes."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status

from weightvault.delta import DeltaArtifact
from weightvault.exceptions import CorruptArtifactError, ValidationError

from vault_api.dependencies import SettingsDep, StorageDep
from vault_api.schemas import CleanupRequest, ModelPayload, SaveRequest

router = APIRouter()


def _not_found(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Model {name!r} not found",
    )


@router.get("")
async def list_models(storage: StorageDep) -> List[Dict[str, Any]]:
    """Metadata for every stored model, ordered by name."""
    return [m.to_dict() for m in await storage.list_metadata()]


@router.get("/stats")
async def storage_stats(storage: StorageDep) -> Dict[str, Any]:
    return (await storage.stats()).to_dict()


@router.post("/import", status_code=status.HTTP_201_CREATED)
async def import_model(request: Request, storage: StorageDep) -> Dict[str, Any]:
    """Import a gzip export document posted as the raw request body."""
    name = await storage.import_(await request.body())
    return {"name": name}


@router.post("/cleanup")
async def cleanup(storage: StorageDep, body: Optional[CleanupRequest] = None) -> Dict[str, Any]:
    """Delete records unused for longer than the given age (default from settings)."""
    removed = await storage.cleanup(body.max_age_ms if body else None)
    return {"removed": removed}


@router.get("/{name}")
async def get_model(name: str, storage: StorageDep) -> Dict[str, Any]:
    metadata = await storage.get_metadata(name)
    if metadata is None:
        raise _not_found(name)
    return metadata.to_dict()


@router.put("/{name}")
async def save_model(name: str, body: SaveRequest, storage: StorageDep, settings: SettingsDep) -> Dict[str, Any]:
    """Compress and store a model, superseding any previous version."""
    record = await storage.save(
        name,
        body.to_model(),
        options=body.options.resolve(settings.default_options()),
        performance=body.performance,
        scaler=body.scaler,
        training_data_hash=body.training_data_hash,
    )
    return record.to_dict()


@router.delete("/{name}")
async def delete_model(name: str, storage: StorageDep) -> Dict[str, Any]:
    if not await storage.delete(name):
        raise _not_found(name)
    return {"message": "Model deleted", "name": name}


@router.get("/{name}/export")
async def export_model(name: str, storage: StorageDep) -> Response:
    data = await storage.export(name)
    if data is None:
        raise _not_found(name)
    return Response(
        content=data,
        media_type="application/gzip",
        headers={"Content-Disposition": f'attachment; filename="{name}.json.gz"'},
    )


@router.post("/{name}/delta")
async def create_delta(name: str, body: ModelPayload, storage: StorageDep) -> Response:
    """Binary delta from the stored version to the posted model."""
    delta = await storage.create_differential_update(name, body.to_model())
    if delta is None:
        raise _not_found(name)
    return Response(
        content=delta.to_bytes(),
        media_type="application/octet-stream",
        headers={
            "X-Delta-Original-Size": str(delta.original_size),
            "X-Delta-Compressed-Size": str(delta.compressed_size),
        },
    )


@router.post("/{name}/delta/apply")
async def apply_delta(name: str, request: Request, storage: StorageDep) -> Dict[str, Any]:
    """Apply a binary delta (raw request body) and store the result."""
    try:
        delta = DeltaArtifact.from_bytes(await request.body())
    except CorruptArtifactError as e:
        raise ValidationError(f"Unreadable delta: {e}") from e
    record = await storage.apply_differential_update(name, delta)
    if record is None:
        raise _not_found(name)
    return record.to_dict()
