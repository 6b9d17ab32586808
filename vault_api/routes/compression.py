"""Stateless Compression Routes."""

import asyncio
from typing import Any, Dict

import numpy as np
from fastapi import APIRouter

from vault_api.dependencies import CoordinatorDep, SettingsDep
from vault_api.schemas import ModelPayload

router = APIRouter()


@router.post("/compress")
async def compress(payload: ModelPayload, coordinator: CoordinatorDep, settings: SettingsDep) -> Dict[str, Any]:
    """
    Compress a model and report sizes plus the round-trip error.

    Nothing is stored.
    """
    model = payload.to_model()
    options = payload.options.resolve(settings.default_options())
    artifact, result = await coordinator.compress_async(model, options)
    restored = await coordinator.decompress_async(artifact)

    max_error = 0.0
    for original, rebuilt in zip(model.weight_tensors(), restored.weight_tensors()):
        if original.size:
            max_error = max(max_error, float(np.abs(original.as_float32() - rebuilt.as_float32()).max()))

    return {
        "result": result.to_dict(),
        "round_trip": {
            "layers": len(restored.layers),
            "total_weights": restored.total_weights,
            "max_abs_error": max_error,
        },
    }


@router.post("/benchmark")
async def benchmark(payload: ModelPayload, coordinator: CoordinatorDep, settings: SettingsDep) -> Dict[str, Any]:
    """Time both backends on the posted model."""
    model = payload.to_model()
    options = payload.options.resolve(settings.default_options())
    report = await asyncio.to_thread(coordinator.benchmark, model, options)
    return report.to_dict()


@router.post("/analyze")
async def analyze(payload: ModelPayload, coordinator: CoordinatorDep) -> Dict[str, Any]:
    model = payload.to_model()
    analysis = await asyncio.to_thread(coordinator.analyze, model)
    compressibility = await asyncio.to_thread(coordinator.analyze_compressibility, model)
    return {
        "analysis": analysis.to_dict(),
        "compressibility": compressibility.to_dict(),
    }
