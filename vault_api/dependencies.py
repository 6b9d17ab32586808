"""FastAPI dependencies resolving the per-app services created at startup."""

from typing import Annotated

from fastapi import Depends, Request

from weightvault.coordinator import AdaptiveCoordinator

from vault_api.config import Settings
from vault_api.database import Database
from vault_api.services.model_storage import ModelStorageService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_coordinator(request: Request) -> AdaptiveCoordinator:
    return request.app.state.coordinator


def get_storage(request: Request) -> ModelStorageService:
    return request.app.state.storage


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
DatabaseDep = Annotated[Database, Depends(get_database)]
CoordinatorDep = Annotated[AdaptiveCoordinator, Depends(get_coordinator)]
StorageDep = Annotated[ModelStorageService, Depends(get_storage)]
