"""Dependency injection for FastAPI: settings and the model folder service."""

from __future__ import annotations

from fastapi import Request

from tmdlkit.service.model_folder import ModelFolderService
from tmdlkit.settings import Settings


def get_settings(request: Request) -> Settings:
    """FastAPI ``Depends`` provider for the app's ``Settings``."""
    settings: Settings = request.app.state.settings
    return settings


def get_service(request: Request) -> ModelFolderService:
    """FastAPI ``Depends`` provider for ``ModelFolderService``.

    The service is stateless, so a fresh one per request is fine.
    """
    return ModelFolderService(get_settings(request))
