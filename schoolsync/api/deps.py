"""Shared API dependencies."""

from __future__ import annotations

from fastapi import Request

from schoolsync.config import Settings
from schoolsync.services.entity_registry import EntityRegistry


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_registry(request: Request) -> EntityRegistry:
    """Get the entity registry from app state."""
    registry: EntityRegistry = request.app.state.registry
    return registry
