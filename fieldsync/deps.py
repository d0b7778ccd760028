"""FastAPI dependencies for components created in the app lifespan."""

from __future__ import annotations

from fastapi import Request

from .assets.photostore import PhotoStore
from .sync.jobs import SyncJobManager
from .sync.overlay import EditOverlay


def get_jobs(request: Request) -> SyncJobManager:
    return request.app.state.jobs


def get_overlay(request: Request) -> EditOverlay:
    return request.app.state.overlay


def get_photo_store(request: Request) -> PhotoStore:
    return request.app.state.photo_store
