"""Request dependencies.

The job store and storage client are built by the application lifespan (or
injected by the caller of ``create_app``) and kept on ``app.state``.
"""

from typing import Annotated

from fastapi import Depends, Request

from src.config import Settings, get_settings
from src.services.export_queue import JobStore
from src.services.storage_service import StorageService


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


JobStoreDep = Annotated[JobStore, Depends(get_job_store)]
StorageDep = Annotated[StorageService, Depends(get_storage)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
