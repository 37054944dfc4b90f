"""Local storage API endpoints for development."""

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import FileResponse

from src.api.deps import StorageDep
from src.services.storage_service import LocalStorageService

router = APIRouter()

MEDIA_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".srt": "application/x-subrip",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".aac": "audio/aac",
}


def _local_storage(storage: StorageDep) -> LocalStorageService:
    if not isinstance(storage, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )
    return storage


@router.put("/upload/{storage_key:path}")
async def upload_file(storage_key: str, request: Request, storage: StorageDep):
    """Handle file upload for local storage."""
    local = _local_storage(storage)

    body = await request.body()
    if not body:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file data provided",
        )

    local.put(storage_key, body, request.headers.get("content-type"))
    return {"status": "ok", "storage_key": storage_key}


@router.get("/files/{storage_key:path}")
def get_file(storage_key: str, storage: StorageDep):
    """Serve files from local storage."""
    local = _local_storage(storage)

    try:
        file_path = local.get_file_path(storage_key)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid storage key")

    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    return FileResponse(
        path=str(file_path),
        media_type=MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream"),
        filename=file_path.name,
    )
