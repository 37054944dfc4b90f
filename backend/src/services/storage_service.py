import logging
import shutil
from datetime import timedelta
from pathlib import Path

from src.config import Settings

logger = logging.getLogger(__name__)


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, base_path: str, public_base_url: str = "http://localhost:8000") -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        return f"{self.public_base_url}/api/storage/files/{storage_key}"

    def generate_download_url(self, storage_key: str, expires_minutes: int = 60) -> str:
        """Local files are served unsigned."""
        return self.get_public_url(storage_key)

    def put(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        """Store bytes under a key."""
        full_path = self._get_full_path(storage_key)
        full_path.write_bytes(data)
        return self.get_public_url(storage_key)

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload from local path."""
        full_path = self._get_full_path(storage_key)
        shutil.copy(local_path, str(full_path))
        return self.get_public_url(storage_key)

    def download_file(self, storage_key: str, local_path: str) -> str:
        """Copy file to local path."""
        full_path = self._get_full_path(storage_key)
        shutil.copy(str(full_path), local_path)
        return local_path

    def delete_file(self, storage_key: str) -> bool:
        """Delete file."""
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if file exists."""
        return self._get_full_path(storage_key).exists()

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, bucket_name: str, project_id: str | None = None) -> None:
        from google.auth import compute_engine, default
        from google.auth.transport import requests as auth_requests
        from google.cloud import storage

        self._storage = storage
        self._bucket_name = bucket_name
        self._project_id = project_id
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None

        self._credentials, _ = default()
        self._auth_request = auth_requests.Request()
        self._service_account_email: str | None = None

        # Cloud Run / Compute Engine credentials cannot sign locally; signing
        # then goes through the IAM signBlob API with the access token
        if isinstance(self._credentials, compute_engine.Credentials):
            self._credentials.refresh(self._auth_request)
            self._service_account_email = self._credentials.service_account_email

    @property
    def client(self):
        if self._client is None:
            if self._project_id:
                self._client = self._storage.Client(project=self._project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self._bucket_name)
        return self._bucket

    def get_public_url(self, storage_key: str) -> str:
        """Get the public URL for a stored file."""
        return f"https://storage.googleapis.com/{self._bucket_name}/{storage_key}"

    def generate_download_url(self, storage_key: str, expires_minutes: int = 60) -> str:
        """Generate a V4 signed URL for downloading a file."""
        blob = self.bucket.blob(storage_key)
        kwargs = {}
        if self._service_account_email:
            if not self._credentials.valid:
                self._credentials.refresh(self._auth_request)
            kwargs = {
                "service_account_email": self._service_account_email,
                "access_token": self._credentials.token,
            }
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=expires_minutes),
            method="GET",
            **kwargs,
        )

    def put(self, storage_key: str, data: bytes, content_type: str | None = None) -> str:
        blob = self.bucket.blob(storage_key)
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        return self.get_public_url(storage_key)

    def upload_file(self, local_path: str, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file to GCS."""
        blob = self.bucket.blob(storage_key)
        if content_type:
            blob.upload_from_filename(local_path, content_type=content_type)
        else:
            blob.upload_from_filename(local_path)
        return self.get_public_url(storage_key)

    def download_file(self, storage_key: str, local_path: str) -> str:
        """Download a file from GCS to local path."""
        blob = self.bucket.blob(storage_key)
        blob.download_to_filename(local_path)
        return local_path

    def delete_file(self, storage_key: str) -> bool:
        """Delete a file from GCS."""
        blob = self.bucket.blob(storage_key)
        if blob.exists():
            blob.delete()
            return True
        return False

    def file_exists(self, storage_key: str) -> bool:
        """Check if a file exists in GCS."""
        return self.bucket.blob(storage_key).exists()


StorageService = LocalStorageService | GCSStorageService


def create_storage_service(settings: Settings) -> StorageService:
    """Build the storage backend selected by settings."""
    if settings.use_local_storage:
        logger.info(f"[STORAGE] Using local storage at {settings.local_storage_path}")
        return LocalStorageService(settings.local_storage_path, settings.public_base_url)

    logger.info(f"[STORAGE] Using GCS bucket {settings.gcs_bucket_name}")
    return GCSStorageService(settings.gcs_bucket_name, settings.gcs_project_id)
