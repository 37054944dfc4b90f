"""Fetches source recordings to local disk for composition."""

import logging
from pathlib import Path

import httpx

from src.exceptions import DownloadError
from src.services.storage_service import StorageService

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class MediaDownloader:
    """Downloads recordings by URL.

    http(s) URLs are streamed with httpx. Anything else is treated as a key in
    the object storage the exports are written to.
    """

    def __init__(
        self,
        storage: StorageService | None = None,
        timeout: float = 300.0,
        client: httpx.Client | None = None,
    ):
        self._storage = storage
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def download(self, url: str, local_path: str) -> str:
        """Download ``url`` to ``local_path``.

        Raises:
            DownloadError: the media could not be fetched; no partial file is left
        """
        path = Path(local_path)
        try:
            if url.startswith(("http://", "https://")):
                self._download_http(url, path)
            elif self._storage is not None:
                self._storage.download_file(url, str(path))
            else:
                raise DownloadError(f"Unsupported media URL: {url}")
        except DownloadError:
            path.unlink(missing_ok=True)
            raise
        except Exception as e:
            # httpx errors, OSError, or the storage backend's own client errors
            path.unlink(missing_ok=True)
            raise DownloadError(f"Error downloading video {url}: {e}") from e

        size = path.stat().st_size
        logger.info(f"[DOWNLOAD] {url} -> {path.name} ({size} bytes)")
        return str(path)

    def _download_http(self, url: str, path: Path) -> None:
        with self._client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise DownloadError(
                    f"Failed to download video: {response.status_code} {response.reason_phrase}"
                )
            with open(path, "wb") as f:
                for chunk in response.iter_bytes(CHUNK_SIZE):
                    f.write(chunk)
