import logging
import uuid
from pathlib import Path
from typing import Optional

import httpx

from ..errors import PermanentProviderError, TransientProviderError
from .base import Storage

logger = logging.getLogger(__name__)


def artifact_key(organization_id: str, folder: str, submission_id: str, extension: str) -> str:
    """Organization/content scoped key with a unique file name."""
    return f"organizations/{organization_id}/{folder}/{submission_id}/{uuid.uuid4()}.{extension}"


class LocalStorage(Storage):
    """Filesystem storage whose root is served under ``public_base_url``."""

    def __init__(self, root: str, public_base_url: str, timeout_s: float = 300.0,
                 client: Optional[httpx.Client] = None):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".part")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)  # atomic on POSIX
        logger.debug("Stored %d bytes (%s) at %s", len(data), content_type, key)
        return f"{self.public_base_url}/{key}"

    def put_from_url(self, key: str, source_url: str, content_type: str) -> str:
        return self.put_bytes(key, self.fetch(source_url), content_type)

    def fetch(self, url: str) -> bytes:
        local = self.local_path(url)
        if local is not None:
            return local.read_bytes()
        try:
            response = self.client.get(url)
        except httpx.TransportError as e:
            raise TransientProviderError(f"Download failed for {url}: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(f"Download of {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise PermanentProviderError(f"Download of {url} returned {response.status_code}")
        return response.content

    def owns(self, url: str) -> bool:
        return self.local_path(url) is not None

    def local_path(self, url: str) -> Optional[Path]:
        """Filesystem path for a URL this storage issued, else None."""
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        return self._path_for(url[len(prefix):])

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes root: {key}")
        return path
