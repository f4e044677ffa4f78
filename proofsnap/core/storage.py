import asyncio
import hashlib
import mimetypes
import time
import structlog
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from google.cloud import storage
from google.api_core import exceptions as gcs_exceptions
from requests.adapters import HTTPAdapter

from proofsnap import config
from proofsnap.core.errors import AuthenticationError, NetworkError, StorageError
from proofsnap.core.utils import create_media_storage_path, format_file_size, sanitize_filename

logger = structlog.get_logger()

__all__ = [
    "ContentStore",
    "PinataContentStore",
    "GCSContentStore",
    "LocalContentStore",
    "InMemoryContentStore",
    "classify_http_error",
    "create_content_store",
]

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def classify_http_error(e: requests.exceptions.RequestException, target: str):
    """Map a requests failure onto the error taxonomy."""
    if isinstance(e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return NetworkError(f"{target} unreachable: {e}", status_code=503)

    status_code = getattr(e.response, "status_code", None)
    details = {"status_code": status_code}
    if status_code in TRANSIENT_STATUS_CODES:
        return NetworkError(f"{target} unavailable (HTTP {status_code})", status_code=503, details=details)
    if status_code in (401, 403):
        return AuthenticationError(f"{target} rejected credentials (HTTP {status_code})", details=details)
    return StorageError(f"{target} rejected request: {e}", details=details)


class ContentStore:
    """
    Write-once content store.

    ``upload`` returns a stable locator; ``url_for`` turns a locator into a
    fetchable URL. Blocking backends implement ``_upload_sync`` and are run
    off the event loop.
    """

    name = "base"

    async def upload(self, content: bytes, filename: str) -> str:
        return await asyncio.to_thread(self._upload_sync, content, filename)

    def _upload_sync(self, content: bytes, filename: str) -> str:
        raise NotImplementedError

    def url_for(self, locator: str) -> str:
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"backend": self.name, "available": True, "error": None}

    @staticmethod
    def _get_content_type(filename: str) -> str:
        content_type, _ = mimetypes.guess_type(filename)
        return content_type or "application/octet-stream"


class PinataContentStore(ContentStore):
    """IPFS pinning through the Pinata HTTP API. Locators are CIDs."""

    name = "ipfs"

    def __init__(self, jwt: Optional[str] = None, api_url: Optional[str] = None,
                 gateway_url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.jwt = jwt if jwt is not None else config.PINATA_JWT
        self.api_url = (api_url or config.PINATA_API_URL).rstrip("/")
        self.gateway_url = (gateway_url or config.IPFS_GATEWAY_URL).rstrip("/")

        if not self.jwt:
            logger.warning("PINATA_JWT not set - IPFS uploads will be rejected")

        self.session = session or requests.Session()
        # Retries are handled by the retry orchestrator, the adapter only pools connections
        adapter = HTTPAdapter(max_retries=0)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        logger.info("Pinata session initialized", api_url=self.api_url)

    def _upload_sync(self, content: bytes, filename: str) -> str:
        filename = sanitize_filename(filename)
        logger.info("Starting IPFS upload",
                    filename=filename,
                    file_size_human=format_file_size(len(content)))

        start_time = time.time()
        try:
            response = self.session.post(
                f"{self.api_url}/pinning/pinFileToIPFS",
                files={"file": (filename, content, self._get_content_type(filename))},
                headers={"Authorization": f"Bearer {self.jwt}"},
                timeout=300,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error("IPFS upload failed", filename=filename, error=str(e),
                         status_code=getattr(e.response, "status_code", None))
            raise classify_http_error(e, "IPFS pinning service")

        try:
            cid = response.json().get("IpfsHash")
        except ValueError:
            cid = None
        if not cid:
            raise StorageError("IPFS upload succeeded but no CID returned")

        logger.info("IPFS upload completed",
                    filename=filename,
                    cid=cid,
                    upload_time_seconds=round(time.time() - start_time, 2))
        return cid

    def url_for(self, locator: str) -> str:
        return f"{self.gateway_url}/{locator}"

    def health_check(self) -> Dict[str, Any]:
        health = {"backend": self.name, "available": False, "error": None}
        try:
            response = self.session.get(
                f"{self.api_url}/data/testAuthentication",
                headers={"Authorization": f"Bearer {self.jwt}"},
                timeout=5,
            )
            if response.status_code == 200:
                health["available"] = True
            else:
                health["error"] = f"HTTP {response.status_code}"
        except requests.exceptions.RequestException as e:
            health["error"] = str(e)
        return health


class GCSContentStore(ContentStore):
    """Google Cloud Storage backend. Locators are gs:// URIs."""

    name = "gcs"

    def __init__(self, bucket_name: Optional[str] = None, client: Optional[storage.Client] = None):
        self.bucket_name = bucket_name or config.GCS_BUCKET_NAME
        self.gcs_client = client or storage.Client()
        logger.info("GCS client initialized", bucket_name=self.bucket_name)

    def _upload_sync(self, content: bytes, filename: str) -> str:
        storage_path = create_media_storage_path(filename)
        try:
            bucket = self.gcs_client.bucket(self.bucket_name)
            blob = bucket.blob(storage_path)
            blob.metadata = {
                "original_filename": filename,
                "file_size": str(len(content)),
                "upload_timestamp": str(int(time.time())),
            }

            start_time = time.time()
            blob.upload_from_string(content, content_type=self._get_content_type(filename))
            upload_time = time.time() - start_time
        except (gcs_exceptions.ServiceUnavailable, gcs_exceptions.TooManyRequests,
                gcs_exceptions.InternalServerError, gcs_exceptions.GatewayTimeout,
                requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.error("GCS unavailable during upload", filename=filename, error=str(e))
            raise NetworkError(f"GCS unavailable: {e}", status_code=503)
        except (gcs_exceptions.Unauthorized, gcs_exceptions.Forbidden) as e:
            logger.error("GCS rejected credentials", filename=filename, error=str(e))
            raise AuthenticationError(f"GCS rejected credentials: {e}")
        except gcs_exceptions.GoogleAPICallError as e:
            logger.error("GCS API error during upload",
                         filename=filename, error=str(e), error_code=getattr(e, "code", None))
            raise StorageError(f"GCS upload failed: {e}")

        storage_uri = f"gs://{self.bucket_name}/{storage_path}"
        logger.info("GCS upload completed",
                    filename=filename,
                    storage_uri=storage_uri,
                    upload_time_seconds=round(upload_time, 2))
        return storage_uri

    def url_for(self, locator: str) -> str:
        if not locator.startswith("gs://"):
            raise StorageError(f"Not a GCS locator: {locator}")
        return f"https://storage.googleapis.com/{locator[5:]}"

    def health_check(self) -> Dict[str, Any]:
        health = {"backend": self.name, "available": False, "error": None}
        try:
            health["available"] = self.gcs_client.bucket(self.bucket_name).exists()
        except Exception as e:
            health["error"] = str(e)
        return health


class LocalContentStore(ContentStore):
    """Filesystem backend for development. Locators are local:// paths."""

    name = "local"

    def __init__(self, root_dir: Optional[str] = None):
        self.root_dir = Path(root_dir or config.LOCAL_STORAGE_DIR)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _upload_sync(self, content: bytes, filename: str) -> str:
        local_path = self.root_dir / create_media_storage_path(filename)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            if local_path.exists():
                local_path = local_path.with_name(f"{int(time.time() * 1000)}_{local_path.name}")
            local_path.write_bytes(content)
        except OSError as e:
            logger.error("Local upload failed", filename=filename, error=str(e))
            raise StorageError(f"Local upload failed: {e}")

        storage_uri = f"local://{local_path}"
        logger.info("Local upload completed", filename=filename, storage_uri=storage_uri)
        return storage_uri

    def url_for(self, locator: str) -> str:
        if not locator.startswith("local://"):
            raise StorageError(f"Not a local locator: {locator}")
        return Path(locator[len("local://"):]).resolve().as_uri()


class InMemoryContentStore(ContentStore):
    """Content-addressed in-process store. Locators are mem:// sha256 names."""

    name = "memory"

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.upload_count = 0

    async def upload(self, content: bytes, filename: str) -> str:
        self.upload_count += 1
        locator = "mem://" + hashlib.sha256(content).hexdigest()
        self.blobs[locator] = bytes(content)
        logger.debug("In-memory upload completed", filename=filename, locator=locator)
        return locator

    def url_for(self, locator: str) -> str:
        return locator


def create_content_store(backend: Optional[str] = None) -> ContentStore:
    backend = backend or config.STORAGE_BACKEND
    if backend == "ipfs":
        return PinataContentStore()
    if backend == "gcs":
        return GCSContentStore()
    if backend == "local":
        return LocalContentStore()
    if backend == "memory":
        return InMemoryContentStore()
    raise ValueError(f"Unknown storage backend: {backend}")
