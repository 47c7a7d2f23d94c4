import hashlib
from pathlib import Path

import httpx
import structlog
from google.cloud import storage as gcs_storage

from foundmatch.config import get_settings

logger = structlog.get_logger("foundmatch.storage")

_HTTP_TIMEOUT_SECONDS = 30.0


def get_storage_client():
    return gcs_storage.Client(project=get_settings().GCP_PROJECT_ID or None)


def _split_gs_uri(uri: str) -> tuple[str, str]:
    """Split ``gs://bucket/path/to/blob`` into ``(bucket, path)``."""
    without_scheme = uri[len("gs://"):]
    bucket, _, path = without_scheme.partition("/")
    if not bucket or not path:
        raise ValueError(f"Malformed GCS URI: {uri!r}")
    return bucket, path


def download_gcs_uri(uri: str) -> bytes:
    """Download an object addressed by a ``gs://`` URI."""
    bucket_name, path = _split_gs_uri(uri)
    blob = get_storage_client().bucket(bucket_name).blob(path)
    return blob.download_as_bytes()


def fetch_verified_blob(bucket_name: str, blob_name: str, dest: Path) -> bool:
    """Download ``blob_name`` to ``dest`` if a ``<blob>.sha256`` sidecar agrees.

    The blob is written to a temporary file first and only renamed into
    place once the digest matches.  A missing sidecar skips verification.

    Returns ``False`` when the blob is absent or fails the integrity check.
    """
    bucket = get_storage_client().bucket(bucket_name)
    blob = bucket.blob(blob_name)
    if not blob.exists():
        logger.warning("blob_missing", blob=blob_name)
        return False

    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_suffix(".tmp")
    blob.download_to_filename(str(tmp_path))

    sha_blob = bucket.blob(f"{blob_name}.sha256")
    if sha_blob.exists():
        expected = sha_blob.download_as_text().strip().split()[0]
        sha256 = hashlib.sha256()
        with open(tmp_path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                sha256.update(chunk)
        actual = sha256.hexdigest()
        if actual != expected:
            tmp_path.unlink(missing_ok=True)
            logger.error(
                "blob_integrity_failure",
                blob=blob_name,
                expected=expected,
                actual=actual,
            )
            return False
        logger.info("blob_integrity_ok", blob=blob_name)
    else:
        logger.info("blob_sha256_sidecar_missing", blob=blob_name)

    tmp_path.rename(dest)
    return True


def load_photo_bytes(uri: str) -> bytes:
    """Fetch raw image bytes from ``gs://``, ``http(s)://`` or a local path."""
    if uri.startswith("gs://"):
        return download_gcs_uri(uri)
    if uri.startswith(("http://", "https://")):
        response = httpx.get(uri, timeout=_HTTP_TIMEOUT_SECONDS, follow_redirects=True)
        response.raise_for_status()
        return response.content
    return Path(uri).read_bytes()
