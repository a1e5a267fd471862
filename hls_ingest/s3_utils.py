import logging
import time
from pathlib import Path
from typing import List, Optional

from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from hls_ingest.errors import UploadError
from hls_ingest.models import UploadManifest

logger = logging.getLogger(__name__)

PLAYLIST_EXT = ".m3u8"
SEGMENT_EXT = ".ts"

CONTENT_TYPES = {
    PLAYLIST_EXT: "application/vnd.apple.mpegurl",
    SEGMENT_EXT: "video/mp2t",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"
PUBLIC_READ = "public-read"


def content_type_for(path) -> str:
    """Content type from the file extension; anything unknown is generic binary."""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def object_key(key_prefix: str, local_root: Path, local_file: Path) -> str:
    """key_prefix joined with the file's path relative to local_root, '/' separated."""
    relative = local_file.relative_to(local_root).as_posix()
    prefix = key_prefix.strip("/")
    return f"{prefix}/{relative}" if prefix else relative


def public_url(base_url: str, key: str) -> str:
    return f"{base_url.rstrip('/')}/{key.lstrip('/')}"


def get_s3_object_size(s3_client, bucket: str, key: str) -> Optional[int]:
    """Gets the size of an S3 object in bytes."""
    if not bucket or not key:
        logger.warning("get_s3_object_size: Bucket or key is empty.")
        return None
    try:
        response = s3_client.head_object(Bucket=bucket, Key=key)
        return response.get("ContentLength")
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Error getting size for s3://{bucket}/{key}: {e}")
        return None


def verify_s3_upload(s3_client, bucket: str, key: str, local: Path) -> bool:
    local_size = Path(local).stat().st_size
    remote_size = get_s3_object_size(s3_client, bucket, key)
    ok = local_size == remote_size
    if not ok:
        logger.error(f"S3 size mismatch for s3://{bucket}/{key} ({local_size} vs {remote_size})")
    return ok


def _list_files(local_root: Path) -> List[Path]:
    return [p for p in sorted(local_root.rglob("*")) if p.is_file()]


def upload_directory(s3_client, local_root: Path, bucket: str, key_prefix: str, *,
                     acl: str = PUBLIC_READ, timeout: Optional[float] = None,
                     verify: bool = False) -> UploadManifest:
    """
    Publish every regular file under local_root to s3://bucket/<key_prefix>/<relative path>.

    The tree must hold exactly one playlist; that is checked before anything is
    sent. Segments go up in sorted order and the playlist goes up last. The
    first failure aborts the call with UploadError. Objects already sent stay
    in the bucket; the manifest is only returned when every file went up.
    """
    local_root = Path(local_root)
    if not local_root.is_dir():
        raise UploadError(f"Output directory {local_root} does not exist")
    files = _list_files(local_root)
    playlists = [p for p in files if p.suffix.lower() == PLAYLIST_EXT]
    if len(playlists) != 1:
        raise UploadError(f"Expected exactly one {PLAYLIST_EXT} playlist under {local_root}, found {len(playlists)}")
    files.sort(key=lambda p: p == playlists[0])

    deadline = time.monotonic() + timeout if timeout else None
    keys: List[str] = []
    playlist_key = ""
    for local_file in files:
        if deadline is not None and time.monotonic() > deadline:
            raise UploadError(f"Upload deadline of {timeout:.0f}s exceeded after {len(keys)}/{len(files)} files")
        key = object_key(key_prefix, local_root, local_file)
        extra_args = {"ContentType": content_type_for(local_file), "ACL": acl}
        try:
            s3_client.upload_file(str(local_file), bucket, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError, Boto3Error, OSError) as e:
            raise UploadError(f"Failed to upload {local_file} to s3://{bucket}/{key}: {e}") from e
        if verify and not verify_s3_upload(s3_client, bucket, key, local_file):
            raise UploadError(f"Verification failed for s3://{bucket}/{key}")
        logger.debug(f"Uploaded s3://{bucket}/{key} ({extra_args['ContentType']})")
        keys.append(key)
        if local_file == playlists[0]:
            playlist_key = key

    logger.info(f"Uploaded {len(keys)} files to s3://{bucket}/{key_prefix}")
    return UploadManifest(keys=tuple(keys), playlist_key=playlist_key)


class S3Uploader:
    def __init__(self, s3_client, bucket: str, *, timeout: Optional[float] = None, verify: bool = False):
        self.s3_client = s3_client
        self.bucket = bucket
        self.timeout = timeout
        self.verify = verify

    def upload(self, local_root: Path, key_prefix: str, timeout: Optional[float] = None) -> UploadManifest:
        return upload_directory(self.s3_client, local_root, self.bucket, key_prefix,
                                timeout=timeout or self.timeout, verify=self.verify)
