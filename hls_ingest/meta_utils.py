#!/usr/bin/env python3
"""
Metadata record construction and the local meta.json copy.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path
from typing import Optional

from hls_ingest.errors import StorageError
from hls_ingest.models import MetadataRecord, UploadManifest, WorkItem
from hls_ingest.s3_utils import public_url

logger = logging.getLogger(__name__)


def utc_timestamp(now: Optional[dt.datetime] = None) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    return now.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def build_metadata_record(item: WorkItem, identity: str, manifest: UploadManifest,
                          public_base_url: str, processed_at: str) -> MetadataRecord:
    """Copy the carried fields from the work item and resolve the public playlist URL."""
    if not manifest.playlist_key:
        raise ValueError(f"Upload manifest for '{identity}' has no playlist key")
    return MetadataRecord(
        identity=identity,
        source_url=item.source_url,
        public_playlist_url=public_url(public_base_url, manifest.playlist_key),
        playlist_key=manifest.playlist_key,
        object_keys=manifest.keys,
        processed_at=processed_at,
        source_id=item.source_id,
        raw_url=item.raw_url,
        image_url=item.image_url,
        username=item.username,
        tags=item.tags,
        description=item.description,
        views=item.views,
    )


def save_meta_file(record: MetadataRecord, meta_path: Path) -> Path:
    try:
        with open(meta_path, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f, ensure_ascii=False, indent=2)
    except OSError as e:
        raise StorageError(f"Could not write metadata to {meta_path}: {e}") from e
    logger.info(f"Saved metadata to {meta_path}")
    return meta_path
