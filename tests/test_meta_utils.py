import datetime as dt
import json

import pytest

from hls_ingest.errors import StorageError
from hls_ingest.meta_utils import build_metadata_record, save_meta_file, utc_timestamp
from hls_ingest.models import UploadManifest, WorkItem


@pytest.fixture
def manifest():
    return UploadManifest(
        keys=("v_redd_it_abc123/output.m3u8", "v_redd_it_abc123/output0.ts"),
        playlist_key="v_redd_it_abc123/output.m3u8",
    )


@pytest.fixture
def item():
    return WorkItem(
        source_url="https://v.redd.it/abc123.mp4",
        source_id="t3_abc123",
        raw_url="https://v.redd.it/abc123/DASH_720.mp4",
        image_url="https://preview.redd.it/abc123.jpg",
        username="someone",
        tags=("cats", "funny"),
        description="A cat",
        views=1200,
    )


def test_utc_timestamp():
    now = dt.datetime(2025, 6, 1, 14, 0, 0, tzinfo=dt.timezone(dt.timedelta(hours=2)))
    assert utc_timestamp(now) == "2025-06-01T12:00:00Z"
    assert utc_timestamp().endswith("Z")


def test_record_carries_source_fields(item, manifest):
    record = build_metadata_record(item, "v_redd_it_abc123", manifest, "https://cdn.example.com/",
                                   "2025-06-01T12:00:00Z")

    assert record.public_playlist_url == "https://cdn.example.com/v_redd_it_abc123/output.m3u8"
    assert record.source_url == item.source_url
    assert record.raw_url == item.raw_url
    assert record.image_url == item.image_url
    assert record.username == "someone"
    assert record.tags == ("cats", "funny")
    assert record.views == 1200
    assert record.object_keys == manifest.keys


def test_record_requires_playlist(item):
    with pytest.raises(ValueError, match="no playlist"):
        build_metadata_record(item, "abc", UploadManifest(keys=(), playlist_key=""), "https://cdn", "now")


def test_to_dict_drops_empty_fields(manifest):
    record = build_metadata_record(WorkItem(source_url="https://x/y.mp4"), "x_y", manifest,
                                   "https://cdn", "2025-06-01T12:00:00Z")
    doc = record.to_dict()
    assert "username" not in doc
    assert "tags" not in doc
    assert doc["object_keys"] == list(manifest.keys)


def test_save_meta_file(tmp_path, item, manifest):
    record = build_metadata_record(item, "v_redd_it_abc123", manifest, "https://cdn.example.com",
                                   "2025-06-01T12:00:00Z")
    path = save_meta_file(record, tmp_path / "meta.json")

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["identity"] == "v_redd_it_abc123"
    assert saved["tags"] == ["cats", "funny"]
    assert saved["processed_at"] == "2025-06-01T12:00:00Z"


def test_save_meta_file_failure(tmp_path, item, manifest):
    record = build_metadata_record(item, "v", manifest, "https://cdn", "now")
    with pytest.raises(StorageError):
        save_meta_file(record, tmp_path / "missing" / "meta.json")
