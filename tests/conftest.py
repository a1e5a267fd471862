import threading
from pathlib import Path

import pytest
from botocore.exceptions import EndpointConnectionError
from tenacity import wait_none

from hls_ingest.errors import TranscodeError
from hls_ingest.models import WorkItem
from hls_ingest.pipeline import IngestPipeline
from hls_ingest.s3_utils import S3Uploader
from hls_ingest.settings import IngestSettings

BUCKET = "test-bucket"
CDN = "https://cdn.example.com"


class FakeStore:
    """In-memory stand-in for DynamoProvenanceStore."""

    def __init__(self):
        self.sources = {}
        self.records = {}
        self.claims = set()
        self.fail_record = None
        self.completions = []
        self.released = []
        self._lock = threading.Lock()

    def add_source(self, item: WorkItem):
        self.sources[item.source_url] = item.to_document()

    def iter_unprocessed(self):
        for doc in list(self.sources.values()):
            if not doc.get("processed"):
                yield WorkItem.from_document(doc)

    def enqueue(self, item):
        if item.source_url in self.sources:
            return False
        self.add_source(item)
        return True

    def get_record(self, identity):
        return self.records.get(identity)

    def is_processed(self, identity):
        return identity in self.records

    def mark_processed(self, item, identity, processed_at):
        with self._lock:
            doc = self.sources.setdefault(item.source_url, item.to_document())
            doc.update(processed=True, identity=identity, processed_at=processed_at)

    def record_completion(self, record, item):
        if self.fail_record is not None:
            raise self.fail_record
        with self._lock:
            self.completions.append(record.identity)
            self.records.setdefault(record.identity, record.to_dict())
        self.mark_processed(item, record.identity, record.processed_at)

    def claim(self, identity, owner):
        with self._lock:
            if identity in self.claims:
                return False
            self.claims.add(identity)
            return True

    def release(self, identity, owner):
        with self._lock:
            self.claims.discard(identity)
            self.released.append(identity)

    def check_connection(self):
        pass

    def close(self):
        pass


class FakeFetcher:
    """Writes a few bytes to the destination. `failures` maps URL -> list of exceptions to raise first."""

    def __init__(self, payload=b"\x00\x00\x00\x18ftypmp42"):
        self.payload = payload
        self.failures = {}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, url, destination, timeout=None):
        with self._lock:
            self.calls.append(url)
            pending = self.failures.get(url)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        Path(destination).write_bytes(self.payload)
        return len(self.payload)


class FakeTranscoder:
    """Writes a playlist and two segments next to it, or fails like ffmpeg would."""

    def __init__(self):
        self.fail = False
        self.calls = []

    def transcode(self, input_path, output_playlist, timeout=None):
        self.calls.append(Path(input_path))
        assert Path(input_path).is_file()
        if self.fail:
            raise TranscodeError("ffmpeg exited with code 1", stderr="Invalid data found", returncode=1)
        out = Path(output_playlist).parent
        (out / "output0.ts").write_bytes(b"seg0")
        (out / "output1.ts").write_bytes(b"seg1")
        Path(output_playlist).write_text(
            "#EXTM3U\n#EXTINF:10.0,\noutput0.ts\n#EXTINF:4.2,\noutput1.ts\n#EXT-X-ENDLIST\n")


class FakeS3Client:
    def __init__(self):
        self.objects = {}
        self.fail_keys = set()
        self._lock = threading.Lock()

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        if key in self.fail_keys:
            raise EndpointConnectionError(endpoint_url=f"https://{bucket}.s3.amazonaws.com")
        with self._lock:
            self.objects[(bucket, key)] = {
                "size": Path(filename).stat().st_size,
                "extra": dict(ExtraArgs or {}),
            }

    def head_object(self, Bucket, Key):
        return {"ContentLength": self.objects[(Bucket, Key)]["size"]}


@pytest.fixture
def settings(tmp_path):
    return IngestSettings(
        bucket=BUCKET,
        public_base_url=CDN,
        workspace_root=tmp_path / "videos",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def make_pipeline(settings, store, fetcher, transcoder, s3_client):
    def _make(cfg=None, metrics=None):
        cfg = cfg or settings
        return IngestPipeline(
            cfg,
            store=store,
            fetcher=fetcher,
            transcoder=transcoder,
            uploader=S3Uploader(s3_client, cfg.bucket),
            metrics=metrics,
            owner="test-worker",
            fetch_wait=wait_none(),
        )
    return _make
