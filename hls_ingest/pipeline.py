#!/usr/bin/env python3
"""
Per-item ingest pipeline and the backlog runner.

One item moves strictly forward through
    pending -> fetching -> transcoding -> uploading -> recording -> cleaning -> done
and drops to `failed` from whichever stage raised. A failure ends that item
only; the runner moves on to the next one.
"""
from __future__ import annotations

import contextlib
import itertools
import logging
import os
import socket
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, Iterator, Optional, Tuple

import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from hls_ingest.aws_utils import get_boto_session, make_cloudwatch_client, make_dynamodb, make_s3_client
from hls_ingest.db_utils_dynamo import DynamoProvenanceStore
from hls_ingest.errors import DerivationError, FetchError, IngestError
from hls_ingest.key_utils import derive_identity
from hls_ingest.media_utils import HttpFetcher
from hls_ingest.meta_utils import build_metadata_record, save_meta_file, utc_timestamp
from hls_ingest.metrics import MetricsPublisher
from hls_ingest.models import ItemOutcome, RunSummary, Stage, WorkItem
from hls_ingest.s3_utils import S3Uploader
from hls_ingest.settings import IngestSettings, layout_fn
from hls_ingest.transcode import FfmpegTranscoder, TranscodeProfile, Transcoder
from hls_ingest.workspace import Workspace, cleanup_workspace, create_workspace

logger = logging.getLogger(__name__)


def _is_retryable_fetch(error: BaseException) -> bool:
    return isinstance(error, FetchError) and error.retryable


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class IngestPipeline:
    def __init__(self, settings: IngestSettings, *, store, fetcher, transcoder: Transcoder, uploader,
                 metrics: Optional[MetricsPublisher] = None, owner: Optional[str] = None,
                 fetch_wait: Optional[Callable[..., Any]] = None):
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.transcoder = transcoder
        self.uploader = uploader
        self.metrics = metrics or MetricsPublisher(enabled=False)
        self.owner = owner or default_owner()
        self.fetch_wait = fetch_wait or wait_exponential(multiplier=1, min=2, max=30)

    # ------------------------------------------------------------------ one item
    def process_item(self, item: WorkItem, *, dry_run: bool = False) -> ItemOutcome:
        """Drive one work item to a terminal state. Never raises."""
        outcome = ItemOutcome(source_url=item.source_url)
        url = item.source_url
        if not isinstance(url, str) or not url.strip():
            outcome.fail(DerivationError(f"Work item has no source URL: {item!r}"))
            logger.error(f"Skipping malformed work item (no source URL): {item!r}")
            self._report(outcome)
            return outcome

        identity = derive_identity(url, self.settings.identity_mode)
        outcome.identity = identity
        logger.info(f"[{identity}] starting {url}")

        if item.processed:
            return self._finish_skip(outcome, "already_processed", f"[{identity}] already processed: {url}")

        try:
            if self._skip_if_recorded(item, identity, outcome):
                return outcome
            if dry_run:
                prefix = layout_fn(identity, self.settings)
                return self._finish_skip(
                    outcome, "dry_run",
                    f"[DRY RUN] [{identity}] would publish to s3://{self.settings.bucket}/{prefix}{self.settings.playlist_name}")
            if not self.store.claim(identity, self.owner):
                return self._finish_skip(outcome, "claimed", f"[{identity}] claimed by another worker, skipping")
        except IngestError as e:
            logger.error(f"[{identity}] failed at {outcome.state.value}: {e}")
            outcome.fail(e)
            self._report(outcome)
            return outcome

        reported = False
        try:
            # another worker may have finished it between the check and the claim
            if self._skip_if_recorded(item, identity, outcome):
                reported = True
            else:
                self._run_stages(item, identity, outcome)
        except IngestError as e:
            logger.error(f"[{identity}] failed at {outcome.state.value}: {type(e).__name__}: {e}")
            outcome.fail(e)
        except Exception as e:  # noqa: BLE001 - failure isolation at the item boundary
            logger.exception(f"[{identity}] unexpected error at {outcome.state.value}: {e}")
            outcome.fail(e)
        finally:
            self.store.release(identity, self.owner)
        if not reported:
            self._report(outcome)
        return outcome

    def _skip_if_recorded(self, item: WorkItem, identity: str, outcome: ItemOutcome) -> bool:
        existing = self.store.get_record(identity)
        if existing is None:
            return False
        recorded_url = existing.get("source_url")
        if recorded_url and recorded_url != item.source_url:
            self._finish_skip(
                outcome, "identity_collision",
                f"[{identity}] identity collision: already recorded for {recorded_url}, "
                f"not processing {item.source_url}", level=logging.WARNING)
            return True
        # record exists but the source flag was never flipped: repair it
        self.store.mark_processed(item, identity, existing.get("processed_at") or utc_timestamp())
        self._finish_skip(outcome, "already_processed", f"[{identity}] already processed: {item.source_url}")
        return True

    def _finish_skip(self, outcome: ItemOutcome, reason: str, message: str,
                     level: int = logging.INFO) -> ItemOutcome:
        logger.log(level, message)
        outcome.skipped = True
        outcome.skip_reason = reason
        outcome.advance(Stage.DONE)
        self._report(outcome)
        return outcome

    @contextlib.contextmanager
    def _stage(self, outcome: ItemOutcome, stage: Stage) -> Iterator[None]:
        outcome.advance(stage)
        logger.info(f"[{outcome.identity}] {stage.value}")
        started = time.perf_counter()
        yield
        self.metrics.stage_duration(stage.value, (time.perf_counter() - started) * 1000)

    def _fetch(self, url: str, workspace: Workspace) -> None:
        timeout = self.settings.fetch_timeout
        if self.settings.fetch_attempts <= 1:
            self.fetcher.fetch(url, workspace.input_path, timeout=timeout)
            return
        retryer = Retrying(
            stop=stop_after_attempt(self.settings.fetch_attempts),
            wait=self.fetch_wait,
            retry=retry_if_exception(_is_retryable_fetch),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        retryer(self.fetcher.fetch, url, workspace.input_path, timeout=timeout)

    def _run_stages(self, item: WorkItem, identity: str, outcome: ItemOutcome) -> None:
        s = self.settings
        with self._stage(outcome, Stage.FETCHING):
            workspace = create_workspace(s.workspace_root, identity, source_url=item.source_url,
                                         playlist_name=s.playlist_name,
                                         timestamp_suffix=s.workspace_timestamp_suffix)
            self._fetch(item.source_url, workspace)

        with self._stage(outcome, Stage.TRANSCODING):
            workspace.ensure_output_dir()
            self.transcoder.transcode(workspace.input_path, workspace.playlist_path, timeout=s.transcode_timeout)

        with self._stage(outcome, Stage.UPLOADING):
            manifest = self.uploader.upload(workspace.output_dir, layout_fn(identity, s), timeout=s.upload_timeout)
            logger.info(f"[{identity}] served at {s.public_base_url.rstrip('/')}/{manifest.playlist_key}")

        with self._stage(outcome, Stage.RECORDING):
            record = build_metadata_record(item, identity, manifest, s.public_base_url, utc_timestamp())
            save_meta_file(record, workspace.meta_path)
            self.store.record_completion(record, item)
            outcome.record = record

        with self._stage(outcome, Stage.CLEANING):
            failures = cleanup_workspace(workspace, keep_metadata=s.keep_metadata, keep_output=s.keep_output)
            if failures:
                logger.warning(f"[{identity}] cleanup left {len(failures)} path(s) behind")

        outcome.advance(Stage.DONE)
        logger.info(f"[{identity}] completed {item.source_url}")

    def _report(self, outcome: ItemOutcome) -> None:
        if outcome.state is Stage.FAILED:
            self.metrics.item_failed(outcome.failed_stage.value if outcome.failed_stage else "unknown")
        elif outcome.skipped:
            self.metrics.item_skipped(outcome.skip_reason or "unknown")
        else:
            self.metrics.item_succeeded()

    # ------------------------------------------------------------------ backlog
    def run(self, items: Iterable[WorkItem], *, limit: int = 0, dry_run: bool = False) -> RunSummary:
        """
        Drain `items`. With workers > 1 the iterable is consumed lazily and at
        most 2 * workers items are in flight at any time. Items may finish in
        any order.
        """
        summary = RunSummary()
        backlog: Iterable[WorkItem] = itertools.islice(items, limit) if limit else items
        workers = self.settings.workers

        if workers <= 1:
            for item in backlog:
                summary.add(self.process_item(item, dry_run=dry_run))
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hls-ingest") as pool:
                in_flight = set()
                for item in backlog:
                    if len(in_flight) >= workers * 2:
                        done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                        for future in done:
                            summary.add(future.result())
                    in_flight.add(pool.submit(self.process_item, item, dry_run=dry_run))
                for future in in_flight:
                    summary.add(future.result())

        logger.info(f"Run finished: {summary.succeeded} succeeded, {summary.failed} failed, "
                    f"{summary.skipped} skipped ({summary.attempted} total)")
        for failed in summary.failures:
            stage = failed.failed_stage.value if failed.failed_stage else "?"
            logger.info(f"  failed [{failed.identity}] at {stage}: {failed.error}")
        return summary


def build_pipeline(settings: IngestSettings, session=None) -> Tuple[IngestPipeline, DynamoProvenanceStore]:
    """Wire the production collaborators from settings."""
    boto_session = get_boto_session(settings, session)
    resource, client = make_dynamodb(settings, boto_session)
    store = DynamoProvenanceStore(
        resource, client,
        source_table=settings.source_table,
        records_table=settings.records_table,
        claims_table=settings.claims_table,
        completion_mode=settings.completion_mode,
        lease_seconds=settings.claim_lease_seconds,
    )
    http = requests.Session()
    fetcher = HttpFetcher(http, timeout=settings.fetch_timeout, chunk_size=settings.fetch_chunk_size,
                          user_agent=settings.user_agent)
    transcoder = FfmpegTranscoder(settings.ffmpeg_path, TranscodeProfile(segment_seconds=settings.segment_seconds),
                                  timeout=settings.transcode_timeout)
    uploader = S3Uploader(make_s3_client(settings, boto_session), settings.bucket,
                          timeout=settings.upload_timeout, verify=settings.verify_uploads)
    metrics = MetricsPublisher(
        make_cloudwatch_client(boto_session) if settings.metrics_enabled else None,
        namespace=settings.metrics_namespace,
        enabled=settings.metrics_enabled,
    )
    pipeline = IngestPipeline(settings, store=store, fetcher=fetcher, transcoder=transcoder,
                              uploader=uploader, metrics=metrics)
    return pipeline, store
