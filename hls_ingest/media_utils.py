#!/usr/bin/env python3
"""
Media download helpers: streaming fetch of one remote file into a workspace.

No retries here: the pipeline decides whether a FetchError is worth another try.
"""
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional

import requests

from hls_ingest.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "HlsIngest/1.0"
READ_IDLE_TIMEOUT = 60  # seconds without a byte before requests gives up
CONNECT_TIMEOUT = 10


def _part_path(output_path: Path) -> Path:
    return output_path.with_name(output_path.name + ".part")


# ───────────────────────────── polite downloader
def polite_get(session: requests.Session, url: str, output_path: Path, *, timeout: float = 300.0,
               chunk_size: int = 8192, user_agent: str = DEFAULT_USER_AGENT) -> int:
    """
    Stream `url` to `output_path` in chunks, bounded memory regardless of size.

    The body goes to "<output_path>.part" first and is renamed only after the
    whole body arrived, so a failed download never leaves a file at
    output_path. `timeout` is the overall deadline in seconds.
    Returns the number of bytes written. A short body raises FetchError;
    requests / OS errors and TimeoutError propagate as is and HttpFetcher
    maps them to FetchError.
    """
    deadline = time.monotonic() + timeout
    part = _part_path(output_path)
    headers = {"User-Agent": user_agent}
    request_timeout = (min(CONNECT_TIMEOUT, timeout), min(READ_IDLE_TIMEOUT, timeout))
    written = 0
    with session.get(url, stream=True, timeout=request_timeout, headers=headers) as r:
        r.raise_for_status()  # HTTPError for 4XX / 5XX
        expected = r.headers.get("Content-Length")
        encoded = r.headers.get("Content-Encoding", "identity").lower() not in ("", "identity")
        with open(part, "wb") as f:
            for chunk in r.iter_content(chunk_size=chunk_size):
                if time.monotonic() > deadline:
                    raise TimeoutError(f"download exceeded {timeout:.0f}s deadline")
                if chunk:  # filter out keep-alive chunks
                    f.write(chunk)
                    written += len(chunk)
        if expected is not None and not encoded and expected.isdigit() and int(expected) != written:
            raise FetchError(f"Incomplete body from {url}: got {written} of {expected} bytes", retryable=True)
    os.replace(part, output_path)
    return written


class HttpFetcher:
    """Fetcher backed by a shared requests.Session."""

    def __init__(self, session: Optional[requests.Session] = None, *, timeout: float = 300.0,
                 chunk_size: int = 8192, user_agent: str = DEFAULT_USER_AGENT):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.user_agent = user_agent

    def fetch(self, url: str, destination: Path, timeout: Optional[float] = None) -> int:
        """Download `url` to `destination`. Raises FetchError; no partial file survives."""
        destination = Path(destination)
        logger.info(f"Downloading {url} to {destination}")
        try:
            size = polite_get(self.session, url, destination, timeout=timeout or self.timeout,
                              chunk_size=self.chunk_size, user_agent=self.user_agent)
        except FetchError:
            self._discard(destination)
            raise
        except requests.exceptions.HTTPError as e:
            self._discard(destination)
            status = e.response.status_code if e.response is not None else None
            retryable = status is not None and (status >= 500 or status == 429)
            raise FetchError(f"HTTP {status} for {url}", status_code=status, retryable=retryable) from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            self._discard(destination)
            raise FetchError(f"Network error for {url}: {e}", retryable=True) from e
        except requests.exceptions.RequestException as e:
            self._discard(destination)
            raise FetchError(f"Request failed for {url}: {e}") from e
        except TimeoutError as e:
            self._discard(destination)
            raise FetchError(f"Deadline exceeded for {url}: {e}") from e
        except OSError as e:
            self._discard(destination)
            raise FetchError(f"Could not write {destination}: {e}") from e
        logger.info(f"Downloaded {size} bytes from {url}")
        return size

    @staticmethod
    def _discard(destination: Path) -> None:
        for path in (_part_path(destination), destination):
            if path.exists():
                try:
                    path.unlink()
                    logger.info(f"Removed partially downloaded file: {path}")
                except OSError as oe:
                    logger.error(f"Error removing partially downloaded file {path}: {oe}")
