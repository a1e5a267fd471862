#!/usr/bin/env python3
"""
Work item producers other than the catalog backlog.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

from hls_ingest.models import WorkItem

logger = logging.getLogger(__name__)


def items_from_urls(urls: Iterable[str]) -> Iterator[WorkItem]:
    """One unprocessed WorkItem per non-blank URL, first occurrence wins."""
    seen = set()
    for raw in urls:
        url = raw.strip()
        if not url or url.startswith("#") or url in seen:
            continue
        seen.add(url)
        yield WorkItem(source_url=url, raw_url=url)


def read_url_file(path: Path) -> Iterator[WorkItem]:
    """Read a text file with one URL per line. The file is read lazily."""
    logger.info(f"Reading URLs from {path}")
    with Path(path).open("r", encoding="utf-8") as f:
        yield from items_from_urls(f)
