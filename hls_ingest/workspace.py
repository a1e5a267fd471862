# hls_ingest/workspace.py
"""
Per-item local directory tree.

    <workspace_root>/<identity>[_<timestamp>]/
        input.<ext>        raw download
        output/            playlist + segments (created just before transcoding)
        meta.json          metadata record
"""
from __future__ import annotations

import datetime as dt
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional
from urllib.parse import urlparse

from hls_ingest.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_INPUT_EXT = ".mp4"
META_FILE_NAME = "meta.json"
OUTPUT_DIR_NAME = "output"


def input_extension(source_url: str) -> str:
    """Extension of the URL path if it looks like a media extension, else .mp4."""
    try:
        suffix = PurePosixPath(urlparse(source_url).path).suffix.lower()
    except ValueError:
        return DEFAULT_INPUT_EXT
    if 1 < len(suffix) <= 5 and suffix[1:].isalnum():
        return suffix
    return DEFAULT_INPUT_EXT


@dataclass(frozen=True)
class Workspace:
    identity: str
    root: Path
    playlist_name: str = "output.m3u8"
    input_ext: str = DEFAULT_INPUT_EXT

    @property
    def input_path(self) -> Path:
        return self.root / f"input{self.input_ext}"

    @property
    def output_dir(self) -> Path:
        return self.root / OUTPUT_DIR_NAME

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / self.playlist_name

    @property
    def meta_path(self) -> Path:
        return self.root / META_FILE_NAME

    def ensure_output_dir(self) -> Path:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create output directory {self.output_dir}: {e}") from e
        return self.output_dir


def stale_workspaces(workspace_root: Path, identity: str) -> List[Path]:
    """Timestamped workspace directories left behind for `identity` by earlier runs."""
    pattern = re.compile(rf"^{re.escape(identity)}_\d{{8}}T\d{{12}}Z$")
    root = Path(workspace_root)
    if not root.is_dir():
        return []
    return sorted(p for p in root.iterdir() if p.is_dir() and pattern.match(p.name))


def create_workspace(workspace_root: Path, identity: str, *, source_url: str = "",
                     playlist_name: str = "output.m3u8", timestamp_suffix: bool = True,
                     keep_previous: int = 1, now: Optional[dt.datetime] = None) -> Workspace:
    """
    Allocate the directory for one item.

    With timestamp_suffix the directory name carries the creation time, so
    leftovers from an earlier failed run are never reused. Only the newest
    `keep_previous` earlier directories for the identity survive; older ones
    are pruned. Without the suffix a stale directory for the same identity is
    wiped first.
    """
    name = identity
    if timestamp_suffix:
        now = now or dt.datetime.now(dt.timezone.utc)
        name = f"{identity}_{now.strftime('%Y%m%dT%H%M%S%fZ')}"
        previous = stale_workspaces(workspace_root, identity)
        for old in previous[:max(len(previous) - keep_previous, 0)]:
            logger.info(f"Pruning old workspace {old}")
            try:
                shutil.rmtree(old)
            except OSError as e:
                logger.error(f"Could not prune old workspace {old}: {e}")
    root = Path(workspace_root) / name
    try:
        if root.exists() and not timestamp_suffix:
            logger.info(f"Removing stale workspace {root}")
            shutil.rmtree(root)
        root.mkdir(parents=True, exist_ok=False)
    except OSError as e:
        raise StorageError(f"Cannot create workspace {root}: {e}") from e
    logger.debug(f"Created workspace {root}")
    return Workspace(identity=identity, root=root, playlist_name=playlist_name,
                     input_ext=input_extension(source_url) if source_url else DEFAULT_INPUT_EXT)


def _remove(path: Path, failures: List[str]) -> None:
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            return
        logger.info(f"Deleted {path}")
    except OSError as e:
        logger.error(f"Cleanup failed for {path}: {e}")
        failures.append(str(path))


def cleanup_workspace(workspace: Workspace, *, keep_metadata: bool = True, keep_output: bool = False) -> List[str]:
    """
    Best-effort deletion. The input file always goes; output/ and meta.json
    go unless asked to keep them. When nothing is kept the whole directory
    is removed. Returns the paths that could not be deleted (already logged).
    """
    failures: List[str] = []
    if not keep_metadata and not keep_output:
        _remove(workspace.root, failures)
        return failures
    _remove(workspace.input_path, failures)
    # leftover partial download from an interrupted fetch
    _remove(workspace.input_path.with_name(workspace.input_path.name + ".part"), failures)
    if not keep_output:
        _remove(workspace.output_dir, failures)
    if not keep_metadata:
        _remove(workspace.meta_path, failures)
    return failures
