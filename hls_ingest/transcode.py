#!/usr/bin/env python3
"""
Transcoding module for hls-ingest

Runs ffmpeg with a fixed stream-copy HLS profile:
    ffmpeg -i <input> -codec copy -start_number 0 -hls_time 10 -hls_list_size 0 -f hls <playlist>
The playlist and its .ts segments land next to each other in the output directory.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from hls_ingest.errors import TranscodeError

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 4000


@dataclass(frozen=True)
class TranscodeProfile:
    segment_seconds: int = 10
    codec: str = "copy"
    start_number: int = 0
    list_size: int = 0  # 0 = keep every segment in the playlist
    container: str = "hls"


class Transcoder(Protocol):
    def transcode(self, input_path: Path, output_playlist: Path, timeout: Optional[float] = None) -> None:
        ...


def check_ffmpeg(ffmpeg_path: str = "ffmpeg") -> bool:
    """Check if ffmpeg is installed"""
    try:
        subprocess.run([ffmpeg_path, "-version"], capture_output=True, check=True)
        return True
    except (subprocess.SubprocessError, FileNotFoundError, PermissionError):
        logger.error(f"{ffmpeg_path} is not installed or not in PATH")
        return False


def build_ffmpeg_command(ffmpeg_path: str, input_path: Path, output_playlist: Path,
                         profile: TranscodeProfile) -> List[str]:
    return [
        ffmpeg_path, "-hide_banner", "-y",
        "-i", str(input_path),
        "-codec", profile.codec,
        "-start_number", str(profile.start_number),
        "-hls_time", str(profile.segment_seconds),
        "-hls_list_size", str(profile.list_size),
        "-f", profile.container,
        str(output_playlist),
    ]


class FfmpegTranscoder:
    """Transcoder that shells out to ffmpeg. Leaves partial output in place on failure."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", profile: Optional[TranscodeProfile] = None,
                 timeout: Optional[float] = None):
        self.ffmpeg_path = ffmpeg_path
        self.profile = profile or TranscodeProfile()
        self.timeout = timeout

    def transcode(self, input_path: Path, output_playlist: Path, timeout: Optional[float] = None) -> None:
        cmd = build_ffmpeg_command(self.ffmpeg_path, input_path, output_playlist, self.profile)
        timeout = timeout or self.timeout
        logger.info(f"Converting with ffmpeg: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode(errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise TranscodeError(f"ffmpeg timed out after {timeout}s", stderr=stderr[-STDERR_TAIL_CHARS:]) from e
        except OSError as e:
            raise TranscodeError(f"Could not launch {self.ffmpeg_path}: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "")[-STDERR_TAIL_CHARS:]
            logger.error(f"ffmpeg error (exit {result.returncode}): {stderr}")
            raise TranscodeError(f"ffmpeg exited with code {result.returncode}",
                                 stderr=stderr, returncode=result.returncode)
        if not Path(output_playlist).is_file():
            raise TranscodeError(f"ffmpeg succeeded but produced no playlist at {output_playlist}",
                                 stderr=(result.stderr or "")[-STDERR_TAIL_CHARS:], returncode=0)
        logger.info(f"Transcoded {input_path} -> {output_playlist}")
