import asyncio
import hashlib
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "seg_%05d.ts"
SEGMENT_MARKER = "#EXTINF"


class JobMode(str, Enum):
    REMUX = "remux"
    TRANSCODE = "transcode"


class JobOutcome(str, Enum):
    READY = "ready"
    FAILED = "failed"
    NOT_READY = "not_ready"


def compute_job_id(source_url: str, mode: str, video_bitrate: str, audio_bitrate: str) -> str:
    """Content address of a job: a pure function of its defining parameters."""
    key = "|".join((source_url, JobMode(mode).value, video_bitrate, audio_bitrate))
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


@dataclass
class TranscodeJob:
    """
    A transcoder process writing a rolling HLS rendition into its own directory.

    ``ready`` is set once the playlist lists a segment; ``exited`` once the
    process is gone (or never started).
    """

    id: str
    source_url: str
    mode: JobMode
    video_bitrate: str
    audio_bitrate: str
    output_dir: str
    process: Optional[Any] = None
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)
    failed: bool = False
    exit_code: Optional[int] = None
    error: Optional[str] = None
    waiters: int = 0
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def playlist_path(self) -> str:
        return os.path.join(self.output_dir, PLAYLIST_NAME)

    @property
    def is_alive(self) -> bool:
        return self.process is not None and not self.exited.is_set()

    def touch(self) -> None:
        """Update last access time."""
        self.last_access = time.time()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.last_access

    async def has_segment(self) -> bool:
        """Whether the output playlist lists at least one segment."""
        if not await aiofiles.os.path.exists(self.playlist_path):
            return False
        try:
            async with aiofiles.open(self.playlist_path, "r", encoding="utf-8", errors="replace") as f:
                content = await f.read()
        except OSError as e:
            logger.debug(f"[TranscodeJob] Could not read {self.playlist_path}: {e}")
            return False
        return SEGMENT_MARKER in content

    def mark_exited(self, exit_code: Optional[int], error: Optional[str] = None) -> None:
        self.exit_code = exit_code
        if error is not None:
            self.error = error
        if exit_code != 0 or error is not None:
            self.failed = True
        self.exited.set()
