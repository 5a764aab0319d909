"""
Transcode job supervision.

This module provides:
- TranscodeJobManager: Owns the job table, spawns one transcoder per content
  address, gates callers on readiness, escalates remux to transcode, and
  evicts idle jobs
- CompatResult: What a compatibility request resolves to

Architecture:
- Job ids are content hashes of (url, mode, video bitrate, audio bitrate)
- Creation is serialized per id with an asyncio.Lock; lookups and touch are lock-free
- Each job has an exit watcher (process exit code) and an output watcher (first segment)
- A periodic sweep stops jobs idle past the threshold; it is the only place jobs end
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from iptv_proxy.compat.ffmpeg import build_ffmpeg_command
from iptv_proxy.compat.job import JobMode, JobOutcome, TranscodeJob, compute_job_id
from iptv_proxy.configs import settings
from iptv_proxy.exceptions import JobNotReadyError, TranscoderError

logger = logging.getLogger(__name__)

ProcessSpawner = Callable[[List[str]], Awaitable[asyncio.subprocess.Process]]


class FallbackState(str, Enum):
    ATTEMPTING_PRIMARY = "attempting_primary"
    ATTEMPTING_FALLBACK = "attempting_fallback"
    READY = "ready"
    FAILED = "failed"


@dataclass
class CompatResult:
    job_id: str
    mode: JobMode
    play: str


async def spawn_process(cmd: List[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


def ready_timeout_for(mode: JobMode) -> float:
    if mode is JobMode.TRANSCODE:
        return settings.transcode_ready_timeout
    return settings.remux_ready_timeout


class TranscodeJobManager:
    """
    Manages transcode jobs keyed by content address.

    At most one live process exists per job id. Jobs are destroyed only by the
    idle sweep (or on shutdown).
    """

    def __init__(
        self,
        output_root: Optional[str] = None,
        spawner: Optional[ProcessSpawner] = None,
        ffmpeg_path: Optional[str] = None,
    ):
        self.output_root = output_root or settings.compat_root
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self._spawner = spawner or spawn_process
        self._jobs: Dict[str, TranscodeJob] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def get_job(self, job_id: str) -> Optional[TranscodeJob]:
        return self._jobs.get(job_id)

    def get_active_jobs(self) -> Dict[str, TranscodeJob]:
        return dict(self._jobs)

    def touch(self, job_id: str) -> Optional[TranscodeJob]:
        """Mark a job as accessed; returns the job, or None if unknown."""
        job = self._jobs.get(job_id)
        if job:
            job.touch()
        return job

    def play_path(self, job: TranscodeJob) -> str:
        return f"{settings.compat_prefix.rstrip('/')}/{job.id}/index.m3u8"

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._locks.setdefault(job_id, asyncio.Lock())

    async def get_or_create_job(
        self,
        source_url: str,
        mode: JobMode,
        video_bitrate: str,
        audio_bitrate: str,
        user_agent: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> TranscodeJob:
        """
        Get the live job for these parameters or spawn a new one.

        Raises:
            TranscoderError: If the transcoder could not be started.
        """
        job_id = compute_job_id(source_url, mode, video_bitrate, audio_bitrate)

        job = self._jobs.get(job_id)
        if job and job.is_alive:
            job.touch()
            logger.info(f"[TranscodeJobManager] Reusing job {job_id} ({mode.value})")
            return job

        async with self._lock_for(job_id):
            # Double-check after acquiring lock
            job = self._jobs.get(job_id)
            if job and job.is_alive:
                job.touch()
                logger.info(f"[TranscodeJobManager] Reusing job {job_id} ({mode.value})")
                return job
            if job:
                logger.info(f"[TranscodeJobManager] Replacing exited job {job_id} (exit code: {job.exit_code})")
                self._jobs.pop(job_id, None)
                await self._stop_job(job)

            job = TranscodeJob(
                id=job_id,
                source_url=source_url,
                mode=mode,
                video_bitrate=video_bitrate,
                audio_bitrate=audio_bitrate,
                output_dir=os.path.join(self.output_root, job_id),
            )
            await self._start_job(job, user_agent, headers)
            self._jobs[job_id] = job
            self._ensure_tasks()
            return job

    async def _start_job(self, job: TranscodeJob, user_agent: Optional[str], headers: Optional[Dict[str, str]]):
        await asyncio.to_thread(shutil.rmtree, job.output_dir, ignore_errors=True)
        await asyncio.to_thread(os.makedirs, job.output_dir, exist_ok=True)

        cmd = build_ffmpeg_command(job, user_agent=user_agent, headers=headers, ffmpeg_path=self.ffmpeg_path)
        logger.info(f"[TranscodeJobManager] Starting {job.mode.value} job {job.id} for {job.source_url}")
        try:
            job.process = await self._spawner(cmd)
        except (OSError, ValueError) as e:
            logger.error(f"[TranscodeJobManager] Failed to start transcoder for job {job.id}: {e}")
            job.mark_exited(None, error=str(e))
            await asyncio.to_thread(shutil.rmtree, job.output_dir, ignore_errors=True)
            raise TranscoderError(f"transcoder unavailable or failed to start: {e}")

        job.tasks.append(asyncio.create_task(self._watch_exit(job)))
        job.tasks.append(asyncio.create_task(self._watch_output(job)))

    async def _watch_exit(self, job: TranscodeJob) -> None:
        """Record the process exit code and fulfil the job's exit signal."""
        process = job.process
        last_error = None
        if getattr(process, "stderr", None) is not None:
            async for raw_line in process.stderr:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line:
                    last_error = line
                    logger.debug(f"[TranscodeJobManager] ffmpeg[{job.id}]: {line}")
        exit_code = await process.wait()

        # Output written right before exit still counts.
        if not job.ready.is_set() and await job.has_segment():
            job.ready.set()

        job.mark_exited(exit_code)
        if job.failed:
            job.error = last_error or f"transcoder exited with code {exit_code}"
            logger.warning(f"[TranscodeJobManager] Job {job.id} failed: {job.error}")
        else:
            logger.info(f"[TranscodeJobManager] Job {job.id} exited")

    async def _watch_output(self, job: TranscodeJob) -> None:
        """Fulfil the job's ready signal once its playlist lists a segment."""
        while not job.exited.is_set():
            if await job.has_segment():
                job.ready.set()
                logger.info(
                    f"[TranscodeJobManager] Job {job.id} ready after {time.time() - job.created_at:.1f}s"
                )
                return
            await asyncio.sleep(settings.ready_poll_interval)

    async def wait_until_ready(self, job: TranscodeJob, timeout: Optional[float] = None) -> JobOutcome:
        """
        Wait until the job is ready, its process exits, or the timeout elapses.

        Args:
            job (TranscodeJob): The job to wait for.
            timeout (float, optional): Seconds to wait; defaults to the mode's timeout.

        Returns:
            JobOutcome: READY, FAILED (process exited non-zero or never started) or NOT_READY.
        """
        if timeout is None:
            timeout = ready_timeout_for(job.mode)

        job.waiters += 1
        ready_wait = asyncio.ensure_future(job.ready.wait())
        exit_wait = asyncio.ensure_future(job.exited.wait())
        try:
            await asyncio.wait({ready_wait, exit_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready_wait.cancel()
            exit_wait.cancel()
            job.waiters -= 1
            job.touch()

        if job.ready.is_set():
            return JobOutcome.READY
        if job.failed:
            return JobOutcome.FAILED
        return JobOutcome.NOT_READY

    async def ensure_job(
        self,
        source_url: str,
        mode: JobMode,
        video_bitrate: str,
        audio_bitrate: str,
        user_agent: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        wait: bool = True,
        auto_fallback: bool = False,
    ) -> CompatResult:
        """
        Resolve a compatibility request to a (possibly shared) job.

        Args:
            source_url (str): The source stream.
            mode (JobMode): remux or transcode.
            video_bitrate (str): Video bitrate for transcode mode.
            audio_bitrate (str): Audio bitrate.
            user_agent (str, optional): User-agent for the source.
            headers (dict, optional): Referer/Origin headers for the source.
            wait (bool): Wait for the first segment before returning.
            auto_fallback (bool): Escalate a remux that does not become ready to transcode.

        Returns:
            CompatResult: Job id, resolved mode and playlist path.

        Raises:
            TranscoderError: If the transcoder could not start or exited abnormally.
            JobNotReadyError: If no segment appeared within the wait window.
        """
        state = FallbackState.ATTEMPTING_PRIMARY
        job = await self.get_or_create_job(source_url, mode, video_bitrate, audio_bitrate, user_agent, headers)
        if not wait:
            return CompatResult(job.id, job.mode, self.play_path(job))

        outcome = await self.wait_until_ready(job)

        if outcome is not JobOutcome.READY and auto_fallback and job.mode is JobMode.REMUX:
            state = FallbackState.ATTEMPTING_FALLBACK
            logger.warning(
                f"[TranscodeJobManager] Remux job {job.id} {outcome.value}, falling back to transcode "
                f"at {settings.fallback_video_bitrate}"
            )
            job = await self.get_or_create_job(
                source_url, JobMode.TRANSCODE, settings.fallback_video_bitrate, audio_bitrate, user_agent, headers
            )
            outcome = await self.wait_until_ready(job)

        if outcome is JobOutcome.READY:
            state = FallbackState.READY
            logger.debug(f"[TranscodeJobManager] Job {job.id} resolved in state {state.value}")
            return CompatResult(job.id, job.mode, self.play_path(job))

        state = FallbackState.FAILED
        logger.error(f"[TranscodeJobManager] Job {job.id} {outcome.value} in state {state.value}")
        if outcome is JobOutcome.FAILED:
            raise TranscoderError(f"transcoder failed: {job.error or 'process exited abnormally'}")
        raise JobNotReadyError(f"stream not ready within {ready_timeout_for(job.mode):.0f}s")

    async def _stop_job(self, job: TranscodeJob) -> None:
        """Terminate the job's process and remove its output directory."""
        for task in job.tasks:
            task.cancel()

        process = job.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"[TranscodeJobManager] Job {job.id} did not terminate, killing")
                try:
                    process.kill()
                    await process.wait()
                except ProcessLookupError:
                    pass

        if not job.exited.is_set():
            job.mark_exited(process.returncode if process is not None else None)
        await asyncio.to_thread(shutil.rmtree, job.output_dir, ignore_errors=True)

    async def evict_idle(self, now: Optional[float] = None) -> List[str]:
        """
        Stop and remove every job idle longer than the threshold.

        Jobs being created or waited on are skipped.

        Returns:
            list[str]: Ids of evicted jobs.
        """
        evicted = []
        for job_id, job in list(self._jobs.items()):
            lock = self._lock_for(job_id)
            if lock.locked() or job.waiters > 0:
                continue
            if job.idle_for(now) <= settings.job_idle_timeout:
                continue

            async with lock:
                # Re-check: the job may have been replaced or touched meanwhile.
                if self._jobs.get(job_id) is not job or job.waiters > 0:
                    continue
                idle = job.idle_for(now)
                if idle <= settings.job_idle_timeout:
                    continue
                logger.info(f"[TranscodeJobManager] Evicting idle job {job_id} (idle: {idle:.0f}s)")
                self._jobs.pop(job_id, None)
                await self._stop_job(job)
                evicted.append(job_id)
        return evicted

    def _ensure_tasks(self) -> None:
        """Ensure the eviction sweep is running."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        """Periodically evict idle jobs."""
        while True:
            try:
                await asyncio.sleep(settings.job_sweep_interval)
                await self.evict_idle()
            except asyncio.CancelledError:
                return
            except Exception as e:
                logger.warning(f"[TranscodeJobManager] Cleanup loop error: {e}")

    async def close(self) -> None:
        """Stop the sweep and every job."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        for job_id, job in list(self._jobs.items()):
            self._jobs.pop(job_id, None)
            await self._stop_job(job)

        logger.info("[TranscodeJobManager] Closed")


# Global job manager instance
job_manager = TranscodeJobManager()
