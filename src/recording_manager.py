"""
Recording Supervisor.

A single background loop that keeps one recorder process per channel that
is both live and enabled for recording:
- starts recorders for channels that should record but have none
- drops recorders that died so the next pass starts them again
- stops recorders for channels that went offline, were disabled or vanished
- deletes recordings older than the retention window once per cleanup interval

The loop wakes when the channel snapshot is refreshed, with a fixed-interval
fallback in case a wake-up is missed. The job table belongs to this loop
alone; nothing else mutates it.
"""

import asyncio
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from channels import ChannelRecord, ChannelSnapshot
from config import settings
from process_pipeline import LaunchFailed, PipelineHandle, PipelineSpec, StageSpec, start_pipeline
from url_cache import StreamUrlCache

logger = logging.getLogger(__name__)

# Characters that are invalid in file names on at least one common host filesystem
INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

SECONDS_PER_DAY = 86400


def sanitize_filename(name: str, max_length: Optional[int] = None, fallback: str = "untitled") -> str:
    """Replace characters the filesystem would reject and cap the length."""
    cleaned = INVALID_FILENAME_CHARS.sub("_", name or "").strip()
    if max_length is not None and len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip()
    if cleaned in ("", ".", ".."):
        return fallback
    return cleaned


class RecordingState(str, Enum):
    NOT_RECORDING = "not_recording"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"
    CRASHED = "crashed"


@dataclass
class RecordingJob:
    channel_id: str
    display_name: str
    output_path: str
    started_at: datetime
    title: str
    # Monotonic start time, used to spot recorders that die right away
    started_monotonic: float
    handle: Optional[PipelineHandle] = None
    state: RecordingState = RecordingState.STARTING

    def to_dict(self) -> Dict:
        return {
            "channel_id": self.channel_id,
            "display_name": self.display_name,
            "state": self.state.value,
            "output_path": self.output_path,
            "title": self.title,
            "started_at": self.started_at.isoformat(),
            "pids": self.handle.pids if self.handle else [],
        }


@dataclass
class CrashHistory:
    consecutive: int = 0
    held_until: Optional[float] = None


class RecordingSupervisor:
    def __init__(
        self,
        snapshot: ChannelSnapshot,
        url_cache: StreamUrlCache,
        recording_path: Optional[str] = None,
        retention_days: Optional[int] = None,
        quality: Optional[str] = None,
        extractor_path: Optional[str] = None,
        channel_url_template: Optional[str] = None,
        recorder_args: Optional[list] = None,
        reconcile_interval: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        title_max_length: Optional[int] = None,
        crash_limit: Optional[int] = None,
        crash_window: Optional[float] = None,
        crash_cooldown: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.snapshot = snapshot
        self.url_cache = url_cache
        self.recording_path = recording_path or settings.RECORDING_PATH
        self.retention_days = retention_days if retention_days is not None else settings.RECORDING_RETENTION_DAYS
        self.quality = quality or settings.STREAM_QUALITY
        self.extractor_path = extractor_path or settings.EXTRACTOR_PATH
        self.channel_url_template = channel_url_template or settings.CHANNEL_URL_TEMPLATE
        self.recorder_args = recorder_args if recorder_args is not None else shlex.split(
            settings.RECORDER_ARGS)
        self.reconcile_interval = reconcile_interval or settings.RECORDING_RECONCILE_INTERVAL
        self.cleanup_interval = cleanup_interval or settings.RECORDING_CLEANUP_INTERVAL
        self.title_max_length = title_max_length or settings.RECORDING_TITLE_MAX_LENGTH
        self.crash_limit = crash_limit if crash_limit is not None else settings.RECORDER_CRASH_LIMIT
        self.crash_window = crash_window if crash_window is not None else settings.RECORDER_CRASH_WINDOW
        self.crash_cooldown = crash_cooldown if crash_cooldown is not None else settings.RECORDER_CRASH_COOLDOWN
        self._clock = clock

        self.jobs: Dict[str, RecordingJob] = {}
        self._crashes: Dict[str, CrashHistory] = {}
        self._last_cleanup: Optional[float] = None
        self.last_reconcile_at: Optional[datetime] = None
        self.last_cleanup_at: Optional[datetime] = None

        # One-slot wake signal: any number of notifications before the loop
        # wakes collapse into a single reconciliation pass
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        snapshot.subscribe(lambda channels: self.notify_channels_updated())

        if self.enabled:
            logger.info(f"RecordingSupervisor initialized with output dir: {self.recording_path}")
        else:
            logger.info("Recording disabled (RECORDING_PATH not set)")

    @property
    def enabled(self) -> bool:
        return bool(self.recording_path)

    # Lifecycle

    async def start(self):
        if self._task and not self._task.done():
            logger.warning("Recording supervisor already running")
            return
        if self.enabled:
            try:
                os.makedirs(self.recording_path, exist_ok=True)
            except OSError as e:
                # Recorder starts fail and log per channel until the path is usable
                logger.error(f"Cannot create recording directory {self.recording_path}: {e}")
        # Fresh events bound to the loop that runs the supervisor
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        """Stop the loop and tear down every recorder before returning."""
        logger.info("Shutting down RecordingSupervisor...")
        self._stopping.set()
        self._wake.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for channel_id, job in list(self.jobs.items()):
            try:
                await self._stop_job(job, "supervisor shutting down")
            except Exception as e:
                logger.error(f"[{channel_id}] Error stopping recording: {e}")
        self.jobs.clear()
        logger.info("RecordingSupervisor shutdown complete")

    def notify_channels_updated(self):
        self._wake.set()

    async def _run(self):
        logger.info(
            f"Recording supervisor started (fallback interval {self.reconcile_interval:.0f}s)")
        while not self._stopping.is_set():
            try:
                await self.reconcile()
            except Exception as e:
                # A bad pass must never kill the loop
                logger.error(f"Error in recording reconciliation: {e}", exc_info=True)
            await self._wait_for_wake()

    async def _wait_for_wake(self):
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.reconcile_interval)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    # Reconciliation

    async def reconcile(self, now: Optional[float] = None):
        """One reconciliation pass over the current snapshot."""
        now = self._clock() if now is None else now
        channels = self.snapshot.channels
        desired: Dict[str, ChannelRecord] = {}
        if self.enabled:
            desired = {c.identifier: c for c in channels if c.should_record}

        for channel in channels:
            if not channel.live:
                self.url_cache.invalidate(channel.identifier)

        for channel_id, job in list(self.jobs.items()):
            try:
                if channel_id not in desired:
                    await self._stop_job(job, self._stop_reason(channel_id))
                elif job.handle is None or job.handle.has_exited:
                    await self._reap_exited(job, now)
                else:
                    job.title = desired[channel_id].title
            except Exception as e:
                logger.error(f"[{channel_id}] Error reconciling recording: {e}")

        for channel_id, channel in desired.items():
            if channel_id in self.jobs or self._held_off(channel_id, now):
                continue
            try:
                await self._start_job(channel, now)
            except Exception as e:
                logger.error(f"[{channel_id}] Failed to start recording: {e}")

        for channel_id in list(self._crashes):
            if channel_id not in desired:
                del self._crashes[channel_id]

        if self._cleanup_due(now):
            self._last_cleanup = now
            try:
                self.cleanup_recordings()
            except Exception as e:
                logger.error(f"Error during recording cleanup: {e}")

        self.last_reconcile_at = datetime.now(timezone.utc)

    def _stop_reason(self, channel_id: str) -> str:
        if not self.enabled:
            return "recording disabled"
        channel = self.snapshot.get(channel_id)
        if channel is None:
            return "channel removed from lineup"
        if not channel.live:
            return "channel went offline"
        return "recording disabled for channel"

    def channel_url(self, channel_id: str) -> str:
        return self.channel_url_template.format(channel=channel_id)

    def build_output_path(self, channel: ChannelRecord, when: Optional[datetime] = None) -> str:
        """{root}/{display name}/{timestamp} - {title}.ts"""
        when = when or datetime.now()
        channel_dir = os.path.join(
            self.recording_path,
            sanitize_filename(channel.display_name, fallback=channel.identifier))
        title = sanitize_filename(channel.title, max_length=self.title_max_length)
        filename = f"{when.strftime('%Y-%m-%d_%H-%M-%S')} - {title}.ts"
        return os.path.join(channel_dir, filename)

    def build_recorder_spec(self, channel: ChannelRecord, output_path: str) -> PipelineSpec:
        return PipelineSpec(
            stages=[StageSpec([
                self.extractor_path, self.channel_url(channel.identifier), self.quality,
                "-o", output_path, *self.recorder_args,
            ])],
            capture_output=False,
            label=f"record:{channel.identifier}")

    async def _start_job(self, channel: ChannelRecord, now: float) -> Optional[RecordingJob]:
        job = RecordingJob(
            channel_id=channel.identifier,
            display_name=channel.display_name,
            output_path=self.build_output_path(channel),
            started_at=datetime.now(timezone.utc),
            title=channel.title,
            started_monotonic=now,
        )
        logger.info(f"[{channel.identifier}] Starting recording for: {channel.title}")

        os.makedirs(os.path.dirname(job.output_path), exist_ok=True)
        try:
            job.handle = await start_pipeline(self.build_recorder_spec(channel, job.output_path))
        except LaunchFailed as e:
            job.state = RecordingState.NOT_RECORDING
            logger.error(f"[{channel.identifier}] Could not start recorder: {e}")
            self._record_fast_crash(channel.identifier, now)
            return None

        job.state = RecordingState.RECORDING
        self.jobs[channel.identifier] = job
        logger.info(f"[{channel.identifier}] Recording started: {job.output_path}")
        return job

    async def _stop_job(self, job: RecordingJob, reason: str):
        job.state = RecordingState.STOPPING
        logger.info(f"[{job.channel_id}] Stopping recording: {reason}")
        try:
            if job.handle:
                await job.handle.teardown()
        finally:
            self.jobs.pop(job.channel_id, None)
            job.state = RecordingState.NOT_RECORDING

    async def _reap_exited(self, job: RecordingJob, now: float):
        """Drop a recorder that died while its channel should still record."""
        job.state = RecordingState.CRASHED
        lifetime = now - job.started_monotonic
        exit_code = job.handle.exit_code if job.handle else None
        try:
            if job.handle:
                await job.handle.teardown()
        finally:
            self.jobs.pop(job.channel_id, None)

        diagnostics = job.handle.diagnostics() if job.handle else ""
        logger.warning(
            f"[{job.channel_id}] Recorder exited with code {exit_code} after {lifetime:.0f}s, "
            f"will restart while still live" + (f": {diagnostics}" if diagnostics else ""))

        if lifetime < self.crash_window:
            self._record_fast_crash(job.channel_id, now)
        else:
            self._crashes.pop(job.channel_id, None)

    def _record_fast_crash(self, channel_id: str, now: float):
        history = self._crashes.setdefault(channel_id, CrashHistory())
        history.consecutive += 1
        if self.crash_limit > 0 and history.consecutive >= self.crash_limit:
            history.held_until = now + self.crash_cooldown
            logger.error(
                f"[{channel_id}] Recorder failed {history.consecutive} times in a row, "
                f"pausing restarts for {self.crash_cooldown:.0f}s")

    def _held_off(self, channel_id: str, now: float) -> bool:
        history = self._crashes.get(channel_id)
        if not history or history.held_until is None:
            return False
        if now < history.held_until:
            return True
        # Cooldown over: start again with a clean slate
        del self._crashes[channel_id]
        return False

    # Retention

    def _cleanup_due(self, now: float) -> bool:
        return self._last_cleanup is None or now - self._last_cleanup >= self.cleanup_interval

    def cleanup_recordings(self, now: Optional[float] = None) -> int:
        """
        Delete recordings older than the retention window and remove the
        directories that deletion left empty. Never touches anything outside
        the recording root, the root itself, or files still being recorded.
        """
        if not self.enabled or self.retention_days <= 0:
            return 0

        root = os.path.abspath(self.recording_path)
        if not os.path.isdir(root):
            return 0

        cutoff = (time.time() if now is None else now) - self.retention_days * SECONDS_PER_DAY
        active = {os.path.abspath(job.output_path) for job in self.jobs.values()}
        emptied_candidates = set()
        removed_files = 0
        removed_dirs = 0

        # Bottom-up so child directories are handled before their parents
        for dirpath, _, filenames in os.walk(root, topdown=False):
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                if path in active:
                    continue
                try:
                    if os.path.getmtime(path) < cutoff:
                        os.remove(path)
                        removed_files += 1
                        emptied_candidates.add(dirpath)
                        logger.info(f"Deleted expired recording: {path}")
                except OSError as e:
                    logger.warning(f"Failed to remove recording {path}: {e}")

            if dirpath == root or dirpath not in emptied_candidates:
                continue
            try:
                if not os.listdir(dirpath):
                    os.rmdir(dirpath)
                    removed_dirs += 1
                    emptied_candidates.add(os.path.dirname(dirpath))
            except OSError as e:
                logger.warning(f"Failed to remove directory {dirpath}: {e}")

        self.last_cleanup_at = datetime.now(timezone.utc)
        if removed_files or removed_dirs:
            logger.info(
                f"Recording cleanup removed {removed_files} files and {removed_dirs} directories "
                f"older than {self.retention_days} days")
        return removed_files

    # Status

    def get_state(self, channel_id: str) -> RecordingState:
        job = self.jobs.get(channel_id)
        return job.state if job else RecordingState.NOT_RECORDING

    def get_status(self) -> Dict:
        now = self._clock()
        return {
            "enabled": self.enabled,
            "recording_path": self.recording_path,
            "retention_days": self.retention_days,
            "active_recordings": len(self.jobs),
            "recordings": [job.to_dict() for job in self.jobs.values()],
            "held_off": {
                channel_id: round(history.held_until - now, 1)
                for channel_id, history in self._crashes.items()
                if history.held_until is not None and history.held_until > now
            },
            "last_reconcile_at": self.last_reconcile_at.isoformat() if self.last_reconcile_at else None,
            "last_cleanup_at": self.last_cleanup_at.isoformat() if self.last_cleanup_at else None,
        }
