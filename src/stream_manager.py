"""
Live Stream Pipeline.

For every viewer request this spins up an extractor (and optionally a
fetcher or transcoder) through the Process Pipeline Runner and relays the
final stage's bytes to the client. Each request owns its own pipeline;
nothing is shared between viewers except the stream URL cache.
"""

import asyncio
import logging
import re
import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from fastapi import HTTPException
from fastapi.responses import StreamingResponse

from channels import ChannelRecord
from config import settings
from process_pipeline import LaunchFailed, PipelineHandle, PipelineSpec, StageSpec, start_pipeline
from url_cache import StreamUrlCache

logger = logging.getLogger(__name__)

MEDIA_TYPE = "video/mp2t"

# Channel identifiers end up in an argument vector, so they must never look like an option
CHANNEL_ID_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,99}$")


def is_valid_channel_id(channel_id: str) -> bool:
    return bool(CHANNEL_ID_PATTERN.match(channel_id or ""))


class ExtractionMode(str, Enum):
    DIRECT = "direct"
    DISCOVER = "discover"

    @classmethod
    def parse(cls, value: str) -> "ExtractionMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown extraction mode '{value}', expected one of: "
                f"{', '.join(m.value for m in cls)}")


class TeardownReason(str, Enum):
    UPSTREAM_ENDED = "upstream_ended"
    CLIENT_CANCELLED = "client_cancelled"
    IO_ERROR = "io_error"


class StreamUnavailable(LaunchFailed):
    """Discovery ran but produced no direct media URL (channel offline, extractor error)."""


@dataclass
class ViewerSession:
    connection_id: str
    channel_id: str
    mode: ExtractionMode
    created_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    handle: Optional[PipelineHandle] = None
    bytes_served: int = 0
    chunks_served: int = 0
    last_data_time: Optional[datetime] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    teardown_reason: Optional[TeardownReason] = None
    closed: bool = False


class PipelineStreamingResponse(StreamingResponse):
    """
    StreamingResponse that always runs on_close once the response is over.

    A body generator that is never iterated (client gone before the first
    chunk) never reaches its finally block, so the close hook is what
    guarantees the pipeline is released.
    """

    def __init__(self, content: AsyncIterator[bytes], on_close: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            await self._on_close()


class StreamManager:
    def __init__(
        self,
        url_cache: StreamUrlCache,
        mode: Optional[ExtractionMode] = None,
        extractor_path: Optional[str] = None,
        fetcher_path: Optional[str] = None,
        transcoder_path: Optional[str] = None,
        channel_url_template: Optional[str] = None,
        quality: Optional[str] = None,
        extractor_args: Optional[List[str]] = None,
        transcode_args: Optional[List[str]] = None,
        chunk_size: Optional[int] = None,
        discovery_timeout: Optional[float] = None,
    ):
        self.url_cache = url_cache
        self.mode = mode or ExtractionMode.parse(settings.EXTRACTION_MODE)
        self.extractor_path = extractor_path or settings.EXTRACTOR_PATH
        self.fetcher_path = fetcher_path or settings.FETCHER_PATH
        self.transcoder_path = transcoder_path or settings.TRANSCODER_PATH
        self.channel_url_template = channel_url_template or settings.CHANNEL_URL_TEMPLATE
        self.quality = quality or settings.STREAM_QUALITY
        self.extractor_args = extractor_args if extractor_args is not None else shlex.split(
            settings.EXTRACTOR_ARGS)
        self.transcode_args = transcode_args if transcode_args is not None else shlex.split(
            settings.TRANSCODE_ARGS)
        self.chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
        self.discovery_timeout = discovery_timeout or settings.DISCOVERY_TIMEOUT

        # Active viewer sessions, keyed by connection id
        self.sessions: Dict[str, ViewerSession] = {}
        self.total_sessions = 0
        self.total_bytes_served = 0
        self.teardown_counts: Dict[str, int] = {r.value: 0 for r in TeardownReason}
        self.started_at = datetime.now(timezone.utc)

        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self):
        """Start the stream manager"""
        self._running = True
        self._sweep_task = asyncio.create_task(self._periodic_sweep())
        logger.info(
            f"Stream manager started in {self.mode.value} mode"
            + (" with transcoding" if self.transcode_args else ""))

    async def stop(self):
        """Stop the stream manager and release every viewer pipeline"""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        for session in list(self.sessions.values()):
            session.cancel_event.set()
            await self._finish_session(session, TeardownReason.CLIENT_CANCELLED)
        logger.info("Stream manager stopped")

    async def _periodic_sweep(self):
        """Drop expired cache entries; correctness never depends on this."""
        while self._running:
            try:
                await asyncio.sleep(settings.CACHE_SWEEP_INTERVAL)
                self.url_cache.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cache sweep: {e}")

    def channel_url(self, channel_id: str) -> str:
        return self.channel_url_template.format(channel=channel_id)

    # Pipeline construction

    def _transcode_stage(self) -> StageSpec:
        return StageSpec([
            self.transcoder_path, "-hide_banner", "-loglevel", "error",
            "-i", "pipe:0",
            *self.transcode_args,
            "-f", "mpegts", "pipe:1",
        ])

    def build_direct_spec(self, channel_id: str) -> PipelineSpec:
        """Extractor writes the container straight to stdout, optionally into a transcoder."""
        stages = [StageSpec([
            self.extractor_path, self.channel_url(channel_id), self.quality,
            "--stdout", *self.extractor_args,
        ])]
        if self.transcode_args:
            stages.append(self._transcode_stage())
        return PipelineSpec(stages=stages, label=f"stream:{channel_id}")

    def build_discovery_spec(self, channel_id: str) -> PipelineSpec:
        return PipelineSpec(
            stages=[StageSpec([
                self.extractor_path, self.channel_url(channel_id), self.quality,
                "--stream-url", *self.extractor_args,
            ])],
            label=f"discover:{channel_id}")

    def build_fetch_spec(self, channel_id: str, media_url: str) -> PipelineSpec:
        """Fetch a discovered URL. Transcode arguments are folded in so the chain stays one stage."""
        codec_args = self.transcode_args or ["-c", "copy"]
        return PipelineSpec(
            stages=[StageSpec([
                self.fetcher_path, "-hide_banner", "-loglevel", "error",
                "-i", media_url,
                *codec_args,
                "-f", "mpegts", "pipe:1",
            ])],
            label=f"fetch:{channel_id}")

    # Discovery

    async def discover_stream_url(self, channel_id: str) -> str:
        """Ask the extractor for a direct media URL without streaming anything."""
        spec = self.build_discovery_spec(channel_id)
        handle = await start_pipeline(spec)
        try:
            output = await asyncio.wait_for(handle.stdout.read(), timeout=self.discovery_timeout)
        except asyncio.TimeoutError:
            raise StreamUnavailable(
                self.extractor_path, f"no stream URL within {self.discovery_timeout}s")
        finally:
            await handle.teardown()

        lines = [line.strip() for line in output.decode("utf-8", errors="ignore").splitlines()
                 if line.strip()]
        for line in lines:
            if line.startswith(("http://", "https://")):
                return line

        reason = lines[0] if lines else (
            handle.diagnostics().splitlines()[-1] if handle.diagnostics() else "no stream URL returned")
        raise StreamUnavailable(self.extractor_path, reason)

    async def resolve_stream_url(self, channel_id: str) -> Tuple[str, bool]:
        """Return (media_url, from_cache), discovering and caching on a miss."""
        cached = self.url_cache.get(channel_id)
        if cached:
            logger.debug(f"Using cached stream URL for {channel_id}")
            return cached, True

        media_url = await self.discover_stream_url(channel_id)
        self.url_cache.put(channel_id, media_url)
        logger.info(f"Discovered stream URL for {channel_id}")
        return media_url, False

    async def open_pipeline(self, channel_id: str) -> Tuple[PipelineHandle, ExtractionMode]:
        """Build the pipeline for the configured mode and start it. Raises LaunchFailed."""
        mode = self.mode
        if mode is ExtractionMode.DIRECT:
            spec = self.build_direct_spec(channel_id)
        else:
            media_url, _ = await self.resolve_stream_url(channel_id)
            spec = self.build_fetch_spec(channel_id, media_url)

        try:
            handle = await start_pipeline(spec)
        except LaunchFailed:
            if mode is ExtractionMode.DISCOVER:
                self.url_cache.invalidate(channel_id)
            raise
        return handle, mode

    # Viewer sessions

    async def stream_channel(
        self,
        channel_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> StreamingResponse:
        """
        Start a pipeline for channel_id and return a response relaying its output.

        Headers go out as soon as the response starts, which is only after the
        pipeline launched, so a slow extractor doesn't trip client timeouts.
        """
        try:
            handle, mode = await self.open_pipeline(channel_id)
        except LaunchFailed as e:
            logger.error(f"Could not start stream for {channel_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        connection_id = str(uuid.uuid4())
        session = ViewerSession(
            connection_id=connection_id,
            channel_id=channel_id,
            mode=mode,
            created_at=datetime.now(timezone.utc),
            user_agent=user_agent,
            ip_address=ip_address,
            handle=handle,
        )
        self.sessions[connection_id] = session
        self.total_sessions += 1
        logger.info(
            f"Serving {channel_id} to {ip_address or 'unknown'} "
            f"(connection {connection_id}, PIDs {handle.pids})")

        headers = {
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
            # Live streams can't be seeked; stop players from issuing range reconnects
            "Accept-Ranges": "none",
            "X-Connection-Id": connection_id,
        }
        return PipelineStreamingResponse(
            self._relay(session),
            on_close=partial(self._finish_session, session),
            media_type=MEDIA_TYPE,
            headers=headers,
        )

    async def _relay(self, session: ViewerSession) -> AsyncIterator[bytes]:
        """Copy pipeline output to the client one chunk at a time until EOF, cancel or error."""
        reader = session.handle.stdout
        reason = TeardownReason.UPSTREAM_ENDED
        try:
            while True:
                if session.cancel_event.is_set():
                    logger.info(
                        f"Stream {session.channel_id} cancelled for connection {session.connection_id}")
                    reason = TeardownReason.CLIENT_CANCELLED
                    break

                # Short timeout so cancellation is noticed even when upstream stalls
                try:
                    chunk = await asyncio.wait_for(reader.read(self.chunk_size), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                if not chunk:
                    break

                yield chunk
                session.bytes_served += len(chunk)
                session.chunks_served += 1
                session.last_data_time = datetime.now(timezone.utc)
                self.total_bytes_served += len(chunk)

        except (asyncio.CancelledError, GeneratorExit):
            reason = TeardownReason.CLIENT_CANCELLED
            raise
        except Exception as e:
            reason = TeardownReason.IO_ERROR
            logger.error(f"Error relaying {session.channel_id}: {e}")
        finally:
            if session.teardown_reason is None:
                session.teardown_reason = reason
            await self._finish_session(session)

    async def _finish_session(self, session: ViewerSession, reason: Optional[TeardownReason] = None):
        """Tear down a session's pipeline; runs once however many exit paths reach it."""
        if session.closed:
            return
        session.closed = True
        if session.teardown_reason is None:
            # Response finished without the relay ever running: the client left first
            session.teardown_reason = reason or TeardownReason.CLIENT_CANCELLED

        self.sessions.pop(session.connection_id, None)
        self.teardown_counts[session.teardown_reason.value] += 1

        if session.mode is ExtractionMode.DISCOVER:
            # The cached URL may be near expiry; make the next viewer rediscover
            self.url_cache.invalidate(session.channel_id)

        logger.info(
            f"Finished stream {session.channel_id} for connection {session.connection_id}: "
            f"{session.teardown_reason.value}, served {session.bytes_served} bytes")

        if session.handle is not None:
            # Keep tearing down even if the surrounding task is being cancelled
            await asyncio.shield(session.handle.teardown())
            exit_code = session.handle.exit_code
            if session.teardown_reason is TeardownReason.UPSTREAM_ENDED and exit_code not in (None, 0):
                logger.warning(
                    f"Pipeline for {session.channel_id} exited with code {exit_code}: "
                    f"{session.handle.diagnostics() or 'no diagnostics'}")

    async def cancel_session(self, connection_id: str) -> bool:
        """Signal a session's relay loop to stop; teardown follows on its next cycle."""
        session = self.sessions.get(connection_id)
        if not session:
            return False
        session.cancel_event.set()
        logger.info(f"Cancellation requested for connection {connection_id}")
        return True

    def invalidate_offline(self, channels: Iterable[ChannelRecord]) -> int:
        """Forget cached URLs for every channel the snapshot reports offline."""
        return sum(1 for channel in channels
                   if not channel.live and self.url_cache.invalidate(channel.identifier))

    def get_stats(self) -> Dict:
        now = datetime.now(timezone.utc)
        return {
            "mode": self.mode.value,
            "transcoding": bool(self.transcode_args),
            "active_sessions": len(self.sessions),
            "total_sessions": self.total_sessions,
            "total_bytes_served": self.total_bytes_served,
            "teardowns": dict(self.teardown_counts),
            "uptime_seconds": int((now - self.started_at).total_seconds()),
            "cached_urls": self.url_cache.snapshot(),
            "sessions": [
                {
                    "connection_id": s.connection_id,
                    "channel_id": s.channel_id,
                    "mode": s.mode.value,
                    "ip_address": s.ip_address,
                    "user_agent": s.user_agent,
                    "bytes_served": s.bytes_served,
                    "pids": s.handle.pids if s.handle else [],
                    "created_at": s.created_at.isoformat(),
                    "last_data_time": s.last_data_time.isoformat() if s.last_data_time else None,
                }
                for s in self.sessions.values()
            ],
        }
