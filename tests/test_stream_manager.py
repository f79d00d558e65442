import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import asyncio
import pytest
from fastapi import HTTPException
from unittest.mock import AsyncMock, patch

from channels import ChannelRecord
from process_pipeline import LaunchFailed
from stream_manager import (
    MEDIA_TYPE,
    ExtractionMode,
    StreamManager,
    StreamUnavailable,
    TeardownReason,
    is_valid_channel_id,
)
from url_cache import StreamUrlCache
from fakes import FakeHandle

MEDIA_URL = "https://cdn.example.com/bob/index.m3u8"


def make_manager(mode=ExtractionMode.DIRECT, **kwargs) -> StreamManager:
    kwargs.setdefault("extractor_args", [])
    kwargs.setdefault("transcode_args", [])
    url_cache = kwargs.pop("url_cache", None)
    if url_cache is None:
        url_cache = StreamUrlCache(ttl=300)
    return StreamManager(
        url_cache=url_cache,
        mode=mode,
        extractor_path="streamlink",
        fetcher_path="ffmpeg",
        transcoder_path="ffmpeg",
        channel_url_template="twitch.tv/{channel}",
        quality="best",
        **kwargs,
    )


class FakeLauncher:
    """Replaces start_pipeline; records every spec it was asked to run."""

    def __init__(self, stream_data=b"\x47" * 376, stream_eof=True, discovery_output=MEDIA_URL + "\n"):
        self.specs = []
        self.handles = []
        self.stream_data = stream_data
        self.stream_eof = stream_eof
        self.discovery_output = discovery_output

    async def __call__(self, spec, *args, **kwargs):
        self.specs.append(spec)
        if spec.label.startswith("discover:"):
            handle = FakeHandle(self.discovery_output.encode(), label=spec.label)
        else:
            handle = FakeHandle(self.stream_data, eof=self.stream_eof, label=spec.label)
        self.handles.append(handle)
        return handle

    @property
    def labels(self):
        return [spec.label for spec in self.specs]


class TestChannelIds:
    """Test channel identifier validation"""

    def test_valid_ids(self):
        assert is_valid_channel_id("bob")
        assert is_valid_channel_id("some_streamer42")
        assert is_valid_channel_id("a.b-c")

    def test_rejects_option_like_ids(self):
        assert not is_valid_channel_id("--output")
        assert not is_valid_channel_id("-o")

    def test_rejects_paths_and_empty(self):
        assert not is_valid_channel_id("")
        assert not is_valid_channel_id("../etc")
        assert not is_valid_channel_id("a/b")
        assert not is_valid_channel_id("bob streams")


class TestExtractionMode:
    def test_parse(self):
        assert ExtractionMode.parse("direct") is ExtractionMode.DIRECT
        assert ExtractionMode.parse(" Discover ") is ExtractionMode.DISCOVER

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            ExtractionMode.parse("hls")


class TestPipelineConstruction:
    """Test the argument vectors built for each mode"""

    def test_direct_single_stage(self):
        spec = make_manager().build_direct_spec("bob")
        assert len(spec.stages) == 1
        assert spec.stages[0].argv == ["streamlink", "twitch.tv/bob", "best", "--stdout"]
        assert spec.capture_output is True

    def test_direct_with_transcoder(self):
        manager = make_manager(transcode_args=["-c:v", "libx264"])
        spec = manager.build_direct_spec("bob")
        assert len(spec.stages) == 2
        transcoder = spec.stages[1].argv
        assert transcoder[0] == "ffmpeg"
        assert "pipe:0" in transcoder
        assert transcoder[-3:] == ["-f", "mpegts", "pipe:1"]
        assert "libx264" in transcoder

    def test_extractor_args_appended(self):
        manager = make_manager(extractor_args=["--twitch-disable-ads"])
        assert manager.build_direct_spec("bob").stages[0].argv[-1] == "--twitch-disable-ads"

    def test_discovery_spec(self):
        spec = make_manager(ExtractionMode.DISCOVER).build_discovery_spec("bob")
        assert spec.stages[0].argv == ["streamlink", "twitch.tv/bob", "best", "--stream-url"]

    def test_fetch_spec_copies_by_default(self):
        spec = make_manager(ExtractionMode.DISCOVER).build_fetch_spec("bob", MEDIA_URL)
        assert len(spec.stages) == 1
        argv = spec.stages[0].argv
        assert argv[argv.index("-i") + 1] == MEDIA_URL
        assert ["-c", "copy"] == argv[argv.index("-c"):argv.index("-c") + 2]

    def test_fetch_spec_folds_transcoding_into_one_stage(self):
        manager = make_manager(ExtractionMode.DISCOVER, transcode_args=["-c:v", "libx264"])
        spec = manager.build_fetch_spec("bob", MEDIA_URL)
        assert len(spec.stages) == 1
        assert "libx264" in spec.stages[0].argv
        assert "copy" not in spec.stages[0].argv


class TestDiscovery:
    """Test URL discovery and caching"""

    @pytest.mark.asyncio
    async def test_second_request_within_ttl_skips_discovery(self):
        cache = StreamUrlCache(ttl=300)
        manager = make_manager(ExtractionMode.DISCOVER, url_cache=cache)
        launcher = FakeLauncher()

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            first, _ = await manager.open_pipeline("bob")
            assert cache.get("bob") == MEDIA_URL
            second, _ = await manager.open_pipeline("bob")

        assert launcher.labels == ["discover:bob", "fetch:bob", "fetch:bob"]
        # Discovery pipelines never outlive the lookup
        assert launcher.handles[0].teardown.await_count == 1
        fetch_argv = launcher.specs[2].stages[0].argv
        assert MEDIA_URL in fetch_argv

    @pytest.mark.asyncio
    async def test_expired_entry_rediscovers(self):
        now = [0.0]
        cache = StreamUrlCache(ttl=300, clock=lambda: now[0])
        manager = make_manager(ExtractionMode.DISCOVER, url_cache=cache)
        launcher = FakeLauncher()

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            await manager.open_pipeline("bob")
            now[0] = 301.0
            await manager.open_pipeline("bob")

        assert launcher.labels.count("discover:bob") == 2

    @pytest.mark.asyncio
    async def test_no_url_means_stream_unavailable(self):
        cache = StreamUrlCache(ttl=300)
        manager = make_manager(ExtractionMode.DISCOVER, url_cache=cache)
        launcher = FakeLauncher(discovery_output="error: No playable streams found on this URL\n")

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            with pytest.raises(StreamUnavailable) as exc_info:
                await manager.open_pipeline("bob")

        assert "No playable streams" in str(exc_info.value)
        assert cache.get("bob") is None
        assert launcher.labels == ["discover:bob"]

    @pytest.mark.asyncio
    async def test_discovery_timeout(self):
        manager = make_manager(ExtractionMode.DISCOVER, discovery_timeout=0.1)
        stalled = FakeHandle(eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(return_value=stalled)):
            with pytest.raises(StreamUnavailable):
                await manager.discover_stream_url("bob")

        stalled.teardown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_launch_failure_invalidates_cached_url(self):
        cache = StreamUrlCache(ttl=300)
        cache.put("bob", MEDIA_URL)
        manager = make_manager(ExtractionMode.DISCOVER, url_cache=cache)

        failing = AsyncMock(side_effect=LaunchFailed("ffmpeg", "No such file or directory"))
        with patch("stream_manager.start_pipeline", new=failing):
            with pytest.raises(LaunchFailed):
                await manager.open_pipeline("bob")

        assert cache.get("bob") is None

    def test_invalidate_offline(self):
        cache = StreamUrlCache(ttl=300)
        cache.put("bob", MEDIA_URL)
        cache.put("alice", "https://cdn.example.com/alice.m3u8")
        manager = make_manager(ExtractionMode.DISCOVER, url_cache=cache)

        count = manager.invalidate_offline([
            ChannelRecord(identifier="bob", display_name="Bob", live=False),
            ChannelRecord(identifier="alice", display_name="Alice", live=True),
            ChannelRecord(identifier="carol", display_name="Carol", live=False),
        ])

        assert count == 1
        assert cache.get("bob") is None
        assert cache.get("alice") is not None


class TestViewerSessions:
    """Test relaying and session teardown"""

    @pytest.mark.asyncio
    async def test_launch_failure_is_http_500(self):
        manager = make_manager()
        failing = AsyncMock(side_effect=LaunchFailed("streamlink", "No such file or directory"))

        with patch("stream_manager.start_pipeline", new=failing):
            with pytest.raises(HTTPException) as exc_info:
                await manager.stream_channel("bob")

        assert exc_info.value.status_code == 500
        assert manager.sessions == {}

    @pytest.mark.asyncio
    async def test_response_headers(self):
        manager = make_manager()
        launcher = FakeLauncher()

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob", user_agent="Plex", ip_address="10.0.0.2")

        assert response.media_type == MEDIA_TYPE
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["accept-ranges"] == "none"
        connection_id = response.headers["x-connection-id"]
        assert manager.sessions[connection_id].ip_address == "10.0.0.2"

        await response.body_iterator.aclose()

    @pytest.mark.asyncio
    async def test_relay_until_upstream_ends(self):
        manager = make_manager(chunk_size=100)
        launcher = FakeLauncher(stream_data=b"x" * 250)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob")

        session = next(iter(manager.sessions.values()))
        chunks = [chunk async for chunk in response.body_iterator]

        assert [len(c) for c in chunks] == [100, 100, 50]
        assert session.teardown_reason is TeardownReason.UPSTREAM_ENDED
        assert session.bytes_served == 250
        assert manager.total_bytes_served == 250
        assert manager.sessions == {}
        launcher.handles[0].teardown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_client_disconnect_tears_down_once(self):
        manager = make_manager(chunk_size=188)
        launcher = FakeLauncher(stream_data=b"\x47" * 188 * 10, stream_eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob")

        session = next(iter(manager.sessions.values()))
        body = response.body_iterator
        assert len(await body.__anext__()) == 188

        # Client goes away mid-stream
        await body.aclose()
        # The response close hook runs too; it must not tear down a second time
        await response._on_close()

        handle = launcher.handles[0]
        handle.teardown.assert_awaited_once()
        assert session.teardown_reason is TeardownReason.CLIENT_CANCELLED
        assert manager.sessions == {}
        assert manager.teardown_counts["client_cancelled"] == 1

        with pytest.raises(StopAsyncIteration):
            await body.__anext__()

    @pytest.mark.asyncio
    async def test_response_never_iterated_still_tears_down(self):
        manager = make_manager()
        launcher = FakeLauncher(stream_eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob")

        session = next(iter(manager.sessions.values()))
        await response._on_close()

        launcher.handles[0].teardown.assert_awaited_once()
        assert session.teardown_reason is TeardownReason.CLIENT_CANCELLED
        assert manager.sessions == {}

    @pytest.mark.asyncio
    async def test_cancel_session_stops_stalled_relay(self):
        manager = make_manager()
        launcher = FakeLauncher(stream_data=b"", stream_eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob")

        connection_id = response.headers["x-connection-id"]
        async def next_chunk():
            return await response.body_iterator.__anext__()

        pending = asyncio.create_task(next_chunk())
        await asyncio.sleep(0.1)

        assert await manager.cancel_session(connection_id) is True
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, timeout=2)

        launcher.handles[0].teardown.assert_awaited_once()
        assert manager.teardown_counts["client_cancelled"] == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_session(self):
        assert await make_manager().cancel_session("nope") is False

    @pytest.mark.asyncio
    async def test_read_error_is_io_error(self):
        manager = make_manager()
        handle = FakeHandle()
        handle.stdout.read = AsyncMock(side_effect=ConnectionResetError("pipe broke"))

        with patch("stream_manager.start_pipeline", new=AsyncMock(return_value=handle)):
            response = await manager.stream_channel("bob")

        session = next(iter(manager.sessions.values()))
        chunks = [chunk async for chunk in response.body_iterator]

        assert chunks == []
        assert session.teardown_reason is TeardownReason.IO_ERROR
        handle.teardown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_session_end_invalidates_cache_in_discover_mode(self):
        cache = StreamUrlCache(ttl=300)
        manager = make_manager(ExtractionMode.DISCOVER, url_cache=cache)
        launcher = FakeLauncher(stream_data=b"x" * 10)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob")
            assert cache.get("bob") == MEDIA_URL
            [chunk async for chunk in response.body_iterator]

        assert cache.get("bob") is None

    @pytest.mark.asyncio
    async def test_concurrent_viewers_get_their_own_pipelines(self):
        manager = make_manager()
        launcher = FakeLauncher(stream_eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            first = await manager.stream_channel("bob")
            second = await manager.stream_channel("bob")

        assert len(manager.sessions) == 2
        assert launcher.handles[0] is not launcher.handles[1]

        await first.body_iterator.__anext__()
        await first.body_iterator.aclose()
        assert len(manager.sessions) == 1
        launcher.handles[1].teardown.assert_not_awaited()

        await second._on_close()

    @pytest.mark.asyncio
    async def test_stop_releases_active_sessions(self):
        manager = make_manager()
        launcher = FakeLauncher(stream_eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            await manager.start()
            await manager.stream_channel("bob")
            await manager.stream_channel("alice")
            await manager.stop()

        assert manager.sessions == {}
        for handle in launcher.handles:
            handle.teardown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stats(self):
        manager = make_manager()
        launcher = FakeLauncher(stream_eof=False)

        with patch("stream_manager.start_pipeline", new=AsyncMock(side_effect=launcher.__call__)):
            response = await manager.stream_channel("bob", ip_address="10.0.0.2")

        stats = manager.get_stats()
        assert stats["mode"] == "direct"
        assert stats["active_sessions"] == 1
        assert stats["total_sessions"] == 1
        assert stats["sessions"][0]["channel_id"] == "bob"
        assert stats["sessions"][0]["pids"] == [4242]

        await response.body_iterator.aclose()
