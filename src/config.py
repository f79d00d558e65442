from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.2.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 5004
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    ROOT_PATH: str = ""

    # API Authentication (management routes only, streams stay open for tuners)
    API_TOKEN: Optional[str] = None

    # External tools
    EXTRACTOR_PATH: str = "streamlink"
    FETCHER_PATH: str = "ffmpeg"
    TRANSCODER_PATH: str = "ffmpeg"
    # Where the extractor finds a channel; {channel} is the channel identifier
    CHANNEL_URL_TEMPLATE: str = "twitch.tv/{channel}"
    # Extra extractor arguments for live viewing (shell-style string)
    EXTRACTOR_ARGS: str = (
        "--twitch-disable-ads --twitch-disable-hosting --twitch-disable-reruns "
        "--hls-live-edge 3 --stream-segment-threads 2"
    )
    # Extra extractor arguments for long-running recordings
    RECORDER_ARGS: str = "--twitch-disable-ads --retry-streams 10 --retry-max 5"
    # Optional post-processing filter, e.g. "-c:v libx264 -preset veryfast -c:a aac"
    TRANSCODE_ARGS: str = ""

    # Live Stream Pipeline
    EXTRACTION_MODE: str = "direct"  # direct, discover
    STREAM_QUALITY: str = "best"
    STREAM_CHUNK_SIZE: int = 65536
    # Discovered direct media URLs expire after 5 minutes
    STREAM_URL_CACHE_TTL: float = 300.0
    CACHE_SWEEP_INTERVAL: int = 60
    # How long the extractor may take to print a direct URL
    DISCOVERY_TIMEOUT: float = 30.0
    # Grace period between SIGTERM and SIGKILL when tearing down a pipeline
    PROCESS_TERMINATE_GRACE: float = 5.0
    # Lines of stderr kept per stage for diagnostics
    STDERR_TAIL_LINES: int = 50

    # Recording Supervisor
    # Recording is disabled unless a root directory is configured
    RECORDING_PATH: Optional[str] = None
    # Files older than this are deleted by retention cleanup (0 = keep forever)
    RECORDING_RETENTION_DAYS: int = 14
    # Fallback reconciliation interval in case a snapshot wake-up is missed
    RECORDING_RECONCILE_INTERVAL: float = 300.0
    RECORDING_CLEANUP_INTERVAL: float = 3600.0
    RECORDING_TITLE_MAX_LENGTH: int = 50
    # Crash-loop holdoff: after this many consecutive recorders dying within
    # RECORDER_CRASH_WINDOW seconds, skip the channel for RECORDER_CRASH_COOLDOWN
    RECORDER_CRASH_LIMIT: int = 5
    RECORDER_CRASH_WINDOW: float = 60.0
    RECORDER_CRASH_COOLDOWN: float = 900.0

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
