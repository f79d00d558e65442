from fastapi import FastAPI, HTTPException, Query, Response, Request, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from typing import Optional, List
from pydantic import BaseModel, field_validator
from datetime import datetime, timezone

from channels import ChannelRecord, ChannelSnapshot
from config import settings, VERSION
from recording_manager import RecordingSupervisor
from stream_manager import MEDIA_TYPE, StreamManager, is_valid_channel_id
from url_cache import StreamUrlCache

# Set up logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# Shared components. The URL cache is the only state the live pipeline and
# the recording supervisor both touch.
channel_snapshot = ChannelSnapshot()
url_cache = StreamUrlCache(ttl=settings.STREAM_URL_CACHE_TTL)
stream_manager = StreamManager(url_cache=url_cache)
recording_supervisor = RecordingSupervisor(snapshot=channel_snapshot, url_cache=url_cache)
started_at = datetime.now(timezone.utc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info("Channel tuner starting up...")
    await stream_manager.start()
    await recording_supervisor.start()

    yield

    # Shutdown
    logger.info("Channel tuner shutting down...")
    await recording_supervisor.stop()
    await stream_manager.stop()


app = FastAPI(
    title="channel tuner",
    version=VERSION,
    description="Exposes live internet channels as a fixed-channel tuner and records them to disk",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
)

# Configure CORS to allow all origins for streaming compatibility
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


class ChannelPayload(BaseModel):
    """One channel as reported by the external status refresher"""
    identifier: str
    display_name: Optional[str] = None
    artwork_url: str = ""
    live: bool = False
    title: str = ""
    category: str = ""
    started_at: Optional[datetime] = None
    recording_enabled: bool = True

    @field_validator('identifier')
    @classmethod
    def validate_identifier(cls, v):
        if not is_valid_channel_id(v):
            raise ValueError(f"Invalid channel identifier: {v!r}")
        return v

    def to_record(self) -> ChannelRecord:
        return ChannelRecord(
            identifier=self.identifier,
            display_name=self.display_name or self.identifier,
            artwork_url=self.artwork_url,
            live=self.live,
            title=self.title,
            category=self.category,
            started_at=self.started_at,
            recording_enabled=self.recording_enabled,
        )


def get_client_info(request: Request):
    """Extract client information from request"""
    # X-Forwarded-For can contain multiple IPs: "client, proxy1, proxy2"
    ip_address = "unknown"
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    elif request.client:
        ip_address = request.client.host

    return {
        "user_agent": request.headers.get("user-agent") or "unknown",
        "ip_address": ip_address,
    }


async def verify_token(
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set in environment, authentication is disabled.
    """
    if not settings.API_TOKEN:
        return True

    provided_token = x_api_token or api_token

    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != settings.API_TOKEN:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def resolve_channel_id(channel_id: str) -> str:
    """Reject identifiers that could be mistaken for tool options or paths"""
    if not is_valid_channel_id(channel_id):
        raise HTTPException(status_code=400, detail="Invalid channel identifier")
    return channel_id


@app.get("/", dependencies=[Depends(verify_token)])
async def root():
    return {
        "status": "running",
        "message": "channel tuner is running",
        "version": VERSION,
        "uptime": int((datetime.now(timezone.utc) - started_at).total_seconds()),
    }


@app.get("/health", dependencies=[Depends(verify_token)])
async def health_check():
    """Health check endpoint with detailed status"""
    try:
        stats = stream_manager.get_stats()
        recordings = recording_supervisor.get_status()
        return {
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": stats["uptime_seconds"],
            "extraction_mode": stats["mode"],
            "active_sessions": stats["active_sessions"],
            "total_bytes_served": stats["total_bytes_served"],
            "recording_enabled": recordings["enabled"],
            "active_recordings": recordings["active_recordings"],
            "channels": len(channel_snapshot.channels),
        }
    except Exception as e:
        logger.error(f"Error in health check: {e}")
        return {
            "status": "error",
            "error": str(e)
        }


@app.get("/stream/{channel_id}")
async def get_channel_stream(
    request: Request,
    channel_id: str = Depends(resolve_channel_id),
):
    """Stream a live channel as MPEG-TS"""
    try:
        if channel_snapshot.updated_at and channel_snapshot.get(channel_id) is None:
            logger.warning(f"Channel {channel_id} is not in the current lineup, trying anyway")

        client_info = get_client_info(request)
        return await stream_manager.stream_channel(
            channel_id,
            user_agent=client_info["user_agent"],
            ip_address=client_info["ip_address"],
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error serving stream for {channel_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.head("/stream/{channel_id}")
async def head_channel_stream(channel_id: str = Depends(resolve_channel_id)):
    """Answer HEAD checks from tuner clients without launching an extractor"""
    return Response(
        status_code=200,
        media_type=MEDIA_TYPE,
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Accept-Ranges": "none",
        },
    )


@app.get("/channels", dependencies=[Depends(verify_token)])
async def list_channels():
    return {
        "updated_at": channel_snapshot.updated_at.isoformat() if channel_snapshot.updated_at else None,
        "channels": [
            {
                "identifier": c.identifier,
                "display_name": c.display_name,
                "artwork_url": c.artwork_url,
                "live": c.live,
                "title": c.title,
                "category": c.category,
                "started_at": c.started_at.isoformat() if c.started_at else None,
                "recording_enabled": c.recording_enabled,
                "recording_state": recording_supervisor.get_state(c.identifier).value,
            }
            for c in channel_snapshot.channels
        ],
    }


@app.put("/channels", dependencies=[Depends(verify_token)])
async def replace_channels(channels: List[ChannelPayload]):
    """
    Replace the channel snapshot.

    Called by the external refresher after each poll of the channel-status
    provider. Wakes the recording supervisor and drops cached URLs for
    channels that are now offline.
    """
    identifiers = [c.identifier for c in channels]
    if len(set(identifiers)) != len(identifiers):
        raise HTTPException(status_code=400, detail="Duplicate channel identifiers")

    records = [c.to_record() for c in channels]
    channel_snapshot.replace(records)
    invalidated = stream_manager.invalidate_offline(records)
    return {
        "channels": len(records),
        "live": sum(1 for r in records if r.live),
        "invalidated_urls": invalidated,
    }


@app.get("/sessions", dependencies=[Depends(verify_token)])
async def list_sessions():
    return stream_manager.get_stats()


@app.delete("/sessions/{connection_id}", dependencies=[Depends(verify_token)])
async def disconnect_session(connection_id: str):
    if not await stream_manager.cancel_session(connection_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": f"Session {connection_id} cancelled"}


@app.get("/recordings", dependencies=[Depends(verify_token)])
async def get_recordings():
    return recording_supervisor.get_status()


@app.post("/recordings/reconcile", dependencies=[Depends(verify_token)])
async def trigger_reconcile():
    """Wake the supervisor now instead of waiting for the next snapshot or fallback tick"""
    recording_supervisor.notify_channels_updated()
    return {"message": "Reconciliation scheduled"}
