"""
Channel snapshot shared by the live stream pipeline and the recording supervisor.

The snapshot is produced by an external refresher (polling the upstream
channel-status provider) and is only ever replaced wholesale, so readers
always see a complete list.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelRecord:
    identifier: str
    display_name: str
    artwork_url: str = ""
    live: bool = False
    title: str = ""
    category: str = ""
    started_at: Optional[datetime] = None
    recording_enabled: bool = True

    @property
    def should_record(self) -> bool:
        return self.live and self.recording_enabled


SnapshotListener = Callable[[Tuple[ChannelRecord, ...]], None]


class ChannelSnapshot:
    """Holds the current immutable channel list and notifies listeners on refresh."""

    def __init__(self, channels: Iterable[ChannelRecord] = ()):
        self._channels: Tuple[ChannelRecord, ...] = tuple(channels)
        self.updated_at: Optional[datetime] = None
        self._listeners: List[SnapshotListener] = []

    @property
    def channels(self) -> Tuple[ChannelRecord, ...]:
        return self._channels

    def get(self, identifier: str) -> Optional[ChannelRecord]:
        for channel in self._channels:
            if channel.identifier == identifier:
                return channel
        return None

    def subscribe(self, listener: SnapshotListener):
        self._listeners.append(listener)

    def replace(self, channels: Iterable[ChannelRecord]):
        """Swap in a new channel list and wake every listener."""
        # Single reference assignment; readers holding the old tuple are unaffected
        self._channels = tuple(channels)
        self.updated_at = datetime.now(timezone.utc)

        live = sum(1 for c in self._channels if c.live)
        logger.info(
            f"Channel snapshot refreshed: {len(self._channels)} channels, {live} live")

        for listener in list(self._listeners):
            try:
                listener(self._channels)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")
