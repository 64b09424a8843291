"""Local media capture.

Opens the configured capture device once with aiortc's MediaPlayer and hands
every peer session its own subscription through a MediaRelay, so one camera
can feed any number of connections.
"""

import asyncio
import logging
from typing import List, Optional

from aiortc.contrib.media import MediaPlayer, MediaRelay
from av.error import FFmpegError

from .config import media_config

logger = logging.getLogger(__name__)


class MediaCapture:
    """Provider of local audio/video tracks.

    Attributes:
        tracks: Source tracks opened from the device (empty when capture is
            disabled or failed).
        permission_error: Why capture failed, for display; None otherwise.
    """

    def __init__(self, source: Optional[str] = None, fmt: Optional[str] = None, options: Optional[dict] = None):
        self.source = source if source is not None else media_config.MEDIA_SOURCE
        self.fmt = fmt if fmt is not None else media_config.MEDIA_FORMAT
        self.options = options if options is not None else {
            "video_size": media_config.VIDEO_SIZE,
            "framerate": media_config.FRAMERATE,
        }
        self.relay = MediaRelay()
        self.player: Optional[MediaPlayer] = None
        self.tracks: list = []
        self.permission_error: Optional[str] = None

    async def acquire(self) -> List:
        """Open the capture device; never raises.

        A failure is recorded in ``permission_error`` and leaves the client
        receive-only.
        """
        if self.player is not None:
            return self.tracks
        if not self.source:
            logger.info("[Media] no capture source configured, receive-only")
            return []

        loop = asyncio.get_running_loop()
        try:
            self.player = await loop.run_in_executor(
                None, lambda: MediaPlayer(self.source, format=self.fmt, options=self.options)
            )
        except (OSError, FFmpegError, ValueError) as e:
            self.permission_error = f"Could not access {self.source}: {e}"
            logger.error(f"[Media] {self.permission_error}")
            return []

        self.permission_error = None
        self.tracks = [t for t in (self.player.audio, self.player.video) if t is not None]
        logger.info(f"[Media] capturing {', '.join(t.kind for t in self.tracks) or 'nothing'} from {self.source}")
        return self.tracks

    def tracks_for_session(self) -> list:
        return [self.relay.subscribe(track) for track in self.tracks]

    def release(self) -> None:
        for track in self.tracks:
            track.stop()
        self.tracks = []
        self.player = None
