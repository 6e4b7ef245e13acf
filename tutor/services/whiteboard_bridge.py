"""
Whiteboard Export Bridge

The drawing canvas lives in the browser. The client reports its serialized
document (and, when the canvas has shapes, a rendered PNG); the bridge
decides whether anything changed since the last export and produces the
image payload callers send to models.

De-duplication is central: one last-exported hash per conversation,
mutated only inside `export_if_changed()` under a lock, shared by every
caller (text turns, the voice tool, manual export).
"""

import asyncio
import base64
import binascii
import hashlib
import io
import json
import logging
from collections import OrderedDict
from contextlib import AbstractContextManager
from typing import Callable, Optional, Union

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel
from sqlalchemy.orm import Session as DBSession

from shared.models.domain import ImagePayload
from shared.repositories import WhiteboardRepository
from tutor.exceptions import WhiteboardImageError
from tutor.utils.debounce import Debouncer

logger = logging.getLogger("tutor.whiteboard")


def content_hash(serialization: str) -> str:
    return hashlib.sha256(serialization.encode("utf-8")).hexdigest()


def serialize_snapshot(snapshot: Union[str, dict]) -> str:
    if isinstance(snapshot, str):
        return snapshot
    return json.dumps(snapshot, sort_keys=True, separators=(",", ":"))


def validate_image(data: bytes) -> None:
    """Raise WhiteboardImageError unless `data` is a readable image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise WhiteboardImageError(str(e) or type(e).__name__)


def encode_image(png_bytes: bytes, max_size: Optional[int] = None, quality: int = 80) -> ImagePayload:
    """
    Normalize a rendered canvas image.

    Without `max_size` the PNG is passed through. With it, the image is
    scaled to fit a max_size square and re-encoded as JPEG on white.
    """
    if max_size is None:
        return ImagePayload(media_type="image/png", data=base64.b64encode(png_bytes).decode("ascii"))

    out = io.BytesIO()
    try:
        with Image.open(io.BytesIO(png_bytes)) as img:
            img.thumbnail((max_size, max_size))
            if img.mode in ("RGBA", "LA", "P"):
                rgba = img.convert("RGBA")
                canvas = Image.new("RGB", rgba.size, (255, 255, 255))
                canvas.paste(rgba, mask=rgba.split()[-1])
            else:
                canvas = img.convert("RGB")
            canvas.save(out, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise WhiteboardImageError(str(e) or type(e).__name__)
    return ImagePayload(media_type="image/jpeg", data=base64.b64encode(out.getvalue()).decode("ascii"))


class WhiteboardExport(BaseModel):
    content_hash: str
    image: ImagePayload

    @property
    def data_url(self) -> str:
        return self.image.data_url


class WhiteboardExportBridge:
    """Change-detecting export of one conversation's canvas."""

    def __init__(self, conversation_id: str, max_size: Optional[int] = None, quality: int = 80):
        self.conversation_id = conversation_id
        self.max_size = max_size
        self.quality = quality
        self._serialization: Optional[str] = None
        self._rendered: Optional[bytes] = None
        self._lock = asyncio.Lock()
        self.last_hash: Optional[str] = None
        self.last_export: Optional[WhiteboardExport] = None

    def record_canvas(self, snapshot: Union[str, dict], rendered_png: Optional[bytes] = None) -> str:
        """
        Record the latest canvas state reported by the client.

        Args:
            snapshot: Canvas document serialization
            rendered_png: Client-rendered image; omitted when the canvas has no shapes

        Returns:
            Content hash of the snapshot

        Raises:
            WhiteboardImageError: rendered_png is not a readable image; nothing is recorded
        """
        if rendered_png:
            validate_image(rendered_png)
        self._serialization = serialize_snapshot(snapshot)
        self._rendered = rendered_png or None
        return content_hash(self._serialization)

    @property
    def snapshot(self) -> Optional[str]:
        return self._serialization

    @property
    def current_hash(self) -> Optional[str]:
        if self._serialization is None:
            return None
        return content_hash(self._serialization)

    @property
    def has_content(self) -> bool:
        return self._rendered is not None

    async def export_if_changed(self, max_size: Optional[int] = None, quality: Optional[int] = None) -> Optional[WhiteboardExport]:
        """
        Export the canvas image if it changed since the last export.

        Returns:
            WhiteboardExport, or None when nothing changed or the canvas is empty
        """
        async with self._lock:
            if not self.has_content:
                return None
            current = self.current_hash
            if current == self.last_hash:
                logger.info(json.dumps({
                    "step": "WHITEBOARD_EXPORT",
                    "status": "unchanged",
                    "conversation_id": self.conversation_id,
                }))
                return None

            rendered = self._rendered
            size = max_size if max_size is not None else self.max_size
            loop = asyncio.get_running_loop()
            image = await loop.run_in_executor(
                None, encode_image, rendered, size, quality if quality is not None else self.quality
            )

            export = WhiteboardExport(content_hash=current, image=image)
            self.last_hash = current
            self.last_export = export

        logger.info(json.dumps({
            "step": "WHITEBOARD_EXPORT",
            "status": "exported",
            "conversation_id": self.conversation_id,
            "media_type": image.media_type,
        }))
        return export


class WhiteboardPersister:
    """
    Coalesces canvas change bursts into one snapshot upsert after a quiet period.

    Skips the write when the stored row already holds the same content hash.
    Does not touch the bridge's export hash.
    """

    def __init__(
        self,
        conversation_id: str,
        bridge: WhiteboardExportBridge,
        session_scope: Callable[[], AbstractContextManager[DBSession]],
        quiet_period: float = 2.0,
    ):
        self.conversation_id = conversation_id
        self.bridge = bridge
        self.session_scope = session_scope
        self._debouncer = Debouncer(quiet_period, self._persist_callback, name=f"whiteboard-autosave:{conversation_id}")

    def notify_change(self) -> None:
        self._debouncer.trigger()

    @property
    def pending(self) -> bool:
        return self._debouncer.pending

    async def _persist_callback(self) -> None:
        await self.persist_now()

    async def flush(self) -> None:
        await self._debouncer.flush()

    def cancel(self) -> None:
        self._debouncer.cancel()

    async def persist_now(self, thumbnail_ref: Optional[str] = None) -> bool:
        """Write the current snapshot. Returns False if nothing new to write."""
        snapshot = self.bridge.snapshot
        current = self.bridge.current_hash
        if snapshot is None or current is None:
            return False

        loop = asyncio.get_running_loop()
        written = await loop.run_in_executor(None, self._write, snapshot, current, thumbnail_ref)
        if not written:
            return False

        logger.info(json.dumps({
            "step": "WHITEBOARD_AUTOSAVE",
            "conversation_id": self.conversation_id,
            "content_hash": current[:12],
        }))
        return True

    def _write(self, snapshot: str, current: str, thumbnail_ref: Optional[str]) -> bool:
        with self.session_scope() as db:
            repo = WhiteboardRepository(db)
            existing = repo.get(self.conversation_id)
            if existing is not None and existing.content_hash == current:
                return False
            repo.upsert(self.conversation_id, snapshot, current, thumbnail_ref=thumbnail_ref)
        return True


class WhiteboardChannel:
    """Bridge plus persister for one conversation."""

    def __init__(self, bridge: WhiteboardExportBridge, persister: WhiteboardPersister):
        self.bridge = bridge
        self.persister = persister

    def record(self, snapshot: Union[str, dict], rendered_png: Optional[bytes] = None) -> str:
        digest = self.bridge.record_canvas(snapshot, rendered_png)
        self.persister.notify_change()
        return digest


class WhiteboardRegistry:
    """
    Process-wide map of whiteboard channels, one per conversation.

    Beyond `max_channels`, the least recently used channels with no pending
    auto-save are dropped; their last snapshot is already persisted.
    `is_pinned` marks channels a live voice session still holds.
    """

    def __init__(
        self,
        factory: Callable[[str], WhiteboardChannel],
        max_channels: int = 256,
        is_pinned: Optional[Callable[[str], bool]] = None,
    ):
        self._factory = factory
        self.max_channels = max_channels
        self._is_pinned = is_pinned or (lambda conversation_id: False)
        self._channels: OrderedDict[str, WhiteboardChannel] = OrderedDict()

    def get(self, conversation_id: str) -> WhiteboardChannel:
        channel = self._channels.get(conversation_id)
        if channel is None:
            channel = self._factory(conversation_id)
            self._channels[conversation_id] = channel
            self._evict(keep=conversation_id)
        else:
            self._channels.move_to_end(conversation_id)
        return channel

    def _evict(self, keep: str) -> None:
        excess = len(self._channels) - self.max_channels
        if excess <= 0:
            return
        stale = [
            cid for cid, channel in self._channels.items()
            if cid != keep and not channel.persister.pending and not self._is_pinned(cid)
        ][:excess]
        for conversation_id in stale:
            del self._channels[conversation_id]
        if stale:
            logger.info(json.dumps({"step": "WHITEBOARD_EVICT", "channels": len(stale)}))

    def __len__(self) -> int:
        return len(self._channels)

    async def flush_all(self) -> None:
        for channel in self._channels.values():
            await channel.persister.flush()


def decode_data_url_bytes(data_url: str) -> bytes:
    """Raw bytes of a base64 data URL (or bare base64)."""
    payload = data_url.split(",", 1)[1] if data_url.startswith("data:") else data_url
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise WhiteboardImageError(f"invalid base64: {e}")

