"""Media lifecycle: transport variants, uploads and remote reference liveness."""

import asyncio
import io
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

import cv2
from PIL import Image, ImageOps, UnidentifiedImageError

from ..config import settings
from ..models.schemas import MediaAsset, Message, PrepProgress, RefUpdate, RemoteRef
from .llm_client import ObjectStore, UploadFailure

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PrepProgress], None]


class MediaCaptureFailure(Exception):
    """Custom exception for capture devices that are unavailable, denied or slow."""
    pass


class MediaProcessingError(Exception):
    """Custom exception for media that cannot be decoded or re-encoded."""
    pass


@dataclass
class EnsureResult:
    """Outcome of one ensure pass over a window."""
    updates: Dict[str, RefUpdate] = field(default_factory=dict)
    verified: Set[str] = field(default_factory=set)
    uploads: int = 0

    @property
    def ref_overrides(self) -> Dict[str, RemoteRef]:
        return {message_id: update.new_ref for message_id, update in self.updates.items()}


def optimize_image(data: bytes, max_dim: int, quality: int) -> bytes:
    """Resize an image to fit ``max_dim`` and recompress it as JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.thumbnail((max_dim, max_dim))
            output = io.BytesIO()
            img.save(output, format="JPEG", quality=quality, optimize=True)
            return output.getvalue()
    except (OSError, UnidentifiedImageError) as e:
        raise MediaProcessingError(f"Cannot optimize image: {e}") from e


def extract_video_keyframe(data: bytes, mime_type: str) -> bytes:
    """Return a JPEG still of the middle frame of a video clip."""
    suffix = "." + (mime_type.split("/", 1)[-1].split(";", 1)[0] or "mp4")
    fd, path = tempfile.mkstemp(suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        cap = cv2.VideoCapture(path)
        try:
            frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
            if frame_count > 1:
                cap.set(cv2.CAP_PROP_POS_FRAMES, frame_count // 2)
            ok, frame = cap.read()
            if not ok:
                cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ok, frame = cap.read()
        finally:
            cap.release()
        if not ok or frame is None:
            raise MediaProcessingError("No decodable frame in video")
        encoded, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, 85])
        if not encoded:
            raise MediaProcessingError("Could not encode keyframe")
        return buffer.tobytes()
    finally:
        try:
            os.unlink(path)
        except OSError:
            pass


async def derive_transport_variant(
    asset: MediaAsset,
    max_dim: Optional[int] = None,
    quality: Optional[int] = None,
) -> MediaAsset:
    """Size-reduced copy of an asset; non-image media is sent unchanged."""
    if asset.kind != "image":
        return asset
    optimized = await asyncio.to_thread(
        optimize_image,
        asset.to_bytes(),
        max_dim or settings.transport_image_max_dim,
        quality or settings.transport_image_quality,
    )
    return MediaAsset.from_bytes(optimized, "image/jpeg")


async def video_keyframe(asset: MediaAsset) -> MediaAsset:
    frame = await asyncio.to_thread(extract_video_keyframe, asset.to_bytes(), asset.mime_type)
    return MediaAsset.from_bytes(frame, "image/jpeg")


async def capture_with_timeout(
    capture: Callable[[], Awaitable[Optional[MediaAsset]]],
    timeout: Optional[float] = None,
) -> MediaAsset:
    """
    Run a capture callable with the fixed readiness timeout.

    Raises:
        MediaCaptureFailure: On timeout, error, or empty capture
    """
    timeout = timeout if timeout is not None else settings.capture_timeout_seconds
    try:
        asset = await asyncio.wait_for(capture(), timeout=timeout)
    except asyncio.TimeoutError:
        raise MediaCaptureFailure(f"Capture not ready after {timeout}s")
    except MediaCaptureFailure:
        raise
    except Exception as e:
        raise MediaCaptureFailure(f"Capture failed: {e}") from e
    if asset is None:
        raise MediaCaptureFailure("Capture returned nothing")
    return asset


class CameraSnapshot:
    """Single-frame capture from a local webcam."""

    def __init__(self, camera_index: int = 0, quality: int = 85):
        self.camera_index = camera_index
        self.quality = quality

    def _grab(self) -> bytes:
        cap = cv2.VideoCapture(self.camera_index)
        try:
            if not cap.isOpened():
                raise MediaCaptureFailure(f"Could not open camera at index {self.camera_index}")
            ok, frame = cap.read()
        finally:
            cap.release()
        if not ok or frame is None:
            raise MediaCaptureFailure("Camera returned no frame")
        _, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.quality])
        return buffer.tobytes()

    async def capture(self) -> MediaAsset:
        frame = await asyncio.to_thread(self._grab)
        return MediaAsset.from_bytes(frame, "image/jpeg")


class MediaLifecycleManager:
    """Uploads media and keeps remote references of a window alive."""

    def __init__(
        self,
        object_store: ObjectStore,
        chat_store,
        media_budget: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize media lifecycle manager.

        Args:
            object_store: Remote object store
            chat_store: ChatStore used for message-field updates
            media_budget: Maximum attachments eligible for a live reference
            clock: Monotonic clock used for progress estimates
        """
        self.object_store = object_store
        self.chat_store = chat_store
        self.media_budget = settings.max_media_to_keep if media_budget is None else media_budget
        self.clock = clock

    async def ensure_transport(self, message: Message) -> Optional[MediaAsset]:
        """
        Transport variant for a message, deriving and persisting it if missing.

        The stored transport variant is always preferred over re-deriving.
        """
        if message.transport_media:
            return message.transport_media
        if not message.display_media:
            return None
        transport = await derive_transport_variant(message.display_media)
        self.chat_store.update_message(message.id, transport_media=transport)
        return transport

    async def upload_message_media(self, message: Message) -> RemoteRef:
        """
        Upload a message's transport variant and record the new reference.

        Raises:
            UploadFailure: If there is nothing to upload or the store rejects it
        """
        current = self.chat_store.get(message.id) or message
        try:
            transport = await self.ensure_transport(current)
        except MediaProcessingError as e:
            raise UploadFailure(str(e)) from e
        if transport is None:
            raise UploadFailure(f"Message {message.id} has no local media to upload")

        ref = await self.object_store.upload(
            transport.to_bytes(), transport.mime_type, f"message-{message.id}"
        )
        self.chat_store.update_message(message.id, remote_ref=ref)
        return ref

    def eligible_media(self, candidates: List[Message], budget: Optional[int] = None) -> List[Message]:
        """The most recent attachments within the media budget."""
        budget = self.media_budget if budget is None else budget
        with_media = [m for m in candidates if m.has_media]
        if budget <= 0:
            return []
        return with_media[-budget:]

    async def ensure_live_references(
        self,
        candidates: List[Message],
        on_progress: Optional[ProgressCallback] = None,
        budget: Optional[int] = None,
    ) -> EnsureResult:
        """
        Verify or re-establish remote references for the eligible attachments.

        Liveness is batch-checked; dead or missing references are re-uploaded
        one at a time. A failed upload is logged and the attachment is left
        unverified so callers drop it from the payload.

        Args:
            candidates: Window messages, oldest first
            on_progress: Receives (done, total, eta_ms) as uploads finish
            budget: Overrides the media budget for this pass

        Returns:
            EnsureResult with reference updates by message id and the set of
            message ids whose reference is verified live
        """
        result = EnsureResult()
        eligible = self.eligible_media(candidates, budget)
        refs = [m.remote_ref for m in eligible if m.remote_ref]
        liveness: Dict[str, bool] = {}
        if refs:
            try:
                liveness = await self.object_store.check_live(refs)
            except UploadFailure as e:
                logger.warning(f"Liveness check failed, treating {len(refs)} reference(s) as dead: {e}")

        to_upload = []
        for message in eligible:
            if message.remote_ref and liveness.get(message.remote_ref.uri):
                result.verified.add(message.id)
            elif message.transport_media or message.display_media:
                to_upload.append(message)
            else:
                logger.warning(f"Message {message.id} has a dead reference and no local media")

        total = len(to_upload)
        if on_progress and total:
            on_progress(PrepProgress(label="uploading-media", done=0, total=total))

        elapsed = 0.0
        for done, message in enumerate(to_upload, start=1):
            started = self.clock()
            try:
                new_ref = await self.upload_message_media(message)
            except UploadFailure as e:
                logger.warning(f"Dropping attachment of {message.id} for this turn: {e}")
            else:
                result.updates[message.id] = RefUpdate(
                    old_uri=message.remote_ref.uri if message.remote_ref else None,
                    new_ref=new_ref,
                )
                result.verified.add(message.id)
                result.uploads += 1
            elapsed += self.clock() - started
            if on_progress:
                eta_ms = int(elapsed / done * (total - done) * 1000)
                on_progress(PrepProgress(label="uploading-media", done=done, total=total, eta_ms=eta_ms))

        return result

    async def release(self, message: Message) -> None:
        """Best-effort delete of a message's remote object."""
        if not message.remote_ref:
            return
        try:
            await self.object_store.delete(message.remote_ref)
        except UploadFailure as e:
            logger.warning(f"Could not delete remote media for {message.id}: {e}")
