"""Download provider-hosted media and persist it into permanent storage."""

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Optional, Sequence

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from reconciler.config import Settings, get_settings
from reconciler.services.storage import StorageError
from reconciler.services.storage_keys import (
    CATEGORY_THUMBNAILS,
    CATEGORY_VIDEOS,
    build_key,
    build_media_filename,
    extension_for_content_type,
    validate_category,
)

logger = logging.getLogger(__name__)


class MediaDownloadError(Exception):
    """Transport-level failure fetching a source URL."""


class MediaValidationError(Exception):
    """Source responded, but the payload is not acceptable media."""


@dataclass
class DownloadedMedia:
    """A fetched media payload."""

    content: bytes
    content_type: str
    extension: str

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


@dataclass
class ItemFailure:
    """A source URL that could not be persisted."""

    index: int
    url: str
    stage: str  # "download", "validate" or "upload"
    reason: str


@dataclass
class PersistResult:
    """Outcome of persisting a batch of source URLs."""

    success: bool
    permanent_urls: list[str] = field(default_factory=list)
    thumbnail_urls: list[str] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def partial(self) -> bool:
        return self.success and bool(self.failures)


class MediaPersister:
    """
    Fetch time-limited media URLs and store them under permanent keys.

    Items are processed sequentially. The batch succeeds when at least one
    item is stored; failed items are reported in ``PersistResult.failures``.
    """

    def __init__(
        self,
        storage,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self._transport = transport

    def _limits_for(self, category: str) -> tuple[float, int]:
        if category == CATEGORY_VIDEOS:
            return self.settings.video_download_timeout, self.settings.max_video_bytes
        return self.settings.image_download_timeout, self.settings.max_image_bytes

    async def persist(
        self,
        source_urls: Sequence[str],
        job_id: str,
        owner_id: str,
        category: str,
    ) -> PersistResult:
        """
        Download each source URL and upload it (plus a thumbnail for images).

        Args:
            source_urls: Provider URLs, already normalised
            job_id: Record id, embedded in every filename
            owner_id: Owner of the media, first segment of every key
            category: Storage category for the originals

        Returns:
            PersistResult; never raises for per-item failures
        """
        validate_category(category)

        if not source_urls:
            return PersistResult(success=False, error="No media URLs in provider output")

        timeout, max_bytes = self._limits_for(category)
        result = PersistResult(success=False)

        logger.info(
            f"Persisting {len(source_urls)} media item(s) job={job_id} owner={owner_id} category={category}"
        )

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers={"User-Agent": self.settings.media_user_agent},
        ) as client:
            for index, url in enumerate(source_urls):
                try:
                    media = await self._download(client, url, max_bytes)
                except MediaDownloadError as e:
                    self._record_failure(result, index, url, "download", str(e), job_id)
                    continue
                except MediaValidationError as e:
                    self._record_failure(result, index, url, "validate", str(e), job_id)
                    continue

                try:
                    permanent_url, key, thumbnail_url = await self._store(
                        media, job_id, owner_id, category, index
                    )
                except StorageError as e:
                    self._record_failure(result, index, url, "upload", str(e), job_id)
                    continue

                result.permanent_urls.append(permanent_url)
                result.thumbnail_urls.append(thumbnail_url)
                result.keys.append(key)

        if not result.permanent_urls:
            result.error = f"Failed to store any of {len(source_urls)} media item(s)"
            logger.error(f"Media persist failed job={job_id} owner={owner_id}: {result.error}")
            return result

        result.success = True
        if result.failures:
            logger.warning(
                f"Stored {len(result.permanent_urls)}/{len(source_urls)} media items job={job_id}, "
                f"dropped indexes {[f.index for f in result.failures]}"
            )
        return result

    def _record_failure(
        self, result: PersistResult, index: int, url: str, stage: str, reason: str, job_id: str
    ):
        logger.warning(f"Media item {index} failed job={job_id} stage={stage}: {reason}")
        result.failures.append(ItemFailure(index=index, url=url, stage=stage, reason=reason))

    async def _download(self, client: httpx.AsyncClient, url: str, max_bytes: int) -> DownloadedMedia:
        """Stream a URL into memory, rejecting anything that is not bounded media."""
        try:
            async with client.stream("GET", url) as response:
                if not response.is_success:
                    raise MediaDownloadError(f"HTTP {response.status_code} from {url}")

                content_type = response.headers.get("content-type", "")
                extension = extension_for_content_type(content_type) if content_type else None
                if extension is None:
                    raise MediaValidationError(f"Unsupported content type: {content_type or 'missing'}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise MediaValidationError(f"Payload of {declared} bytes exceeds {max_bytes}")

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > max_bytes:
                        raise MediaValidationError(f"Payload exceeds {max_bytes} bytes")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MediaDownloadError(f"{type(e).__name__}: {e}") from e

        if not buffer:
            raise MediaValidationError("Empty response body")

        return DownloadedMedia(
            content=bytes(buffer),
            content_type=content_type.split(";", 1)[0].strip().lower(),
            extension=extension,
        )

    async def _store(
        self, media: DownloadedMedia, job_id: str, owner_id: str, category: str, index: int
    ) -> tuple[str, str, str]:
        """Upload one item. Returns (permanent_url, key, thumbnail_url)."""
        key = build_key(owner_id, category, build_media_filename(job_id, index, media.extension))
        permanent_url = await run_in_threadpool(
            self.storage.upload, media.content, key, media.content_type
        )

        if not media.is_image:
            return permanent_url, key, permanent_url

        thumbnail = await run_in_threadpool(self.make_thumbnail, media.content)
        if thumbnail is None:
            logger.warning(f"Thumbnail derivation failed job={job_id} index={index}, using original")
            return permanent_url, key, permanent_url

        thumb_key = build_key(owner_id, CATEGORY_THUMBNAILS, build_media_filename(job_id, index, "jpg"))
        thumbnail_url = await run_in_threadpool(self.storage.upload, thumbnail, thumb_key, "image/jpeg")
        return permanent_url, key, thumbnail_url

    def make_thumbnail(self, content: bytes) -> Optional[bytes]:
        """Cover-fit JPEG thumbnail, or None if the bytes are not a decodable image."""
        size = (self.settings.thumbnail_size, self.settings.thumbnail_size)
        try:
            with Image.open(BytesIO(content)) as image:
                image = ImageOps.exif_transpose(image)
                thumb = ImageOps.fit(image.convert("RGB"), size, Image.Resampling.LANCZOS)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.debug(f"Cannot decode image for thumbnail: {e}")
            return None

        out = BytesIO()
        thumb.save(out, format="JPEG", quality=self.settings.thumbnail_quality, optimize=True)
        return out.getvalue()
