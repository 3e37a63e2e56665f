"""Storage key scheme for permanent media.

Canonical layout: ``generated/{owner_id}/{category}/{filename}``.

The layout is a public contract: clients build URLs from it, so it never
changes shape. Older key shapes written before the canonical layout are
still understood by :func:`parse_key` so they can be migrated with
:func:`convert_legacy_key`.
"""

import time
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from reconciler.db.models import JobKind

ROOT_PREFIX = "generated"

CATEGORY_IMAGES = "images"
CATEGORY_VIDEOS = "videos"
CATEGORY_EDITED = "edited"
CATEGORY_UPSCALED = "upscaled"
CATEGORY_THUMBNAILS = "thumbnails"

VALID_CATEGORIES = (
    CATEGORY_IMAGES,
    CATEGORY_VIDEOS,
    CATEGORY_EDITED,
    CATEGORY_UPSCALED,
    CATEGORY_THUMBNAILS,
)

MEDIA_IMAGE = "image"
MEDIA_VIDEO = "video"

THUMBNAIL_PREFIX = "thumb_"

_KIND_CATEGORIES = {
    JobKind.GENERATION: CATEGORY_IMAGES,
    JobKind.UPSCALE: CATEGORY_UPSCALED,
    JobKind.EDIT: CATEGORY_EDITED,
    JobKind.VIDEO: CATEGORY_VIDEOS,
}

_CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}


class InvalidCategoryError(ValueError):
    """Raised when a storage category is outside the whitelist."""

    def __init__(self, category: str):
        self.category = category
        super().__init__(
            f"Invalid category: {category}. Allowed categories: {', '.join(VALID_CATEGORIES)}"
        )


@dataclass(frozen=True)
class StorageKeyInfo:
    """Metadata recovered from a storage key."""

    owner_id: Optional[str]
    category: Optional[str]
    derived_id: str
    extension: str
    is_thumbnail: bool
    media_type: str
    legacy: bool = False


def is_valid_category(category: str) -> bool:
    return category in VALID_CATEGORIES


def validate_category(category: str) -> str:
    """Return the category unchanged or raise :class:`InvalidCategoryError`."""
    if not is_valid_category(category):
        raise InvalidCategoryError(category)
    return category


def _validate_segment(name: str, value: str):
    if not value:
        raise ValueError(f"{name} must not be empty")
    if "/" in value:
        raise ValueError(f"{name} must not contain '/': {value}")


def build_key(owner_id: str, category: str, filename: str) -> str:
    """
    Build the canonical storage key for an object.

    Raises:
        InvalidCategoryError: category is not whitelisted
        ValueError: owner_id or filename is empty or contains a path separator
    """
    validate_category(category)
    _validate_segment("owner_id", owner_id)
    _validate_segment("filename", filename)
    return f"{ROOT_PREFIX}/{owner_id}/{category}/{filename}"


def _clean_extension(ext: str) -> str:
    return ext[1:] if ext.startswith(".") else ext


def build_media_filename(job_id: str, index: int, ext: str, timestamp_ms: Optional[int] = None) -> str:
    """Filename embedding the job id and item index, e.g. ``job1_0_1703123456789.png``."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{job_id}_{index}_{timestamp_ms}.{_clean_extension(ext)}"


def generate_unique_filename(ext: str) -> str:
    """Random filename for objects that are not tied to a job item."""
    return f"{uuid4().hex}_{int(time.time() * 1000)}.{_clean_extension(ext)}"


def _split_filename(filename: str) -> Optional[tuple[str, str]]:
    dot = filename.rfind(".")
    if dot <= 0 or dot == len(filename) - 1:
        return None
    return filename[:dot], filename[dot + 1 :]


def _media_type_for(category: Optional[str], extension: str) -> str:
    if category == CATEGORY_VIDEOS:
        return MEDIA_VIDEO
    if extension.lower() in ("mp4", "webm", "mov"):
        return MEDIA_VIDEO
    return MEDIA_IMAGE


def parse_key(key: str) -> Optional[StorageKeyInfo]:
    """
    Recover metadata from a storage key.

    Understands the canonical four-segment layout plus the legacy shapes:

    - ``{images|videos|thumbnails}/{filename}``
    - ``{images|videos}/{owner_id}/{filename}`` (``thumb_`` prefix marks thumbnails)
    - ``generated/{owner_id}/{job_id}/{image_N|thumb_N}.{ext}``
    - ``generated/{owner_id}/edited/{edit_id}/{image_N|thumb_N}.{ext}``

    Returns None for anything else.
    """
    if not key:
        return None
    parts = key.strip("/").split("/")
    if any(not part for part in parts):
        return None

    split = _split_filename(parts[-1])
    name, ext = split if split else (parts[-1], "")

    # Canonical: generated/{owner}/{category}/{filename}
    if len(parts) == 4 and parts[0] == ROOT_PREFIX and is_valid_category(parts[2]):
        owner_id, category = parts[1], parts[2]
        derived_id = name.split("_", 1)[0] if "_" in name else name
        return StorageKeyInfo(
            owner_id=owner_id,
            category=category,
            derived_id=derived_id,
            extension=ext,
            is_thumbnail=category == CATEGORY_THUMBNAILS,
            media_type=_media_type_for(category, ext),
        )

    if split is None:
        return None

    # Legacy per-job folder: generated/{owner}/{job_id}/image_0.png
    if len(parts) == 4 and parts[0] == ROOT_PREFIX:
        owner_id, job_id = parts[1], parts[2]
        return StorageKeyInfo(
            owner_id=owner_id,
            category=None,
            derived_id=job_id,
            extension=ext,
            is_thumbnail=name.startswith(THUMBNAIL_PREFIX),
            media_type=_media_type_for(None, ext),
            legacy=True,
        )

    # Legacy edit folder: generated/{owner}/edited/{edit_id}/image_0.png
    if len(parts) == 5 and parts[0] == ROOT_PREFIX and parts[2] == CATEGORY_EDITED:
        owner_id, edit_id = parts[1], parts[3]
        return StorageKeyInfo(
            owner_id=owner_id,
            category=CATEGORY_EDITED,
            derived_id=edit_id,
            extension=ext,
            is_thumbnail=name.startswith(THUMBNAIL_PREFIX),
            media_type=MEDIA_IMAGE,
            legacy=True,
        )

    # Legacy typed folder: images/{owner}/{id}.jpg
    if len(parts) == 3 and parts[0] in (CATEGORY_IMAGES, CATEGORY_VIDEOS):
        is_thumbnail = name.startswith(THUMBNAIL_PREFIX)
        derived_id = name[len(THUMBNAIL_PREFIX) :] if is_thumbnail else name
        return StorageKeyInfo(
            owner_id=parts[1],
            category=None,
            derived_id=derived_id,
            extension=ext,
            is_thumbnail=is_thumbnail,
            media_type=MEDIA_VIDEO if parts[0] == CATEGORY_VIDEOS else MEDIA_IMAGE,
            legacy=True,
        )

    # Legacy flat folder without owner: thumbnails/{id}.jpg
    if len(parts) == 2 and parts[0] in (CATEGORY_IMAGES, CATEGORY_VIDEOS, CATEGORY_THUMBNAILS):
        is_thumbnail = parts[0] == CATEGORY_THUMBNAILS or name.startswith(THUMBNAIL_PREFIX)
        derived_id = name[len(THUMBNAIL_PREFIX) :] if name.startswith(THUMBNAIL_PREFIX) else name
        return StorageKeyInfo(
            owner_id=None,
            category=None,
            derived_id=derived_id,
            extension=ext,
            is_thumbnail=is_thumbnail,
            media_type=MEDIA_VIDEO if parts[0] == CATEGORY_VIDEOS else MEDIA_IMAGE,
            legacy=True,
        )

    return None


def is_canonical_key(key: str) -> bool:
    """True if the key follows the canonical four-segment layout."""
    info = parse_key(key)
    return info is not None and not info.legacy


def build_thumbnail_key(original_key: str, ext: str = "jpg") -> str:
    """
    Thumbnail key for an existing media key.

    Canonical and owner-bearing legacy keys map into the owner's
    ``thumbnails`` category. Keys without an owner keep their folder and get
    a ``thumb_`` filename prefix.
    """
    info = parse_key(original_key)
    if info is not None and info.owner_id:
        filename = f"{info.derived_id}_{int(time.time() * 1000)}.{_clean_extension(ext)}"
        return build_key(info.owner_id, CATEGORY_THUMBNAILS, filename)

    folder, _, filename = original_key.rpartition("/")
    split = _split_filename(filename)
    name = split[0] if split else filename
    thumb = f"{THUMBNAIL_PREFIX}{name}.{_clean_extension(ext)}"
    return f"{folder}/{thumb}" if folder else thumb


def category_for_kind(kind: JobKind) -> str:
    """Storage category for media produced by a job kind."""
    category = _KIND_CATEGORIES.get(kind)
    if category is None:
        raise InvalidCategoryError(getattr(kind, "value", str(kind)))
    return category


def convert_legacy_key(
    legacy_key: str,
    owner_id: str,
    derived_id: str,
    category: Optional[str] = None,
) -> Optional[str]:
    """
    Canonical key for an object stored under a legacy key.

    The category defaults to what the legacy key implies (thumbnails,
    videos, edited or images). Returns None when the legacy key has no
    file extension.
    """
    info = parse_key(legacy_key)
    if info is None:
        split = _split_filename(legacy_key.rsplit("/", 1)[-1])
        if split is None:
            return None
        ext = split[1]
        is_thumbnail = False
        media_type = _media_type_for(None, ext)
        legacy_category = None
    else:
        ext = info.extension
        is_thumbnail = info.is_thumbnail
        media_type = info.media_type
        legacy_category = info.category

    if category is None:
        if is_thumbnail:
            category = CATEGORY_THUMBNAILS
        elif media_type == MEDIA_VIDEO:
            category = CATEGORY_VIDEOS
        elif legacy_category:
            category = legacy_category
        else:
            category = CATEGORY_IMAGES

    filename = f"{derived_id}_{int(time.time() * 1000)}.{ext}"
    return build_key(owner_id, category, filename)


def extension_for_content_type(content_type: str) -> Optional[str]:
    """File extension for a recognised media content type, None otherwise."""
    base = content_type.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_EXTENSIONS.get(base)
