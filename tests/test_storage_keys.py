"""Tests for the storage key scheme."""

import pytest

from reconciler.db.models import JobKind
from reconciler.services.storage_keys import (
    CATEGORY_EDITED,
    CATEGORY_IMAGES,
    CATEGORY_THUMBNAILS,
    CATEGORY_UPSCALED,
    CATEGORY_VIDEOS,
    VALID_CATEGORIES,
    InvalidCategoryError,
    build_key,
    build_media_filename,
    build_thumbnail_key,
    category_for_kind,
    convert_legacy_key,
    extension_for_content_type,
    generate_unique_filename,
    is_canonical_key,
    parse_key,
)


def test_build_key_layout():
    """Canonical keys are generated/{owner}/{category}/{filename}."""
    key = build_key("U1", CATEGORY_IMAGES, "J1_0_1703123456789.png")
    assert key == "generated/U1/images/J1_0_1703123456789.png"


def test_build_key_rejects_unknown_category():
    """Categories outside the whitelist are refused."""
    with pytest.raises(InvalidCategoryError) as exc_info:
        build_key("U1", "avatars", "x.png")
    assert exc_info.value.category == "avatars"
    # Still a ValueError for callers that only know the builtin
    assert isinstance(exc_info.value, ValueError)


@pytest.mark.parametrize(
    "owner_id,filename",
    [("", "x.png"), ("U1", ""), ("U1/../U2", "x.png"), ("U1", "nested/x.png")],
)
def test_build_key_rejects_bad_segments(owner_id, filename):
    """Empty segments or embedded separators would change the key shape."""
    with pytest.raises(ValueError):
        build_key(owner_id, CATEGORY_IMAGES, filename)


@pytest.mark.parametrize("category", VALID_CATEGORIES)
def test_build_then_parse_round_trip(category):
    """Parsing a built key recovers owner, category and the id prefix."""
    filename = build_media_filename("job42", 3, "webp", timestamp_ms=1703123456789)
    info = parse_key(build_key("owner-7", category, filename))

    assert info is not None
    assert info.owner_id == "owner-7"
    assert info.category == category
    assert info.derived_id == "job42"
    assert info.extension == "webp"
    assert info.is_thumbnail == (category == CATEGORY_THUMBNAILS)
    assert info.legacy is False


def test_round_trip_without_extension():
    """A canonical key whose filename has no extension still parses."""
    info = parse_key(build_key("U1", CATEGORY_IMAGES, "J1_0_1703123456789"))
    assert info is not None
    assert info.owner_id == "U1"
    assert info.derived_id == "J1"
    assert info.extension == ""


def test_video_category_is_video_media():
    info = parse_key("generated/U1/videos/V1_0_1.mp4")
    assert info.media_type == "video"
    assert info.category == CATEGORY_VIDEOS


def test_build_media_filename_embeds_job_and_index():
    assert build_media_filename("J1", 2, ".png", timestamp_ms=5) == "J1_2_5.png"


def test_parse_legacy_generation_folder():
    """generated/{owner}/{jobId}/image_0.png"""
    info = parse_key("generated/U1/J9/image_0.png")
    assert info.legacy is True
    assert info.owner_id == "U1"
    assert info.derived_id == "J9"
    assert info.category is None
    assert info.is_thumbnail is False


def test_parse_legacy_generation_folder_thumbnail():
    info = parse_key("generated/U1/J9/thumb_0.jpg")
    assert info.legacy is True
    assert info.is_thumbnail is True


def test_parse_legacy_edit_folder():
    """generated/{owner}/edited/{editId}/image_0.png"""
    info = parse_key("generated/U1/edited/E5/image_0.png")
    assert info.legacy is True
    assert info.owner_id == "U1"
    assert info.category == CATEGORY_EDITED
    assert info.derived_id == "E5"


def test_parse_legacy_typed_folder_with_owner():
    """images/{owner}/thumb_{id}.jpg"""
    info = parse_key("images/U1/thumb_abc.jpg")
    assert info.legacy is True
    assert info.owner_id == "U1"
    assert info.derived_id == "abc"
    assert info.is_thumbnail is True


def test_parse_legacy_flat_folder():
    """thumbnails/{id}.jpg has no owner."""
    info = parse_key("thumbnails/abc.jpg")
    assert info.legacy is True
    assert info.owner_id is None
    assert info.is_thumbnail is True

    video = parse_key("videos/clip.mp4")
    assert video.media_type == "video"


@pytest.mark.parametrize(
    "key",
    ["", "random.png", "generated/U1/images", "a/b/c/d/e/f.png", "generated//images/x.png", "other/U1/x"],
)
def test_parse_unknown_shapes(key):
    assert parse_key(key) is None


def test_is_canonical_key():
    assert is_canonical_key("generated/U1/upscaled/J1_0_1.png")
    assert not is_canonical_key("generated/U1/J1/image_0.png")
    assert not is_canonical_key("nonsense")


def test_build_thumbnail_key_for_canonical_key():
    key = build_thumbnail_key("generated/U1/images/J1_0_1703123456789.png")
    info = parse_key(key)
    assert info.owner_id == "U1"
    assert info.category == CATEGORY_THUMBNAILS
    assert info.derived_id == "J1"
    assert info.extension == "jpg"


def test_build_thumbnail_key_without_owner_keeps_folder():
    assert build_thumbnail_key("images/abc.png") == "images/thumb_abc.jpg"


def test_convert_legacy_key_infers_category():
    thumb = convert_legacy_key("generated/U1/J9/thumb_0.jpg", "U1", "J9")
    assert parse_key(thumb).category == CATEGORY_THUMBNAILS

    edited = convert_legacy_key("generated/U1/edited/E5/image_0.png", "U1", "E5")
    info = parse_key(edited)
    assert info.category == CATEGORY_EDITED
    assert info.derived_id == "E5"
    assert info.legacy is False

    video = convert_legacy_key("videos/U1/clip.mp4", "U1", "V1")
    assert parse_key(video).category == CATEGORY_VIDEOS


def test_convert_legacy_key_explicit_category():
    key = convert_legacy_key("images/abc.png", "U2", "J3", category=CATEGORY_UPSCALED)
    assert key.startswith("generated/U2/upscaled/J3_")
    assert key.endswith(".png")


def test_convert_legacy_key_without_extension():
    assert convert_legacy_key("images/abc", "U1", "J1") is None


def test_category_for_kind():
    assert category_for_kind(JobKind.GENERATION) == CATEGORY_IMAGES
    assert category_for_kind(JobKind.UPSCALE) == CATEGORY_UPSCALED
    assert category_for_kind(JobKind.EDIT) == CATEGORY_EDITED
    assert category_for_kind(JobKind.VIDEO) == CATEGORY_VIDEOS
    with pytest.raises(InvalidCategoryError):
        category_for_kind(JobKind.TRAINING)


@pytest.mark.parametrize(
    "content_type,expected",
    [
        ("image/png", "png"),
        ("image/jpeg; charset=binary", "jpg"),
        ("IMAGE/WEBP", "webp"),
        ("video/mp4", "mp4"),
        ("text/html", None),
        ("application/octet-stream", None),
    ],
)
def test_extension_for_content_type(content_type, expected):
    assert extension_for_content_type(content_type) == expected


def test_generate_unique_filename():
    first = generate_unique_filename(".png")
    second = generate_unique_filename("png")
    assert first != second
    assert first.endswith(".png") and not first.endswith("..png")
    assert is_canonical_key(build_key("U1", CATEGORY_IMAGES, first))
