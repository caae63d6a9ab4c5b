"""Uploaders for encryption declaration documents, App Store screenshots and app previews."""

from __future__ import annotations

import logging
import mimetypes
import os
import stat
from typing import Any, Callable, Dict, List, Optional

from pydantic import Field

import asc_api
import asc_upload
import build_processing
from asc_api import Deadline
from asc_upload import ApiModel, UploadError, UploadOperation

logger = logging.getLogger(__name__)

ASSET_UPLOAD_DEFAULT_TIMEOUT = 10 * 60.0

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg")

VALID_SCREENSHOT_DISPLAY_TYPES = (
    "APP_IPHONE_67",
    "APP_IPHONE_65",
    "APP_IPHONE_61",
    "APP_IPHONE_58",
    "APP_IPHONE_55",
    "APP_IPHONE_47",
    "APP_IPHONE_40",
    "APP_IPHONE_35",
    "APP_IPAD_PRO_3GEN_129",
    "APP_IPAD_PRO_3GEN_11",
    "APP_IPAD_PRO_129",
    "APP_IPAD_105",
    "APP_IPAD_97",
    "APP_DESKTOP",
    "APP_WATCH_ULTRA",
    "APP_WATCH_SERIES_10",
    "APP_WATCH_SERIES_7",
    "APP_WATCH_SERIES_4",
    "APP_WATCH_SERIES_3",
    "APP_APPLE_TV",
    "APP_APPLE_VISION_PRO",
    "IMESSAGE_APP_IPHONE_67",
    "IMESSAGE_APP_IPHONE_61",
    "IMESSAGE_APP_IPHONE_65",
    "IMESSAGE_APP_IPHONE_58",
    "IMESSAGE_APP_IPHONE_55",
    "IMESSAGE_APP_IPHONE_47",
    "IMESSAGE_APP_IPHONE_40",
    "IMESSAGE_APP_IPAD_PRO_3GEN_129",
    "IMESSAGE_APP_IPAD_PRO_3GEN_11",
    "IMESSAGE_APP_IPAD_PRO_129",
    "IMESSAGE_APP_IPAD_105",
    "IMESSAGE_APP_IPAD_97",
)

VALID_PREVIEW_TYPES = (
    "IPHONE_67",
    "IPHONE_65",
    "IPHONE_61",
    "IPHONE_58",
    "IPHONE_55",
    "IPHONE_47",
    "IPHONE_40",
    "IPHONE_35",
    "IPAD_PRO_3GEN_129",
    "IPAD_PRO_3GEN_11",
    "IPAD_PRO_129",
    "IPAD_105",
    "IPAD_97",
    "DESKTOP",
    "APPLE_TV",
    "APPLE_VISION_PRO",
)


class AssetUploadItem(ApiModel):
    file_name: str
    file_path: str
    asset_id: str
    state: str


class ScreenshotUploadResult(ApiModel):
    version_localization_id: str
    set_id: str
    display_type: str
    results: List[AssetUploadItem] = Field(default_factory=list)


class PreviewUploadResult(ApiModel):
    version_localization_id: str
    set_id: str
    preview_type: str
    results: List[AssetUploadItem] = Field(default_factory=list)


def _regular_file_size(path: str) -> int:
    try:
        info = os.lstat(path)
    except OSError as exc:
        raise ValueError(f"cannot stat {path!r}: {exc}") from exc
    if stat.S_ISLNK(info.st_mode):
        raise ValueError(f"refusing to read symlink {path!r}")
    if stat.S_ISDIR(info.st_mode):
        raise ValueError(f"{path!r} is a directory")
    if not stat.S_ISREG(info.st_mode):
        raise ValueError(f"expected regular file: {path!r}")
    if info.st_size <= 0:
        raise ValueError("file size must be greater than 0")
    return info.st_size


def _operations(resource: Dict[str, Any], file_name: str) -> List[UploadOperation]:
    raw = (resource.get("attributes") or {}).get("uploadOperations") or []
    if not raw:
        raise UploadError(f"no upload operations returned for {file_name!r}")
    return [UploadOperation.model_validate(entry) for entry in raw]


def _upload_deadline() -> Deadline:
    return Deadline(asc_api.resolve_upload_timeout(), "upload")


def upload_encryption_document(declaration_id: str, file_path: str) -> Dict[str, Any]:
    """Attach a document to an app encryption declaration.

    Returns the committed ``appEncryptionDeclarationDocuments`` resource.
    """

    declaration_id = (declaration_id or "").strip()
    if not declaration_id:
        raise ValueError("--declaration is required")
    file_size = _regular_file_size(file_path)
    file_name = os.path.basename(file_path)

    deadline = Deadline(asc_api.resolve_timeout(), "encryption documents upload")
    document = asc_api.create_encryption_declaration_document(
        declaration_id, file_name, file_size, deadline=deadline
    )
    operations = _operations(document, file_name)

    asc_upload.execute_upload_operations(
        file_path, operations, deadline=_upload_deadline()
    )
    checksum = asc_upload.compute_file_checksum(file_path, "MD5")

    committed = asc_api.update_encryption_declaration_document(
        str(document.get("id")),
        uploaded=True,
        source_file_checksum=checksum.hash,
        deadline=_upload_deadline(),
    )
    logger.info("Uploaded encryption document %s (%s)", committed.get("id"), file_name)
    return committed


def normalize_screenshot_display_type(value: str) -> str:
    normalized = (value or "").strip().upper()
    if not normalized:
        raise ValueError("device type is required")
    if normalized not in VALID_SCREENSHOT_DISPLAY_TYPES and not normalized.startswith("APP_"):
        normalized = "APP_" + normalized
    if normalized not in VALID_SCREENSHOT_DISPLAY_TYPES:
        raise ValueError(f"unsupported screenshot display type {normalized!r}")
    return normalized


def normalize_preview_type(value: str) -> str:
    normalized = (value or "").strip().upper()
    if not normalized:
        raise ValueError("device type is required")
    if normalized.startswith("APP_"):
        normalized = normalized[len("APP_"):]
    if normalized not in VALID_PREVIEW_TYPES:
        raise ValueError(f"unsupported preview type {normalized!r}")
    return normalized


def detect_preview_mime_type(path: str) -> str:
    extension = os.path.splitext(path)[1].lower()
    if not extension:
        raise ValueError(f"preview file {path!r} is missing an extension")
    guessed, _ = mimetypes.guess_type(path)
    if not guessed or not guessed.startswith("video/"):
        raise ValueError(f"unsupported preview file extension {extension!r}")
    return guessed.split(";", 1)[0]


def _validate_image_file(path: str) -> None:
    if not path.lower().endswith(IMAGE_EXTENSIONS):
        raise ValueError(
            f"unsupported screenshot file {path!r}: expected one of {', '.join(IMAGE_EXTENSIONS)}"
        )
    _regular_file_size(path)


def _validate_preview_file(path: str) -> None:
    detect_preview_mime_type(path)
    _regular_file_size(path)


def collect_asset_files(
    path: str, validate: Callable[[str], None] = _validate_image_file
) -> List[str]:
    """Return the asset file at ``path`` or the sorted files inside it.

    Every returned file has passed ``validate``.
    """
    try:
        info = os.lstat(path)
    except OSError as exc:
        raise ValueError(f"cannot stat {path!r}: {exc}") from exc
    if stat.S_ISLNK(info.st_mode):
        raise ValueError(f"refusing to read symlink {path!r}")

    if stat.S_ISDIR(info.st_mode):
        files = []
        for entry in os.scandir(path):
            if entry.is_dir(follow_symlinks=False):
                continue
            validate(entry.path)
            files.append(entry.path)
        if not files:
            raise ValueError(f"no files found in {path!r}")
        return sorted(files)

    validate(path)
    return [path]


def _find_or_create_set(
    sets: List[Dict[str, Any]],
    type_attribute: str,
    value: str,
    create: Callable[[], Dict[str, Any]],
) -> Dict[str, Any]:
    for asset_set in sets:
        attributes = asset_set.get("attributes") or {}
        if str(attributes.get(type_attribute) or "").upper() == value:
            return asset_set
    logger.info("Creating %s set for %s", type_attribute, value)
    return create()


def _upload_media(
    file_path: str,
    deadline: Deadline,
    *,
    kind: str,
    create: Callable[[str, int], Dict[str, Any]],
    commit: Callable[[str, str], Any],
    fetch: Callable[[str], Dict[str, Any]],
) -> AssetUploadItem:
    """Reserve, send, commit with MD5 and wait for delivery of one media file."""
    file_size = _regular_file_size(file_path)
    file_name = os.path.basename(file_path)
    checksum = asc_upload.compute_file_checksum(file_path, "MD5")

    asset = create(file_name, file_size)
    asset_id = str(asset.get("id"))
    asc_upload.execute_upload_operations(
        file_path, _operations(asset, file_name), deadline=deadline
    )
    commit(asset_id, checksum.hash)

    state = build_processing.wait_for_asset_delivery(fetch, asset_id, deadline=deadline)
    logger.info("Uploaded %s %s (%s): %s", kind, asset_id, file_name, state)
    return AssetUploadItem(
        file_name=file_name, file_path=file_path, asset_id=asset_id, state=state
    )


def _asset_deadline(timeout: Optional[float], label: str) -> Deadline:
    seconds = timeout or asc_api.resolve_timeout_with_default(ASSET_UPLOAD_DEFAULT_TIMEOUT)
    return Deadline(seconds, label)


def upload_screenshots(
    localization_id: str,
    path: str,
    device_type: str,
    *,
    timeout: Optional[float] = None,
) -> ScreenshotUploadResult:
    localization_id = (localization_id or "").strip()
    if not localization_id:
        raise ValueError("--version-localization is required")
    display_type = normalize_screenshot_display_type(device_type)
    files = collect_asset_files(path, _validate_image_file)

    deadline = _asset_deadline(timeout, "assets screenshots upload")
    screenshot_set = _find_or_create_set(
        asc_api.list_app_screenshot_sets(localization_id, deadline=deadline),
        "screenshotDisplayType",
        display_type,
        lambda: asc_api.create_app_screenshot_set(localization_id, display_type, deadline=deadline),
    )
    set_id = str(screenshot_set.get("id"))

    result = ScreenshotUploadResult(
        version_localization_id=localization_id,
        set_id=set_id,
        display_type=(screenshot_set.get("attributes") or {}).get("screenshotDisplayType")
        or display_type,
    )
    for file_path in files:
        result.results.append(
            _upload_media(
                file_path,
                deadline,
                kind="screenshot",
                create=lambda name, size: asc_api.create_app_screenshot(
                    set_id, name, size, deadline=deadline
                ),
                commit=lambda asset_id, md5: asc_api.update_app_screenshot(
                    asset_id, uploaded=True, source_file_checksum=md5, deadline=deadline
                ),
                fetch=lambda asset_id: asc_api.get_app_screenshot(asset_id, deadline=deadline),
            )
        )
    return result


def upload_previews(
    localization_id: str,
    path: str,
    device_type: str,
    *,
    timeout: Optional[float] = None,
) -> PreviewUploadResult:
    """Upload app preview videos into the preview set for ``device_type``."""

    localization_id = (localization_id or "").strip()
    if not localization_id:
        raise ValueError("--version-localization is required")
    preview_type = normalize_preview_type(device_type)
    files = collect_asset_files(path, _validate_preview_file)

    deadline = _asset_deadline(timeout, "assets previews upload")
    preview_set = _find_or_create_set(
        asc_api.list_app_preview_sets(localization_id, deadline=deadline),
        "previewType",
        preview_type,
        lambda: asc_api.create_app_preview_set(localization_id, preview_type, deadline=deadline),
    )
    set_id = str(preview_set.get("id"))

    result = PreviewUploadResult(
        version_localization_id=localization_id,
        set_id=set_id,
        preview_type=(preview_set.get("attributes") or {}).get("previewType") or preview_type,
    )
    for file_path in files:
        mime_type = detect_preview_mime_type(file_path)
        result.results.append(
            _upload_media(
                file_path,
                deadline,
                kind="preview",
                create=lambda name, size: asc_api.create_app_preview(
                    set_id, name, size, mime_type, deadline=deadline
                ),
                commit=lambda asset_id, md5: asc_api.update_app_preview(
                    asset_id, uploaded=True, source_file_checksum=md5, deadline=deadline
                ),
                fetch=lambda asset_id: asc_api.get_app_preview(asset_id, deadline=deadline),
            )
        )
    return result
