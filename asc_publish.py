"""Upload workflows chained into TestFlight distribution and App Store submission."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field

import asc_api
import asc_upload
import build_processing
from asc_api import AppleStoreApiError, Deadline
from asc_upload import ApiModel, BuildUploadResult
from build_processing import DEFAULT_POLL_INTERVAL, DEFAULT_PUBLISH_TIMEOUT
from ipa_info import resolve_bundle_info, validate_ipa_path

logger = logging.getLogger(__name__)

PLATFORMS = ("IOS", "MAC_OS", "TV_OS", "VISION_OS")
BUILD_WAIT_DEFAULT_TIMEOUT = DEFAULT_PUBLISH_TIMEOUT

_LOCALE_RE = re.compile(r"^[a-zA-Z]{2,3}(-[a-zA-Z0-9]+)*$")


class TestFlightPublishResult(ApiModel):
    __test__ = False

    build_id: str
    build_version: str
    build_number: str
    group_ids: List[str] = Field(default_factory=list)
    uploaded: bool = True
    processing_state: Optional[str] = None
    notified: bool = False


class AppStorePublishResult(ApiModel):
    build_id: str
    version_id: str
    submission_id: Optional[str] = None
    uploaded: bool = True
    attached: bool = True
    submitted: bool = False


def normalize_platform(value: str) -> str:
    normalized = (value or "").strip().upper()
    if not normalized:
        raise ValueError("--platform is required")
    if normalized not in PLATFORMS:
        raise ValueError(f"--platform must be one of: {', '.join(PLATFORMS)}")
    return normalized


def validate_locale(locale: str) -> str:
    if not locale or not _LOCALE_RE.match(locale):
        raise ValueError(f"invalid locale {locale!r}: must match pattern like en or en-US")
    return locale


def parse_group_ids(values: Iterable[str]) -> List[str]:
    """Split comma separated group IDs, dropping blanks and duplicates."""
    groups: List[str] = []
    for value in values or []:
        for item in str(value).split(","):
            item = item.strip()
            if item and item not in groups:
                groups.append(item)
    return groups


def resolve_publish_timeout(timeout: float) -> float:
    if timeout and timeout > 0:
        return timeout
    return asc_api.resolve_timeout_with_default(DEFAULT_PUBLISH_TIMEOUT)


def _validate_wait_options(poll_interval: float, timeout: float) -> None:
    if poll_interval <= 0:
        raise ValueError("--poll-interval must be greater than 0")
    if timeout < 0:
        raise ValueError("--timeout must be greater than 0")


def find_or_create_app_store_version(
    app_id: str,
    version: str,
    platform: str,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    app_id = (app_id or "").strip()
    version = (version or "").strip()
    platform = (platform or "").strip().upper()
    if not app_id or not version or not platform:
        raise ValueError("app ID, version, and platform are required")

    versions = asc_api.list_app_store_versions(
        app_id, version, platform, limit=10, deadline=deadline
    )
    if not versions:
        logger.info("Creating App Store version %s (%s) for app %s", version, platform, app_id)
        return asc_api.create_app_store_version(app_id, version, platform, deadline=deadline)
    if len(versions) == 1:
        return versions[0]
    raise RuntimeError(
        f"multiple app store versions found for version {version!r} and platform {platform!r}"
    )


def upsert_beta_build_localization(
    build_id: str,
    locale: str,
    notes: str,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    """Set the "What to Test" notes for ``locale``, creating the localization if needed."""

    locale_value = (locale or "").strip()
    notes_value = (notes or "").strip()
    if not locale_value or not notes_value:
        raise ValueError("locale and notes are required")

    existing = asc_api.list_beta_build_localizations(build_id, locale_value, deadline=deadline)
    if existing:
        localization_id = str(existing[0].get("id") or "").strip()
        if not localization_id:
            raise RuntimeError(f"missing localization ID for locale {locale_value!r}")
        return asc_api.update_beta_build_localization(
            localization_id, notes_value, deadline=deadline
        )
    return asc_api.create_beta_build_localization(
        build_id, locale_value, notes_value, deadline=deadline
    )


def _upload_and_wait_for_build(
    app_id: str,
    ipa_path: str,
    version: str,
    build_number: str,
    platform: str,
    *,
    poll_interval: float,
    deadline: Deadline,
    upload_timeout: Optional[float],
) -> Dict[str, Any]:
    asc_upload.upload_build(
        app_id,
        ipa_path,
        version,
        build_number,
        platform,
        deadline=deadline,
        upload_timeout=upload_timeout,
    )
    return build_processing.wait_for_build_by_number(
        app_id,
        version,
        build_number,
        platform,
        poll_interval=poll_interval,
        deadline=deadline,
    )


def publish_testflight(
    app_id: str,
    ipa_path: str,
    group_ids: Iterable[str],
    *,
    version: Optional[str] = None,
    build_number: Optional[str] = None,
    platform: str = "IOS",
    notify: bool = False,
    wait: bool = False,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = 0,
) -> TestFlightPublishResult:
    """Upload an IPA and add the resulting build to TestFlight beta groups."""

    groups = parse_group_ids(group_ids)
    if not groups:
        raise ValueError("--group is required")
    _validate_wait_options(poll_interval, timeout)
    platform_value = normalize_platform(platform)
    validate_ipa_path(ipa_path)
    version_value, build_value = resolve_bundle_info(ipa_path, version, build_number)

    deadline = Deadline(resolve_publish_timeout(timeout), "publish testflight")
    build = _upload_and_wait_for_build(
        app_id,
        ipa_path,
        version_value,
        build_value,
        platform_value,
        poll_interval=poll_interval,
        deadline=deadline,
        upload_timeout=timeout if timeout > 0 else None,
    )
    if wait:
        build = build_processing.wait_for_build_processing(
            str(build["id"]), poll_interval=poll_interval, deadline=deadline
        )

    try:
        asc_api.add_beta_groups_to_build(str(build["id"]), groups, notify=notify, deadline=deadline)
    except AppleStoreApiError:
        logger.error("Failed to add build %s to groups %s", build["id"], ", ".join(groups))
        raise
    logger.info("Added build %s to %d beta group(s)", build["id"], len(groups))

    return TestFlightPublishResult(
        build_id=str(build["id"]),
        build_version=version_value,
        build_number=build_value,
        group_ids=groups,
        uploaded=True,
        processing_state=(build.get("attributes") or {}).get("processingState"),
        notified=notify,
    )


def publish_appstore(
    app_id: str,
    ipa_path: str,
    *,
    version: Optional[str] = None,
    build_number: Optional[str] = None,
    platform: str = "IOS",
    submit: bool = False,
    confirm: bool = False,
    wait: bool = False,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = 0,
) -> AppStorePublishResult:
    """Upload an IPA, attach it to an App Store version and optionally submit it."""

    if submit and not confirm:
        raise ValueError("--confirm is required with --submit")
    _validate_wait_options(poll_interval, timeout)
    platform_value = normalize_platform(platform)
    validate_ipa_path(ipa_path)
    version_value, build_value = resolve_bundle_info(ipa_path, version, build_number)

    deadline = Deadline(resolve_publish_timeout(timeout), "publish appstore")
    build = _upload_and_wait_for_build(
        app_id,
        ipa_path,
        version_value,
        build_value,
        platform_value,
        poll_interval=poll_interval,
        deadline=deadline,
        upload_timeout=timeout if timeout > 0 else None,
    )
    if wait:
        build = build_processing.wait_for_build_processing(
            str(build["id"]), poll_interval=poll_interval, deadline=deadline
        )

    app_store_version = find_or_create_app_store_version(
        app_id, version_value, platform_value, deadline=deadline
    )
    version_id = str(app_store_version.get("id"))
    asc_api.attach_build_to_version(version_id, str(build["id"]), deadline=deadline)
    logger.info("Attached build %s to App Store version %s", build["id"], version_id)

    result = AppStorePublishResult(build_id=str(build["id"]), version_id=version_id)
    if submit:
        submission = asc_api.create_app_store_version_submission(version_id, deadline=deadline)
        result.submission_id = str(submission.get("id"))
        result.submitted = True
        logger.info("Submitted App Store version %s for review", version_id)
    return result


def builds_upload(
    app_id: str,
    ipa_path: str,
    *,
    version: Optional[str] = None,
    build_number: Optional[str] = None,
    platform: str = "IOS",
    concurrency: int = 1,
    verify_checksum: bool = False,
    dry_run: bool = False,
    wait: bool = False,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    test_notes: Optional[str] = None,
    locale: Optional[str] = None,
) -> BuildUploadResult:
    """Reserve, upload, verify and commit an IPA.

    With ``wait`` or ``test_notes`` the build is then resolved and polled until
    processing finishes, and the notes are written for ``locale``.
    """

    validate_ipa_path(ipa_path)
    platform_value = normalize_platform(platform)

    if dry_run:
        if concurrency != 1:
            raise ValueError("--concurrency is not supported with --dry-run")
        if verify_checksum:
            raise ValueError("--checksum is not supported with --dry-run")
        if wait:
            raise ValueError("--wait is not supported with --dry-run")
    elif concurrency < 1:
        raise ValueError("--concurrency must be at least 1")

    notes_value = (test_notes or "").strip()
    locale_value = (locale or "").strip()
    if notes_value and not locale_value:
        raise ValueError("--locale is required with --test-notes")
    if locale_value and not notes_value:
        raise ValueError("--test-notes is required with --locale")
    if notes_value:
        if dry_run:
            raise ValueError("--test-notes is not supported with --dry-run")
        validate_locale(locale_value)
    needs_build = wait or bool(notes_value)
    if needs_build and poll_interval <= 0:
        raise ValueError("--poll-interval must be greater than 0")

    version_value, build_value = resolve_bundle_info(ipa_path, version, build_number)

    if needs_build:
        timeout_value = asc_api.resolve_timeout_with_default(BUILD_WAIT_DEFAULT_TIMEOUT)
    else:
        timeout_value = asc_api.resolve_timeout()
    deadline = Deadline(timeout_value, "builds upload")

    result = asc_upload.upload_build(
        app_id,
        ipa_path,
        version_value,
        build_value,
        platform_value,
        concurrency=concurrency,
        verify_checksum=verify_checksum,
        dry_run=dry_run,
        deadline=deadline,
        nest_upload_deadline=False,
    )
    if dry_run or not needs_build:
        return result

    build = build_processing.wait_for_build_by_number(
        app_id,
        version_value,
        build_value,
        platform_value,
        poll_interval=poll_interval,
        deadline=deadline,
    )
    build = build_processing.wait_for_build_processing(
        str(build["id"]), poll_interval=poll_interval, deadline=deadline
    )
    result.build_id = str(build["id"])
    result.processing_state = (build.get("attributes") or {}).get("processingState")

    if notes_value:
        upsert_beta_build_localization(result.build_id, locale_value, notes_value, deadline=deadline)
        logger.info("Updated %s test notes for build %s", locale_value, result.build_id)
    return result
