"""Polling helpers that wait for uploaded builds and assets to finish processing."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import asc_api
from asc_api import AppleStoreTimeoutError, Deadline

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_PUBLISH_TIMEOUT = 30 * 60.0
ASSET_POLL_INTERVAL = 2.0

PROCESSING_STATE_PROCESSING = "PROCESSING"
PROCESSING_STATE_VALID = "VALID"
PROCESSING_STATE_INVALID = "INVALID"
PROCESSING_STATE_FAILED = "FAILED"

_FAILED_STATES = {PROCESSING_STATE_INVALID, PROCESSING_STATE_FAILED}


class BuildProcessingError(RuntimeError):
    """Raised when a build or asset reaches a failed terminal state."""

    def __init__(self, message: str, state: str = "") -> None:
        super().__init__(message)
        self.state = state


def _processing_state(build: Dict[str, Any]) -> str:
    attributes = build.get("attributes") or {}
    return str(attributes.get("processingState") or "").strip().upper()


def find_build_by_number(
    app_id: str,
    version: str,
    build_number: str,
    platform: str,
    *,
    deadline: Optional[Deadline] = None,
) -> Optional[Dict[str, Any]]:
    """Return the build resource for ``version`` / ``build_number`` or ``None``."""

    build_number = build_number.strip()
    versions = asc_api.list_pre_release_versions(
        app_id, version, platform, limit=10, deadline=deadline
    )
    if not versions:
        return None
    if len(versions) > 1:
        raise RuntimeError(
            f"multiple pre-release versions found for version {version!r} and platform {platform!r}"
        )

    builds = asc_api.list_builds(
        app_id,
        pre_release_version_id=str(versions[0].get("id")),
        sort="-uploadedDate",
        limit=200,
        deadline=deadline,
    )
    for build in builds:
        attributes = build.get("attributes") or {}
        if str(attributes.get("version") or "").strip() == build_number:
            return build
    return None


def wait_for_build_by_number(
    app_id: str,
    version: str,
    build_number: str,
    platform: str,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    if poll_interval <= 0:
        poll_interval = DEFAULT_POLL_INTERVAL
    if not build_number.strip():
        raise ValueError("build number is required to resolve build")

    deadline = deadline or Deadline(None)
    attempt = 0
    while True:
        attempt += 1
        build = find_build_by_number(
            app_id, version, build_number, platform, deadline=deadline
        )
        if build is not None:
            logger.info(
                "Build %s (%s build %s) is visible after %d check(s)",
                build.get("id"),
                version,
                build_number,
                attempt,
            )
            return build

        logger.info(
            "Build %s (%s) not visible yet, checking again in %gs",
            build_number,
            version,
            poll_interval,
        )
        deadline.sleep(poll_interval)


def wait_for_build_processing(
    build_id: str,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    """Poll ``GET /v1/builds/{id}`` until processing reaches a terminal state.

    ``VALID`` returns the build. ``INVALID`` and ``FAILED`` raise
    :class:`BuildProcessingError`. An expired deadline raises
    :class:`AppleStoreTimeoutError`.
    """

    build_id = build_id.strip()
    if not build_id:
        raise ValueError("build ID is required")
    if poll_interval <= 0:
        poll_interval = DEFAULT_POLL_INTERVAL

    deadline = deadline or Deadline(None)
    last_state = ""
    while True:
        build = asc_api.get_build(build_id, deadline=deadline)
        state = _processing_state(build)
        if state != last_state:
            logger.info("Build %s processing state: %s", build_id, state or "(unknown)")
            last_state = state

        if state == PROCESSING_STATE_VALID:
            return build
        if state in _FAILED_STATES:
            raise BuildProcessingError(f"build processing failed: {state}", state)

        try:
            deadline.sleep(poll_interval)
        except AppleStoreTimeoutError as exc:
            raise AppleStoreTimeoutError(
                f"timed out waiting for build {build_id} to finish processing "
                f"(last state {last_state or 'unknown'})"
            ) from exc


def _format_asset_errors(errors: List[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for item in errors or []:
        if not isinstance(item, dict):
            continue
        code = str(item.get("code") or "").strip()
        message = str(item.get("message") or item.get("description") or "").strip()
        if code and message:
            parts.append(f"{code}: {message}")
        elif message or code:
            parts.append(message or code)
    return "; ".join(parts) or "unknown error"


def wait_for_asset_delivery(
    fetch: Callable[[str], Dict[str, Any]],
    asset_id: str,
    *,
    poll_interval: float = ASSET_POLL_INTERVAL,
    deadline: Optional[Deadline] = None,
) -> str:
    """Poll an uploaded asset until its ``assetDeliveryState`` is terminal.

    ``fetch`` returns the asset resource for ``asset_id``.
    """

    deadline = deadline or Deadline(None)
    last_state = ""
    while True:
        asset = fetch(asset_id)
        delivery = (asset.get("attributes") or {}).get("assetDeliveryState") or {}
        state = str(delivery.get("state") or "")
        if state:
            last_state = state
        if state.upper() == "COMPLETE":
            return state
        if state.upper() == "FAILED":
            raise BuildProcessingError(
                f"asset {asset_id} delivery failed: {_format_asset_errors(delivery.get('errors') or [])}",
                state,
            )

        try:
            deadline.sleep(poll_interval)
        except AppleStoreTimeoutError as exc:
            raise AppleStoreTimeoutError(
                f"timed out waiting for asset {asset_id} delivery (last state {last_state or 'unknown'})"
            ) from exc
