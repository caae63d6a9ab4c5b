"""Read bundle version metadata from an IPA archive."""

from __future__ import annotations

import logging
import os
import plistlib
import re
import zipfile
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_APP_INFO_PLIST_RE = re.compile(r"^Payload/[^/]+\.app/Info\.plist$")


@dataclass(frozen=True)
class BundleInfo:
    version: str
    build_number: str


def validate_ipa_path(ipa_path: str) -> int:
    """Check that ``ipa_path`` is an existing file and return its size."""
    try:
        info = os.stat(ipa_path)
    except OSError as exc:
        raise ValueError(f"failed to stat IPA: {exc}") from exc
    if os.path.isdir(ipa_path):
        raise ValueError("--ipa must be a file")
    return info.st_size


def extract_bundle_info(ipa_path: str) -> BundleInfo:
    try:
        archive = zipfile.ZipFile(ipa_path)
    except (OSError, zipfile.BadZipFile) as exc:
        raise ValueError(f"cannot open IPA {ipa_path!r}: {exc}") from exc

    with archive:
        names = [name for name in archive.namelist() if _APP_INFO_PLIST_RE.match(name)]
        if not names:
            raise ValueError("Info.plist not found in IPA Payload")
        if len(names) > 1:
            logger.debug("IPA contains several app bundles, using %s", sorted(names)[0])
        try:
            payload = plistlib.loads(archive.read(sorted(names)[0]))
        except (plistlib.InvalidFileException, ValueError) as exc:
            raise ValueError(f"cannot parse Info.plist: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError("Info.plist is not a dictionary")
    return BundleInfo(
        version=str(payload.get("CFBundleShortVersionString") or "").strip(),
        build_number=str(payload.get("CFBundleVersion") or "").strip(),
    )


def resolve_bundle_info(
    ipa_path: str, version: Optional[str] = None, build_number: Optional[str] = None
) -> Tuple[str, str]:
    """Return ``(version, build_number)``, filling missing values from the IPA."""

    version_value = (version or "").strip()
    build_value = (build_number or "").strip()

    if not version_value or not build_value:
        try:
            info = extract_bundle_info(ipa_path)
        except ValueError as exc:
            missing_flags = []
            if not version_value:
                missing_flags.append("--version")
            if not build_value:
                missing_flags.append("--build-number")
            raise ValueError(
                f"{' and '.join(missing_flags)} required (failed to extract from IPA: {exc})"
            ) from exc
        version_value = version_value or info.version
        build_value = build_value or info.build_number

    if not version_value or not build_value:
        missing_fields = []
        missing_flags = []
        if not version_value:
            missing_fields.append("CFBundleShortVersionString")
            missing_flags.append("--version")
        if not build_value:
            missing_fields.append("CFBundleVersion")
            missing_flags.append("--build-number")
        raise ValueError(
            f"Info.plist missing {' and '.join(missing_fields)}; provide {' and '.join(missing_flags)}"
        )
    return version_value, build_value
