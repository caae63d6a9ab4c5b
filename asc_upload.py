"""Build upload pipeline: reservation, presigned operation executor, checksums and commit."""

from __future__ import annotations

import concurrent.futures
import hashlib
import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional, Union

import requests
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

import asc_api
from asc_api import (
    AppleStoreApiError,
    AppleStoreRetryableError,
    AppleStoreTimeoutError,
    Deadline,
    RetryOptions,
)

logger = logging.getLogger(__name__)

CHECKSUM_BLOCK_SIZE = 1024 * 1024
SUPPORTED_CHECKSUM_ALGORITHMS = ("MD5", "SHA_256")

UTI_IPA = "com.apple.ipa"
ASSET_TYPE_ASSET = "ASSET"


class UploadError(RuntimeError):
    """Raised when an upload operation or upload bookkeeping step fails."""


class ChecksumMismatchError(UploadError):
    """Raised when a local file hash differs from the server supplied checksum."""


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class HttpHeader(ApiModel):
    name: str = ""
    value: str = ""


class UploadOperation(ApiModel):
    method: str = "PUT"
    url: str = ""
    offset: int = 0
    length: int = 0
    request_headers: List[HttpHeader] = Field(default_factory=list)
    expiration: Optional[str] = None


class Checksum(ApiModel):
    hash: str = ""
    algorithm: str = "MD5"


class Checksums(ApiModel):
    file: Optional[Checksum] = None
    composite: Optional[Checksum] = None

    def is_empty(self) -> bool:
        return self.file is None and self.composite is None


class BuildUploadReservation(ApiModel):
    upload_id: str
    file_id: str
    file_name: str
    file_size: int
    operations: List[UploadOperation] = Field(default_factory=list)
    source_file_checksums: Optional[Checksums] = None


class BuildUploadResult(ApiModel):
    upload_id: str
    file_id: str
    file_name: str
    file_size: int
    operations: Optional[List[UploadOperation]] = None
    uploaded: Optional[bool] = None
    checksum_verified: Optional[bool] = None
    source_file_checksums: Optional[Checksums] = None
    build_id: Optional[str] = None
    processing_state: Optional[str] = None


# ---------------------------------------------------------------------------
# Reservation
# ---------------------------------------------------------------------------


def reserve_build_upload(
    app_id: str,
    file_path: str,
    version: str,
    build_number: str,
    platform: str,
    *,
    deadline: Optional[Deadline] = None,
) -> BuildUploadReservation:
    """Create the build upload record and its file reservation.

    The returned reservation carries the presigned upload operations and any
    checksums the server expects for the file.
    """

    file_name = os.path.basename(file_path)
    file_size = os.path.getsize(file_path)

    try:
        upload = asc_api.create_build_upload(
            app_id, version, build_number, platform, deadline=deadline
        )
    except AppleStoreApiError as exc:
        raise UploadError(f"failed to create upload record: {exc}") from exc
    upload_id = str(upload.get("id") or "")
    logger.info(
        "Created build upload %s for %s (%s build %s)", upload_id, app_id, version, build_number
    )

    try:
        upload_file = asc_api.create_build_upload_file(
            upload_id,
            file_name,
            file_size,
            uti=UTI_IPA,
            asset_type=ASSET_TYPE_ASSET,
            deadline=deadline,
        )
    except AppleStoreApiError as exc:
        raise UploadError(f"failed to create file reservation: {exc}") from exc

    attributes = upload_file.get("attributes") or {}
    checksums = attributes.get("sourceFileChecksums")
    reservation = BuildUploadReservation(
        upload_id=upload_id,
        file_id=str(upload_file.get("id") or ""),
        file_name=attributes.get("fileName") or file_name,
        file_size=int(attributes.get("fileSize") or file_size),
        operations=[
            UploadOperation.model_validate(entry)
            for entry in attributes.get("uploadOperations") or []
        ],
        source_file_checksums=Checksums.model_validate(checksums) if checksums else None,
    )
    logger.info(
        "Reserved build upload file %s (%d bytes, %d operation(s))",
        reservation.file_id,
        reservation.file_size,
        len(reservation.operations),
    )
    return reservation


# ---------------------------------------------------------------------------
# Operation executor
# ---------------------------------------------------------------------------


def _read_range(file_path: str, offset: int, length: int) -> bytes:
    with open(file_path, "rb") as fp:
        fp.seek(offset)
        chunk = fp.read(length)
    if len(chunk) != length:
        raise UploadError(
            f"short read from {file_path}: expected {length} bytes at offset {offset}, got {len(chunk)}"
        )
    return chunk


def _validate_operations(file_path: str, operations: List[UploadOperation]) -> None:
    if os.path.isdir(file_path):
        raise UploadError(f"path {file_path!r} is a directory")
    try:
        size = os.path.getsize(file_path)
    except OSError as exc:
        raise UploadError(f"cannot stat {file_path!r}: {exc}") from exc

    for index, operation in enumerate(operations):
        if not operation.url.strip():
            raise UploadError(f"upload operation {index} has empty URL")
        if operation.offset < 0:
            raise UploadError(f"upload operation {index} has negative offset")
        if operation.length <= 0:
            raise UploadError(f"upload operation {index} has non-positive length")
        if operation.offset + operation.length > size:
            raise UploadError(f"upload operation {index} exceeds file size")


def _execute_operation(
    file_path: str,
    index: int,
    operation: UploadOperation,
    options: RetryOptions,
    deadline: Optional[Deadline],
    cancelled: threading.Event,
) -> None:
    if cancelled.is_set():
        return

    method = operation.method.strip().upper() or "PUT"
    headers = {header.name: header.value for header in operation.request_headers if header.name}
    safe_url = asc_api.sanitize_url_for_log(operation.url)

    def _send() -> None:
        timeout = asc_api.resolve_upload_timeout()
        if deadline is not None:
            timeout = deadline.request_timeout(timeout)
        chunk = _read_range(file_path, operation.offset, operation.length)
        logger.debug(
            "Upload operation %d: %s %s bytes=%d-%d",
            index,
            method,
            safe_url,
            operation.offset,
            operation.offset + operation.length - 1,
        )
        try:
            response = requests.request(
                method, operation.url, headers=headers, data=chunk, timeout=timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            # requests messages carry the presigned query string
            raise type(exc)(f"{type(exc).__name__} during {method} {safe_url}") from None
        except requests.RequestException as exc:
            raise UploadError(f"{type(exc).__name__} during {method} {safe_url}") from None
        status = response.status_code
        if status in (429, 503):
            raise AppleStoreRetryableError(
                status,
                response.text.strip(),
                retry_after=asc_api.parse_retry_after(response.headers.get("Retry-After")),
            )
        if status < 200 or status >= 300:
            raise UploadError(f"upload request failed with status {status}")

    try:
        asc_api.with_retry(
            _send, options, deadline=deadline, description=f"upload operation {index}"
        )
    except AppleStoreTimeoutError:
        cancelled.set()
        raise
    except (UploadError, AppleStoreApiError, requests.RequestException, OSError) as exc:
        cancelled.set()
        raise UploadError(f"upload operation {index}: {exc}") from exc


def execute_upload_operations(
    file_path: str,
    operations: Iterable[Union[UploadOperation, Dict[str, Any]]],
    *,
    concurrency: int = 1,
    deadline: Optional[Deadline] = None,
    retry_options: Optional[RetryOptions] = None,
) -> None:
    """Send every presigned operation's byte range of ``file_path``.

    All operations are validated before anything is sent. Work runs on at most
    ``concurrency`` threads; the first failure stops operations that have not
    started yet and is re-raised.
    """

    ops = [
        op if isinstance(op, UploadOperation) else UploadOperation.model_validate(op)
        for op in operations
    ]
    if not ops:
        raise UploadError("no upload operations provided")
    if concurrency < 1:
        raise ValueError("upload concurrency must be at least 1")
    _validate_operations(file_path, ops)

    options = retry_options or asc_api.resolve_retry_options()
    workers = min(concurrency, len(ops))
    cancelled = threading.Event()
    logger.info(
        "Uploading %s in %d operation(s) with %d worker(s)",
        os.path.basename(file_path),
        len(ops),
        workers,
    )

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(
                _execute_operation, file_path, index, op, options, deadline, cancelled
            )
            for index, op in enumerate(ops)
        ]
        for future in concurrent.futures.as_completed(futures):
            error = future.exception()
            if error is None:
                continue
            cancelled.set()
            for pending in futures:
                pending.cancel()
            logger.error("Upload of %s failed: %s", os.path.basename(file_path), error)
            raise error

    logger.info("Uploaded %s", os.path.basename(file_path))


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------


def _new_hash(algorithm: str) -> Any:
    normalized = (algorithm or "").strip().upper()
    if normalized == "MD5":
        return hashlib.md5()
    if normalized == "SHA_256":
        return hashlib.sha256()
    raise ValueError(
        f"unsupported checksum algorithm: {algorithm} "
        f"(expected {', '.join(SUPPORTED_CHECKSUM_ALGORITHMS)})"
    )


def compute_file_checksum(file_path: str, algorithm: str) -> Checksum:
    digest = _new_hash(algorithm)
    try:
        with open(file_path, "rb") as fp:
            for block in iter(lambda: fp.read(CHECKSUM_BLOCK_SIZE), b""):
                digest.update(block)
    except OSError as exc:
        raise UploadError(f"compute checksum for {file_path!r}: {exc}") from exc
    return Checksum(hash=digest.hexdigest(), algorithm=algorithm.strip().upper())


def _verify_one(file_path: str, label: str, expected: Checksum) -> Checksum:
    expected_hash = expected.hash.strip()
    if not expected_hash:
        raise UploadError(f"{label} checksum hash is missing")
    actual = compute_file_checksum(file_path, expected.algorithm)
    if expected_hash.lower() != actual.hash.lower():
        raise ChecksumMismatchError(
            f"{label} checksum mismatch (expected {expected_hash}, got {actual.hash})"
        )
    return actual


def verify_source_file_checksums(
    file_path: str, expected: Optional[Checksums]
) -> Optional[Checksums]:
    """Compare the file against the server supplied checksums.

    Both the ``file`` and the ``composite`` checksum are computed over the
    whole file with the algorithm the server names. Returns the computed
    checksums, or ``None`` when ``expected`` is ``None``. A ``Checksums``
    object naming neither checksum is an error.
    """

    if expected is None:
        return None
    if expected.is_empty():
        raise UploadError("no checksum algorithms provided")

    computed = Checksums()
    if expected.file is not None:
        computed.file = _verify_one(file_path, "file", expected.file)
    if expected.composite is not None:
        computed.composite = _verify_one(file_path, "composite", expected.composite)
    return computed


# ---------------------------------------------------------------------------
# Commit and orchestration
# ---------------------------------------------------------------------------


def commit_build_upload_file(
    file_id: str,
    checksums: Optional[Checksums] = None,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    try:
        response = asc_api.update_build_upload_file(
            file_id,
            uploaded=True,
            source_file_checksums=checksums.to_api() if checksums else None,
            deadline=deadline,
        )
    except AppleStoreApiError as exc:
        raise UploadError(f"commit upload file: {exc}") from exc
    logger.info("Committed build upload file %s", file_id)
    return response


def _upload_deadline(parent: Optional[Deadline], upload_timeout: Optional[float]) -> Deadline:
    seconds = upload_timeout if upload_timeout else asc_api.resolve_upload_timeout()
    if parent is None:
        return Deadline(seconds, "upload")
    return parent.child(seconds, "upload")


def upload_build(
    app_id: str,
    file_path: str,
    version: str,
    build_number: str,
    platform: str = "IOS",
    *,
    concurrency: int = 1,
    verify_checksum: bool = False,
    dry_run: bool = False,
    deadline: Optional[Deadline] = None,
    upload_timeout: Optional[float] = None,
    retry_options: Optional[RetryOptions] = None,
    nest_upload_deadline: bool = True,
) -> BuildUploadResult:
    """Reserve, send, optionally verify and commit ``file_path``.

    ``deadline`` bounds the reservation. The transfer and the commit run under
    ``upload_timeout`` (``ASC_UPLOAD_TIMEOUT`` when unset), clipped to
    ``deadline`` only when ``nest_upload_deadline`` is true.
    """

    upload_parent = deadline if nest_upload_deadline else None
    reservation = reserve_build_upload(
        app_id, file_path, version, build_number, platform, deadline=deadline
    )
    result = BuildUploadResult(
        upload_id=reservation.upload_id,
        file_id=reservation.file_id,
        file_name=reservation.file_name,
        file_size=reservation.file_size,
        operations=reservation.operations,
    )
    if dry_run:
        return result

    if not reservation.operations:
        raise UploadError("no upload operations returned")

    execute_upload_operations(
        file_path,
        reservation.operations,
        concurrency=concurrency,
        deadline=_upload_deadline(upload_parent, upload_timeout),
        retry_options=retry_options,
    )

    verified: Optional[Checksums] = None
    if verify_checksum:
        expected = reservation.source_file_checksums
        if expected is None or expected.is_empty():
            logger.warning(
                "Checksum verification requested but the API provided no checksums; skipping"
            )
        else:
            verified = verify_source_file_checksums(file_path, expected)
            result.checksum_verified = True
            result.source_file_checksums = verified

    commit = commit_build_upload_file(
        reservation.file_id,
        verified,
        deadline=_upload_deadline(upload_parent, upload_timeout),
    )
    uploaded = (commit.get("attributes") or {}).get("uploaded")
    result.uploaded = uploaded if isinstance(uploaded, bool) else True
    result.operations = None
    return result
