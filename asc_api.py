"""App Store Connect API client: authentication, requests, retries and resources."""

from __future__ import annotations

import json
import logging
import os
import random
import re
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import jwt
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_API_BASE = "https://api.appstoreconnect.apple.com/v1"
DEFAULT_TIMEOUT = 30.0
DEFAULT_UPLOAD_TIMEOUT = 60.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0

_TOKEN_LIFETIME = 10 * 60
_TOKEN_LOCK = threading.Lock()
_TOKEN_CACHE: Optional[Tuple[str, int]] = None

_IDEMPOTENT_METHODS = {"GET", "HEAD"}


class AppleStoreConfigError(RuntimeError):
    """Raised when required App Store Connect configuration is missing."""


class AppleStorePermissionError(AppleStoreConfigError):
    """Raised when the App Store Connect API denies an operation."""


class AppleStoreTimeoutError(RuntimeError):
    """Raised when an operation runs past its deadline."""


def _normalize_error_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key in ("id", "status", "code", "title", "detail"):
        value = entry.get(key)
        if value is None:
            continue
        if isinstance(value, (str, int)):
            normalized[key] = str(value)
        else:
            normalized[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)
    return normalized


def _summarize_api_errors(errors: Iterable[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        normalized = _normalize_error_entry(entry)
        code = normalized.get("code") or normalized.get("status")
        detail = normalized.get("detail") or normalized.get("title")
        if code or detail:
            snippet = " ".join(filter(None, [f"[{code}]" if code else "", detail]))
            parts.append(snippet)
    return "; ".join(parts)


def _format_associated_errors(errors: Iterable[Dict[str, Any]]) -> str:
    grouped: Dict[str, List[str]] = {}
    for entry in errors:
        if not isinstance(entry, dict):
            continue
        meta = entry.get("meta") or {}
        associated = meta.get("associatedErrors") if isinstance(meta, dict) else None
        if not isinstance(associated, dict):
            continue
        for resource, items in associated.items():
            lines = grouped.setdefault(str(resource).strip() or "(unknown resource)", [])
            for item in items or []:
                if not isinstance(item, dict):
                    continue
                text = (item.get("detail") or item.get("code") or "").strip()
                if text:
                    lines.append(f"  - {text}")

    sections = [
        "\n".join([f"Associated errors for {resource}:"] + lines)
        for resource, lines in sorted(grouped.items())
        if lines
    ]
    return "\n\n".join(sections)


class AppleStoreApiError(RuntimeError):
    """Represents an error response returned by the App Store Connect API."""

    def __init__(
        self,
        status_code: int,
        body_text: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.status_code = status_code
        self.body_text = body_text
        self.errors = errors or []
        message = self._build_message()
        super().__init__(message)

    def _build_message(self) -> str:
        base = f"App Store Connect API error {self.status_code}"
        if self.errors:
            summary = _summarize_api_errors(self.errors)
            if summary:
                base = f"{base}: {summary}"
            associated = _format_associated_errors(self.errors)
            if associated:
                return f"{base}\n\n{associated}"
            return base
        if self.body_text:
            return f"{base}: {self.body_text}"
        return base

    def has_code(self, code: str) -> bool:
        return any(
            str(entry.get("code") or "").upper() == code.upper() for entry in self.errors
        )


class AppleStoreRetryableError(AppleStoreApiError):
    """A rate-limited or temporarily unavailable response that may be retried."""

    def __init__(
        self,
        status_code: int,
        body_text: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(status_code, body_text, errors)

    def _build_message(self) -> str:
        if self.status_code == 429:
            base = "rate limited by App Store Connect"
        elif self.status_code == 503:
            base = "App Store Connect service unavailable"
        else:
            base = "App Store Connect request failed"
        message = f"{base} (status {self.status_code})"
        summary = _summarize_api_errors(self.errors) if self.errors else ""
        if summary:
            message = f"{message}: {summary}"
        if self.retry_after:
            message = f"{message} (retry after {self.retry_after:g}s)"
        return message


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _env_value(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip()


def _require_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        raise AppleStoreConfigError(f"Environment variable '{name}' is not set.")
    value = value.strip()
    if not value:
        raise AppleStoreConfigError(f"Environment variable '{name}' is empty.")
    return value


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def parse_duration(value: Optional[str]) -> Optional[float]:
    """Parse ``"90"``, ``"90s"``, ``"5m"``, ``"1h30m"`` or ``"500ms"`` into seconds.

    Returns ``None`` for empty or unparsable values.
    """

    if value is None:
        return None
    text = value.strip().lower()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            return None
        amount = float(match.group(1))
        unit = match.group(2)
        if unit == "h":
            total += amount * 3600
        elif unit == "m":
            total += amount * 60
        elif unit == "s":
            total += amount
        else:
            total += amount / 1000
        position = match.end()
    if position != len(text) or position == 0:
        return None
    return total


def _resolve_timeout_from_env(default: float, duration_env: str, seconds_env: str) -> float:
    override = _env_value(duration_env)
    if override is not None:
        parsed = parse_duration(override)
        return parsed if parsed and parsed > 0 else default
    override = _env_value(seconds_env)
    if override is not None:
        try:
            parsed_seconds = int(override)
        except ValueError:
            return default
        return float(parsed_seconds) if parsed_seconds > 0 else default
    return default


def resolve_timeout_with_default(default: float) -> float:
    return _resolve_timeout_from_env(default, "ASC_TIMEOUT", "ASC_TIMEOUT_SECONDS")


def resolve_timeout() -> float:
    return resolve_timeout_with_default(DEFAULT_TIMEOUT)


def resolve_upload_timeout() -> float:
    return _resolve_timeout_from_env(
        DEFAULT_UPLOAD_TIMEOUT, "ASC_UPLOAD_TIMEOUT", "ASC_UPLOAD_TIMEOUT_SECONDS"
    )


def _api_base() -> str:
    return _env_value("ASC_API_BASE_URL") or DEFAULT_API_BASE


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY


def resolve_retry_options() -> RetryOptions:
    max_retries = DEFAULT_MAX_RETRIES
    base_delay = DEFAULT_BASE_DELAY
    max_delay = DEFAULT_MAX_DELAY

    override = _env_value("ASC_MAX_RETRIES")
    if override:
        try:
            parsed = int(override)
        except ValueError:
            parsed = -1
        if parsed >= 0:
            max_retries = parsed

    override = _env_value("ASC_BASE_DELAY")
    parsed_delay = parse_duration(override)
    if parsed_delay and parsed_delay > 0:
        base_delay = parsed_delay

    override = _env_value("ASC_MAX_DELAY")
    parsed_delay = parse_duration(override)
    if parsed_delay and parsed_delay > 0:
        max_delay = parsed_delay

    return RetryOptions(max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------


class Deadline:
    """A point on the monotonic clock after which work must stop.

    ``Deadline(None)`` never expires.
    """

    def __init__(self, seconds: Optional[float], label: str = "operation") -> None:
        self.label = label
        self.seconds = seconds
        self.expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        if self.expired():
            raise AppleStoreTimeoutError(f"{self.label} timed out after {self.seconds:g}s")

    def sleep(self, seconds: float) -> None:
        self.check()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            time.sleep(max(remaining, 0))
            self.check()
            raise AppleStoreTimeoutError(f"{self.label} timed out after {self.seconds:g}s")
        time.sleep(seconds)

    def child(self, seconds: Optional[float], label: str) -> "Deadline":
        """Return a deadline that expires at the earlier of ``seconds`` from now and this one."""
        child = Deadline(seconds, label)
        if self.expires_at is not None and (
            child.expires_at is None or self.expires_at < child.expires_at
        ):
            child.expires_at = self.expires_at
            child.seconds = self.seconds
            child.label = self.label
        return child

    def request_timeout(self, default: float) -> float:
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_KEY_ID_RE = re.compile(r"^[A-Z0-9]{10}$")


@dataclass(frozen=True)
class Credentials:
    issuer_id: str
    key_id: str
    private_key: str


def _require_uuid_env(name: str) -> str:
    value = _require_env(name)
    if not _UUID_RE.match(value):
        raise AppleStoreConfigError(f"Environment variable '{name}' must be an issuer ID (UUID).")
    return value


def _require_key_id_env(name: str) -> str:
    value = _require_env(name)
    if not _KEY_ID_RE.match(value.upper()):
        raise AppleStoreConfigError(
            f"Environment variable '{name}' must be a 10 character key ID."
        )
    return value.upper()


def _load_private_key() -> str:
    inline = _env_value("ASC_PRIVATE_KEY")
    if inline:
        contents = inline.replace("\\n", "\n")
    else:
        path = _require_env("ASC_PRIVATE_KEY_PATH")
        try:
            with open(os.path.expanduser(path), "r", encoding="utf-8") as fp:
                contents = fp.read()
        except OSError as exc:
            raise AppleStoreConfigError(f"Cannot read ASC_PRIVATE_KEY_PATH: {exc}") from exc

    contents = contents.lstrip("﻿").strip()
    if "-----BEGIN" not in contents or "PRIVATE KEY-----" not in contents:
        raise AppleStoreConfigError(
            "The App Store Connect private key is not a PEM file. "
            "Use the .p8 file downloaded from App Store Connect."
        )
    contents = contents + "\n"
    _validate_private_key(contents)
    return contents


def _validate_private_key(private_key: str) -> None:
    try:
        key = serialization.load_pem_private_key(private_key.encode("utf-8"), password=None)
    except (TypeError, ValueError) as exc:
        raise AppleStoreConfigError(
            "Cannot parse the App Store Connect private key. Check that the file is not damaged."
        ) from exc

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise AppleStoreConfigError("The App Store Connect private key must be an ES256 (ECDSA) key.")
    if key.curve.name not in {"secp256r1", "prime256v1"}:
        raise AppleStoreConfigError("The App Store Connect private key must use the P-256 curve.")


def load_credentials() -> Credentials:
    return Credentials(
        issuer_id=_require_uuid_env("ASC_ISSUER_ID"),
        key_id=_require_key_id_env("ASC_KEY_ID"),
        private_key=_load_private_key(),
    )


def _generate_token() -> str:
    global _TOKEN_CACHE

    now = int(time.time())
    with _TOKEN_LOCK:
        cached = _TOKEN_CACHE
        if cached and now < cached[1] - 30:
            return cached[0]

        credentials = load_credentials()
        issued_at = now - 10  # tolerate small clock skew
        expires_at = issued_at + _TOKEN_LIFETIME
        payload = {
            "iss": credentials.issuer_id,
            "iat": issued_at,
            "exp": expires_at,
            "aud": "appstoreconnect-v1",
        }
        try:
            token = jwt.encode(
                payload,
                credentials.private_key,
                algorithm="ES256",
                headers={"kid": credentials.key_id, "typ": "JWT"},
            )
        except jwt.PyJWTError as exc:
            raise AppleStoreConfigError(f"Failed to sign the App Store Connect token: {exc}") from exc

        _TOKEN_CACHE = (token, expires_at)
        logger.debug("Generated new App Store Connect token (expires at %d)", expires_at)
        return token


def generate_jwt(*, force_refresh: bool = False) -> str:
    """Return a JWT for the App Store Connect API.

    Parameters
    ----------
    force_refresh:
        When ``True`` the cached token (if any) is discarded so that a new token
        is generated.
    """

    if force_refresh:
        _invalidate_token_cache()
    return _generate_token()


def _invalidate_token_cache() -> None:
    global _TOKEN_CACHE
    with _TOKEN_LOCK:
        _TOKEN_CACHE = None


def _auth_headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {_generate_token()}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


# ---------------------------------------------------------------------------
# Requests and retries
# ---------------------------------------------------------------------------


_SENSITIVE_QUERY_KEYS = {"signature", "token", "x-amz-signature", "x-amz-credential", "sig"}


def sanitize_url_for_log(raw_url: str) -> str:
    """Redact credentials and presigned query values from a URL."""
    if not raw_url:
        return ""
    parsed = urlparse(raw_url)
    netloc = parsed.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parse_qs(parsed.query, keep_blank_values=True)
    if not query:
        return urlunparse(parsed._replace(netloc=netloc))

    redact_all = any(key.lower().startswith("x-amz-") for key in query)
    redacted = {
        key: (
            ["[REDACTED]"] * len(values)
            if redact_all or key.lower() in _SENSITIVE_QUERY_KEYS
            else values
        )
        for key, values in query.items()
    }
    return urlunparse(parsed._replace(netloc=netloc, query=urlencode(redacted, doseq=True)))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = int(value)
    except ValueError:
        pass
    else:
        return float(seconds) if seconds > 0 else None

    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if moment is None:
        return None
    delay = moment.timestamp() - time.time()
    return delay if delay > 0 else None


_TRANSIENT_EXCEPTIONS = (
    AppleStoreRetryableError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


def _backoff_delay(retry_count: int, options: RetryOptions) -> float:
    delay = options.base_delay * (2 ** min(retry_count, 30))
    if delay > options.max_delay or delay <= 0:
        delay = options.max_delay
    jitter = delay * 0.25 * (2 * random.random() - 1)
    result = delay + jitter
    return result if result > 0 else delay / 2


def with_retry(
    fn: Callable[[], T],
    options: Optional[RetryOptions] = None,
    *,
    deadline: Optional[Deadline] = None,
    description: str = "request",
) -> T:
    """Call ``fn`` and retry it on transient failures.

    Rate limits (429), service unavailability (503), timeouts and connection
    errors are retried with exponential backoff and jitter. A server supplied
    ``Retry-After`` wins over the computed delay. Anything else propagates
    immediately.
    """

    opts = options or resolve_retry_options()
    retry_count = 0
    while True:
        try:
            return fn()
        except _TRANSIENT_EXCEPTIONS as exc:
            if retry_count >= opts.max_retries:
                if opts.max_retries:
                    logger.error(
                        "%s failed after %d attempts, giving up: %s",
                        description,
                        retry_count + 1,
                        exc,
                    )
                raise

            delay = getattr(exc, "retry_after", None) or _backoff_delay(retry_count, opts)
            retry_count += 1
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                description,
                retry_count,
                opts.max_retries + 1,
                delay,
                exc,
            )
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None and remaining < delay:
                    raise AppleStoreTimeoutError(
                        f"{deadline.label} timed out while waiting to retry {description}"
                    ) from exc
            time.sleep(delay)


def _build_url(path: str) -> str:
    if path.startswith("http://") or path.startswith("https://"):
        return path
    if not path.startswith("/"):
        path = "/" + path
    base_url = _api_base().rstrip("/")

    # versioned paths replace the version suffix of the base URL
    for prefix in ("/v1/", "/v2/", "/v3/"):
        if path.startswith(prefix) and re.search(r"/v\d+$", base_url):
            base_url = re.sub(r"/v\d+$", "", base_url)
            break
    return base_url + path


def _raise_for_response(response: requests.Response, url: str) -> None:
    body_text = response.text.strip()
    errors: List[Dict[str, Any]] = []
    if body_text:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            raw_errors = payload.get("errors")
            if isinstance(raw_errors, list):
                errors = [entry for entry in raw_errors if isinstance(entry, dict)]

    summary = _summarize_api_errors(errors) if errors else body_text
    logger.debug(
        "App Store Connect API error %s: %s | URL: %s",
        response.status_code,
        summary or "No response body",
        sanitize_url_for_log(url),
    )

    status = response.status_code
    if status in (429, 503):
        raise AppleStoreRetryableError(
            status,
            body_text,
            errors,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 401:
        _invalidate_token_cache()
        raise AppleStoreConfigError(_format_authorization_error(errors, body_text))
    if status == 403:
        raise AppleStorePermissionError(str(AppleStoreApiError(status, body_text, errors)))
    raise AppleStoreApiError(status, body_text, errors)


def _format_authorization_error(errors: List[Dict[str, Any]], body_text: str) -> str:
    guidance = (
        "App Store Connect authentication failed. Check the issuer ID, key ID and "
        "private key, and make sure the system clock is correct."
    )
    if errors:
        summary = _summarize_api_errors(errors[:1])
        if summary:
            return f"{guidance} {summary}"
    if body_text:
        return f"{guidance} Response: {body_text}"
    return guidance


def _send(
    method: str,
    url: str,
    *,
    params: Optional[Dict[str, Any]],
    json_body: Optional[Dict[str, Any]],
    deadline: Optional[Deadline],
) -> Dict[str, Any]:
    timeout = resolve_timeout()
    if deadline is not None:
        timeout = deadline.request_timeout(timeout)

    start = time.monotonic()
    response = requests.request(
        method,
        url,
        headers=_auth_headers(),
        params=params,
        json=json_body,
        timeout=timeout,
    )
    logger.debug(
        "App Store Connect API response %s %s -> %s (%.2fs)",
        method,
        sanitize_url_for_log(url),
        response.status_code,
        time.monotonic() - start,
    )
    if response.status_code >= 400:
        _raise_for_response(response, url)
    if response.status_code == 204 or not response.content:
        return {}
    return response.json()


def request(
    method: str,
    path: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json: Optional[Dict[str, Any]] = None,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    method = method.upper()
    url = _build_url(path)
    logger.debug("App Store Connect API request %s %s", method, sanitize_url_for_log(url))
    if logger.isEnabledFor(logging.DEBUG) and params:
        logger.debug("  Params: %s", params)

    def _call() -> Dict[str, Any]:
        return _send(method, url, params=params, json_body=json, deadline=deadline)

    if method in _IDEMPOTENT_METHODS:
        return with_retry(_call, deadline=deadline, description=f"{method} {path}")
    return _call()


def _extract_cursor(next_link: Optional[str]) -> Optional[str]:
    if not next_link:
        return None

    parsed = urlparse(next_link)
    query = parse_qs(parsed.query or "")
    for key in ("page[cursor]", "cursor"):
        values = query.get(key)
        if values:
            return values[0]
    return None


def fetch_all_pages(
    path: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    deadline: Optional[Deadline] = None,
) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    seen: set = set()

    while True:
        page_params = dict(params or {})
        if cursor:
            page_params["cursor"] = cursor

        response = request("GET", path, params=page_params or None, deadline=deadline)
        entries.extend(response.get("data", []) or [])

        cursor = _extract_cursor((response.get("links") or {}).get("next"))
        if not cursor:
            break
        if cursor in seen:
            raise RuntimeError(f"Detected repeated pagination cursor for {path}")
        seen.add(cursor)

    return entries


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


def _relationship(resource_type: str, resource_id: str) -> Dict[str, Any]:
    return {"data": {"type": resource_type, "id": resource_id}}


def _data(response: Dict[str, Any]) -> Dict[str, Any]:
    data = response.get("data")
    if not isinstance(data, dict):
        raise RuntimeError("App Store Connect returned a response without a data object.")
    return data


def get_build(build_id: str, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
    return _data(request("GET", f"/v1/builds/{build_id}", deadline=deadline))


def list_builds(
    app_id: str,
    *,
    pre_release_version_id: Optional[str] = None,
    sort: Optional[str] = None,
    limit: int = 200,
    deadline: Optional[Deadline] = None,
) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"filter[app]": app_id, "limit": limit}
    if pre_release_version_id:
        params["filter[preReleaseVersion]"] = pre_release_version_id
    if sort:
        params["sort"] = sort
    response = request("GET", "/v1/builds", params=params, deadline=deadline)
    return response.get("data", []) or []


def list_pre_release_versions(
    app_id: str,
    version: str,
    platform: str,
    *,
    limit: int = 10,
    deadline: Optional[Deadline] = None,
) -> List[Dict[str, Any]]:
    params = {
        "filter[app]": app_id,
        "filter[version]": version,
        "filter[platform]": platform,
        "limit": limit,
    }
    response = request("GET", "/v1/preReleaseVersions", params=params, deadline=deadline)
    return response.get("data", []) or []


def create_build_upload(
    app_id: str,
    version: str,
    build_number: str,
    platform: str,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "buildUploads",
            "attributes": {
                "cfBundleShortVersionString": version,
                "cfBundleVersion": build_number,
                "platform": platform,
            },
            "relationships": {"app": _relationship("apps", app_id)},
        }
    }
    return _data(request("POST", "/v1/buildUploads", json=payload, deadline=deadline))


def create_build_upload_file(
    upload_id: str,
    file_name: str,
    file_size: int,
    *,
    uti: str = "com.apple.ipa",
    asset_type: str = "ASSET",
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "buildUploadFiles",
            "attributes": {
                "fileName": file_name,
                "fileSize": file_size,
                "uti": uti,
                "assetType": asset_type,
            },
            "relationships": {"buildUpload": _relationship("buildUploads", upload_id)},
        }
    }
    return _data(request("POST", "/v1/buildUploadFiles", json=payload, deadline=deadline))


def update_build_upload_file(
    file_id: str,
    *,
    uploaded: bool,
    source_file_checksums: Optional[Dict[str, Any]] = None,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {"uploaded": uploaded}
    if source_file_checksums:
        attributes["sourceFileChecksums"] = source_file_checksums
    payload = {"data": {"type": "buildUploadFiles", "id": file_id, "attributes": attributes}}
    response = request("PATCH", f"/v1/buildUploadFiles/{file_id}", json=payload, deadline=deadline)
    return response.get("data") or {}


def add_beta_groups_to_build(
    build_id: str,
    group_ids: List[str],
    *,
    notify: bool = False,
    deadline: Optional[Deadline] = None,
) -> None:
    payload = {"data": [{"type": "betaGroups", "id": group_id} for group_id in group_ids]}
    path = f"/v1/builds/{build_id}/relationships/betaGroups"
    if notify:
        path += "?notify=true"
    request("POST", path, json=payload, deadline=deadline)


def list_app_store_versions(
    app_id: str,
    version: str,
    platform: str,
    *,
    limit: int = 10,
    deadline: Optional[Deadline] = None,
) -> List[Dict[str, Any]]:
    params = {
        "filter[versionString]": version,
        "filter[platform]": platform,
        "limit": limit,
    }
    response = request(
        "GET", f"/v1/apps/{app_id}/appStoreVersions", params=params, deadline=deadline
    )
    return response.get("data", []) or []


def create_app_store_version(
    app_id: str,
    version: str,
    platform: str,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appStoreVersions",
            "attributes": {"platform": platform, "versionString": version},
            "relationships": {"app": _relationship("apps", app_id)},
        }
    }
    return _data(request("POST", "/v1/appStoreVersions", json=payload, deadline=deadline))


def attach_build_to_version(
    version_id: str, build_id: str, *, deadline: Optional[Deadline] = None
) -> None:
    payload = {"data": {"type": "builds", "id": build_id}}
    request(
        "PATCH",
        f"/v1/appStoreVersions/{version_id}/relationships/build",
        json=payload,
        deadline=deadline,
    )


def create_app_store_version_submission(
    version_id: str, *, deadline: Optional[Deadline] = None
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appStoreVersionSubmissions",
            "relationships": {"appStoreVersion": _relationship("appStoreVersions", version_id)},
        }
    }
    return _data(
        request("POST", "/v1/appStoreVersionSubmissions", json=payload, deadline=deadline)
    )


def list_beta_build_localizations(
    build_id: str, locale: str, *, deadline: Optional[Deadline] = None
) -> List[Dict[str, Any]]:
    params = {"filter[build]": build_id, "filter[locale]": locale, "limit": 200}
    response = request("GET", "/v1/betaBuildLocalizations", params=params, deadline=deadline)
    return response.get("data", []) or []


def create_beta_build_localization(
    build_id: str, locale: str, whats_new: str, *, deadline: Optional[Deadline] = None
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "betaBuildLocalizations",
            "attributes": {"locale": locale, "whatsNew": whats_new},
            "relationships": {"build": _relationship("builds", build_id)},
        }
    }
    return _data(request("POST", "/v1/betaBuildLocalizations", json=payload, deadline=deadline))


def update_beta_build_localization(
    localization_id: str, whats_new: str, *, deadline: Optional[Deadline] = None
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "betaBuildLocalizations",
            "id": localization_id,
            "attributes": {"whatsNew": whats_new},
        }
    }
    return _data(
        request(
            "PATCH",
            f"/v1/betaBuildLocalizations/{localization_id}",
            json=payload,
            deadline=deadline,
        )
    )


def create_encryption_declaration_document(
    declaration_id: str,
    file_name: str,
    file_size: int,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appEncryptionDeclarationDocuments",
            "attributes": {"fileName": file_name, "fileSize": file_size},
            "relationships": {
                "appEncryptionDeclaration": _relationship(
                    "appEncryptionDeclarations", declaration_id
                )
            },
        }
    }
    return _data(
        request("POST", "/v1/appEncryptionDeclarationDocuments", json=payload, deadline=deadline)
    )


def update_encryption_declaration_document(
    document_id: str,
    *,
    uploaded: bool,
    source_file_checksum: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {"uploaded": uploaded}
    if source_file_checksum:
        attributes["sourceFileChecksum"] = source_file_checksum
    payload = {
        "data": {
            "type": "appEncryptionDeclarationDocuments",
            "id": document_id,
            "attributes": attributes,
        }
    }
    return _data(
        request(
            "PATCH",
            f"/v1/appEncryptionDeclarationDocuments/{document_id}",
            json=payload,
            deadline=deadline,
        )
    )


def list_app_screenshot_sets(
    localization_id: str, *, deadline: Optional[Deadline] = None
) -> List[Dict[str, Any]]:
    return fetch_all_pages(
        f"/v1/appStoreVersionLocalizations/{localization_id}/appScreenshotSets",
        params={"limit": 200},
        deadline=deadline,
    )


def create_app_screenshot_set(
    localization_id: str, display_type: str, *, deadline: Optional[Deadline] = None
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appScreenshotSets",
            "attributes": {"screenshotDisplayType": display_type},
            "relationships": {
                "appStoreVersionLocalization": _relationship(
                    "appStoreVersionLocalizations", localization_id
                )
            },
        }
    }
    return _data(request("POST", "/v1/appScreenshotSets", json=payload, deadline=deadline))


def create_app_screenshot(
    set_id: str, file_name: str, file_size: int, *, deadline: Optional[Deadline] = None
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appScreenshots",
            "attributes": {"fileName": file_name, "fileSize": file_size},
            "relationships": {"appScreenshotSet": _relationship("appScreenshotSets", set_id)},
        }
    }
    return _data(request("POST", "/v1/appScreenshots", json=payload, deadline=deadline))


def update_app_screenshot(
    screenshot_id: str,
    *,
    uploaded: bool,
    source_file_checksum: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {"uploaded": uploaded}
    if source_file_checksum:
        attributes["sourceFileChecksum"] = source_file_checksum
    payload = {"data": {"type": "appScreenshots", "id": screenshot_id, "attributes": attributes}}
    return _data(
        request("PATCH", f"/v1/appScreenshots/{screenshot_id}", json=payload, deadline=deadline)
    )


def get_app_screenshot(screenshot_id: str, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
    return _data(request("GET", f"/v1/appScreenshots/{screenshot_id}", deadline=deadline))


def list_app_preview_sets(
    localization_id: str, *, deadline: Optional[Deadline] = None
) -> List[Dict[str, Any]]:
    return fetch_all_pages(
        f"/v1/appStoreVersionLocalizations/{localization_id}/appPreviewSets",
        params={"limit": 200},
        deadline=deadline,
    )


def create_app_preview_set(
    localization_id: str, preview_type: str, *, deadline: Optional[Deadline] = None
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appPreviewSets",
            "attributes": {"previewType": preview_type},
            "relationships": {
                "appStoreVersionLocalization": _relationship(
                    "appStoreVersionLocalizations", localization_id
                )
            },
        }
    }
    return _data(request("POST", "/v1/appPreviewSets", json=payload, deadline=deadline))


def create_app_preview(
    set_id: str,
    file_name: str,
    file_size: int,
    mime_type: str,
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    payload = {
        "data": {
            "type": "appPreviews",
            "attributes": {"fileName": file_name, "fileSize": file_size, "mimeType": mime_type},
            "relationships": {"appPreviewSet": _relationship("appPreviewSets", set_id)},
        }
    }
    return _data(request("POST", "/v1/appPreviews", json=payload, deadline=deadline))


def update_app_preview(
    preview_id: str,
    *,
    uploaded: bool,
    source_file_checksum: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {"uploaded": uploaded}
    if source_file_checksum:
        attributes["sourceFileChecksum"] = source_file_checksum
    payload = {"data": {"type": "appPreviews", "id": preview_id, "attributes": attributes}}
    return _data(
        request("PATCH", f"/v1/appPreviews/{preview_id}", json=payload, deadline=deadline)
    )


def get_app_preview(preview_id: str, *, deadline: Optional[Deadline] = None) -> Dict[str, Any]:
    return _data(request("GET", f"/v1/appPreviews/{preview_id}", deadline=deadline))
