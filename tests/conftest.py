from __future__ import annotations

import json
import plistlib
import threading
import zipfile
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

import asc_api

ISSUER_ID = "69a6de70-03db-47e3-e053-5b8c7c11a4d1"
KEY_ID = "ABC123DEF4"

_ENV_OVERRIDES = (
    "ASC_API_BASE_URL",
    "ASC_TIMEOUT",
    "ASC_TIMEOUT_SECONDS",
    "ASC_UPLOAD_TIMEOUT",
    "ASC_UPLOAD_TIMEOUT_SECONDS",
    "ASC_MAX_RETRIES",
    "ASC_BASE_DELAY",
    "ASC_MAX_DELAY",
    "ASC_PRIVATE_KEY_PATH",
    "ASC_APP_ID",
    "ASC_DEBUG",
    "ASC_LOG_DIR",
    "LOG_LEVEL",
)


@pytest.fixture(scope="session")
def ec_private_key_pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture(autouse=True)
def asc_env(monkeypatch, ec_private_key_pem):
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ASC_ISSUER_ID", ISSUER_ID)
    monkeypatch.setenv("ASC_KEY_ID", KEY_ID)
    monkeypatch.setenv("ASC_PRIVATE_KEY", ec_private_key_pem)
    asc_api._invalidate_token_cache()
    yield
    asc_api._invalidate_token_cache()


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        *,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = headers or {}

    def json(self) -> Any:
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


Responder = Union[FakeResponse, Exception, Callable[..., FakeResponse]]


class FakeHttp:
    """Routes ``requests.request`` calls to queued responses.

    Routes match on method and a URL substring. A route with several queued
    responses hands them out in order and repeats the last one.
    """

    def __init__(self) -> None:
        self.routes: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def add(self, method: str, url_part: str, *responses: Responder) -> "FakeHttp":
        self.routes.append(
            {"method": method.upper(), "url": url_part, "responses": list(responses), "hits": 0}
        )
        return self

    def calls_to(self, method: str, url_part: str) -> List[Dict[str, Any]]:
        return [
            call
            for call in self.calls
            if call["method"] == method.upper() and url_part in call["url"]
        ]

    def __call__(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        method = method.upper()
        with self._lock:
            self.calls.append({"method": method, "url": url, **kwargs})
            route = None
            for candidate in reversed(self.routes):
                if candidate["method"] == method and candidate["url"] in url:
                    route = candidate
                    break
            if route is None:
                raise AssertionError(f"unexpected request {method} {url}")
            responses = route["responses"]
            responder = responses[min(route["hits"], len(responses) - 1)]
            route["hits"] += 1

        if isinstance(responder, Exception):
            raise responder
        if callable(responder) and not isinstance(responder, FakeResponse):
            return responder(method, url, **kwargs)
        return responder


@pytest.fixture
def fake_http(monkeypatch) -> FakeHttp:
    fake = FakeHttp()
    monkeypatch.setattr(requests, "request", fake)
    return fake


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += max(seconds, 0)


@pytest.fixture
def fake_clock(monkeypatch) -> FakeClock:
    clock = FakeClock()
    monkeypatch.setattr(asc_api.time, "monotonic", clock.monotonic)
    monkeypatch.setattr(asc_api.time, "sleep", clock.sleep)
    return clock


@pytest.fixture
def no_sleep(monkeypatch) -> List[float]:
    sleeps: List[float] = []
    monkeypatch.setattr(asc_api.time, "sleep", sleeps.append)
    return sleeps


def build_ipa(path, version: Optional[str] = "1.2.3", build_number: Optional[str] = "42", app_name: str = "Demo"):
    info: Dict[str, Any] = {"CFBundleIdentifier": "com.example.demo"}
    if version is not None:
        info["CFBundleShortVersionString"] = version
    if build_number is not None:
        info["CFBundleVersion"] = build_number
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr(f"Payload/{app_name}.app/Info.plist", plistlib.dumps(info))
        archive.writestr(
            f"Payload/{app_name}.app/PlugIns/Widget.appex/Info.plist",
            plistlib.dumps({"CFBundleShortVersionString": "9.9.9", "CFBundleVersion": "999"}),
        )
        archive.writestr(f"Payload/{app_name}.app/{app_name}", b"\x00" * 4096)
    return path


@pytest.fixture
def ipa_file(tmp_path):
    return str(build_ipa(tmp_path / "Demo.ipa"))
