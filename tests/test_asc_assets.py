from __future__ import annotations

import hashlib
import os

import pytest

import asc_assets
from asc_upload import UploadError
from build_processing import BuildProcessingError
from conftest import FakeResponse


def _upload_resource(resource_id, size, url):
    return {
        "data": {
            "id": resource_id,
            "attributes": {
                "uploadOperations": [{"method": "PUT", "url": url, "offset": 0, "length": size}],
            },
        }
    }


def _delivery(state, errors=None):
    delivery = {"state": state}
    if errors:
        delivery["errors"] = errors
    return FakeResponse(200, {"data": {"id": "shot", "attributes": {"assetDeliveryState": delivery}}})


class TestEncryptionDocumentUpload:
    def test_uploads_and_commits_with_md5(self, fake_http, tmp_path):
        content = b"%PDF-1.4 export compliance"
        document = tmp_path / "compliance.pdf"
        document.write_bytes(content)
        fake_http.add(
            "POST",
            "/v1/appEncryptionDeclarationDocuments",
            FakeResponse(201, _upload_resource("doc-1", len(content), "https://upload.example.test/doc")),
        )
        fake_http.add("PUT", "upload.example.test", FakeResponse(200, text=""))
        fake_http.add(
            "PATCH",
            "/v1/appEncryptionDeclarationDocuments/doc-1",
            FakeResponse(200, {"data": {"id": "doc-1", "attributes": {"uploaded": True}}}),
        )

        committed = asc_assets.upload_encryption_document("decl-1", str(document))

        assert committed["id"] == "doc-1"
        create = fake_http.calls_to("POST", "/v1/appEncryptionDeclarationDocuments")[0]["json"]["data"]
        assert create["attributes"] == {"fileName": "compliance.pdf", "fileSize": len(content)}
        assert create["relationships"]["appEncryptionDeclaration"]["data"]["id"] == "decl-1"
        assert fake_http.calls_to("PUT", "upload.example.test")[0]["data"] == content
        commit = fake_http.calls_to("PATCH", "/doc-1")[0]["json"]["data"]
        assert commit["attributes"] == {
            "uploaded": True,
            "sourceFileChecksum": hashlib.md5(content).hexdigest(),
        }

    def test_missing_operations(self, fake_http, tmp_path):
        document = tmp_path / "compliance.pdf"
        document.write_bytes(b"data")
        fake_http.add(
            "POST",
            "/v1/appEncryptionDeclarationDocuments",
            FakeResponse(201, {"data": {"id": "doc-1", "attributes": {}}}),
        )

        with pytest.raises(UploadError, match="no upload operations"):
            asc_assets.upload_encryption_document("decl-1", str(document))
        assert fake_http.calls_to("PATCH", "/doc-1") == []

    def test_rejects_unusable_paths(self, fake_http, tmp_path):
        target = tmp_path / "real.pdf"
        target.write_bytes(b"data")
        link = tmp_path / "link.pdf"
        os.symlink(target, link)
        empty = tmp_path / "empty.pdf"
        empty.write_bytes(b"")

        with pytest.raises(ValueError, match="symlink"):
            asc_assets.upload_encryption_document("decl-1", str(link))
        with pytest.raises(ValueError, match="is a directory"):
            asc_assets.upload_encryption_document("decl-1", str(tmp_path))
        with pytest.raises(ValueError, match="greater than 0"):
            asc_assets.upload_encryption_document("decl-1", str(empty))
        with pytest.raises(ValueError, match="cannot stat"):
            asc_assets.upload_encryption_document("decl-1", str(tmp_path / "missing.pdf"))
        with pytest.raises(ValueError, match="--declaration is required"):
            asc_assets.upload_encryption_document(" ", str(target))
        assert fake_http.calls == []


@pytest.mark.parametrize(
    "value, expected",
    [
        ("iphone_65", "APP_IPHONE_65"),
        (" APP_IPAD_PRO_3GEN_129 ", "APP_IPAD_PRO_3GEN_129"),
        ("IMESSAGE_APP_IPHONE_67", "IMESSAGE_APP_IPHONE_67"),
        ("desktop", "APP_DESKTOP"),
    ],
)
def test_normalize_screenshot_display_type(value, expected):
    assert asc_assets.normalize_screenshot_display_type(value) == expected


def test_normalize_screenshot_display_type_rejects_unknown():
    with pytest.raises(ValueError, match="unsupported screenshot display type 'APP_TOASTER'"):
        asc_assets.normalize_screenshot_display_type("toaster")
    with pytest.raises(ValueError, match="device type is required"):
        asc_assets.normalize_screenshot_display_type("")


class TestCollectAssetFiles:
    def test_directory_is_sorted_and_skips_subdirectories(self, tmp_path):
        (tmp_path / "b.png").write_bytes(b"png")
        (tmp_path / "a.JPG").write_bytes(b"jpg")
        (tmp_path / "nested").mkdir()

        files = asc_assets.collect_asset_files(str(tmp_path))

        assert [os.path.basename(path) for path in files] == ["a.JPG", "b.png"]

    def test_single_file(self, tmp_path):
        shot = tmp_path / "shot.jpeg"
        shot.write_bytes(b"jpeg")

        assert asc_assets.collect_asset_files(str(shot)) == [str(shot)]

    def test_rejects_non_images_and_empty_directories(self, tmp_path):
        (tmp_path / "notes.txt").write_text("hello")
        with pytest.raises(ValueError, match="unsupported screenshot file"):
            asc_assets.collect_asset_files(str(tmp_path))

        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(ValueError, match="no files found"):
            asc_assets.collect_asset_files(str(empty))


class TestUploadScreenshots:
    def _add_upload_routes(self, fake_http, size):
        fake_http.add(
            "POST",
            "/v1/appScreenshots",
            FakeResponse(201, _upload_resource("shot-1", size, "https://upload.example.test/1")),
            FakeResponse(201, _upload_resource("shot-2", size, "https://upload.example.test/2")),
        )
        fake_http.add("PUT", "upload.example.test", FakeResponse(200, text=""))
        fake_http.add("PATCH", "/v1/appScreenshots/", FakeResponse(200, {"data": {"id": "shot"}}))

    def test_uploads_into_existing_set(self, fake_http, fake_clock, tmp_path):
        (tmp_path / "02.png").write_bytes(b"second!!")
        (tmp_path / "01.png").write_bytes(b"first!!!")
        fake_http.add(
            "GET",
            "/v1/appStoreVersionLocalizations/loc-1/appScreenshotSets",
            FakeResponse(
                200,
                {
                    "data": [
                        {"id": "set-0", "attributes": {"screenshotDisplayType": "APP_IPHONE_67"}},
                        {"id": "set-1", "attributes": {"screenshotDisplayType": "APP_IPHONE_65"}},
                    ]
                },
            ),
        )
        self._add_upload_routes(fake_http, 8)
        fake_http.add("GET", "/v1/appScreenshots/", _delivery("UPLOAD_COMPLETE"), _delivery("COMPLETE"))

        result = asc_assets.upload_screenshots("loc-1", str(tmp_path), "IPHONE_65")

        output = result.to_api()
        assert output["setId"] == "set-1"
        assert output["displayType"] == "APP_IPHONE_65"
        assert [item["fileName"] for item in output["results"]] == ["01.png", "02.png"]
        assert [item["assetId"] for item in output["results"]] == ["shot-1", "shot-2"]
        assert [item["state"] for item in output["results"]] == ["COMPLETE", "COMPLETE"]
        assert fake_http.calls_to("POST", "/v1/appScreenshotSets") == []

        commit = fake_http.calls_to("PATCH", "/v1/appScreenshots/shot-1")[0]["json"]["data"]
        assert commit["attributes"]["sourceFileChecksum"] == hashlib.md5(b"first!!!").hexdigest()
        create = fake_http.calls_to("POST", "/v1/appScreenshots")[0]["json"]["data"]
        assert create["relationships"]["appScreenshotSet"]["data"]["id"] == "set-1"

    def test_creates_missing_set(self, fake_http, fake_clock, tmp_path):
        shot = tmp_path / "home.png"
        shot.write_bytes(b"12345678")
        fake_http.add(
            "GET",
            "/v1/appStoreVersionLocalizations/loc-1/appScreenshotSets",
            FakeResponse(200, {"data": []}),
        )
        fake_http.add(
            "POST",
            "/v1/appScreenshotSets",
            FakeResponse(
                201,
                {"data": {"id": "set-new", "attributes": {"screenshotDisplayType": "APP_IPAD_PRO_129"}}},
            ),
        )
        self._add_upload_routes(fake_http, 8)
        fake_http.add("GET", "/v1/appScreenshots/", _delivery("COMPLETE"))

        result = asc_assets.upload_screenshots("loc-1", str(shot), "ipad_pro_129")

        assert result.set_id == "set-new"
        body = fake_http.calls_to("POST", "/v1/appScreenshotSets")[0]["json"]["data"]
        assert body["attributes"] == {"screenshotDisplayType": "APP_IPAD_PRO_129"}
        assert body["relationships"]["appStoreVersionLocalization"]["data"]["id"] == "loc-1"

    def test_delivery_failure(self, fake_http, fake_clock, tmp_path):
        shot = tmp_path / "home.png"
        shot.write_bytes(b"12345678")
        fake_http.add(
            "GET",
            "/v1/appStoreVersionLocalizations/loc-1/appScreenshotSets",
            FakeResponse(200, {"data": [{"id": "set-1", "attributes": {"screenshotDisplayType": "APP_IPHONE_65"}}]}),
        )
        self._add_upload_routes(fake_http, 8)
        fake_http.add(
            "GET",
            "/v1/appScreenshots/",
            _delivery("FAILED", [{"code": "IMAGE_INCORRECT_DIMENSIONS", "message": "wrong size"}]),
        )

        with pytest.raises(BuildProcessingError, match="IMAGE_INCORRECT_DIMENSIONS"):
            asc_assets.upload_screenshots("loc-1", str(shot), "APP_IPHONE_65")

    def test_requires_localization(self, fake_http, tmp_path):
        with pytest.raises(ValueError, match="--version-localization is required"):
            asc_assets.upload_screenshots("", str(tmp_path), "IPHONE_65")
        assert fake_http.calls == []


@pytest.mark.parametrize(
    "value, expected",
    [
        ("iphone_65", "IPHONE_65"),
        ("APP_IPHONE_67", "IPHONE_67"),
        (" apple_vision_pro ", "APPLE_VISION_PRO"),
    ],
)
def test_normalize_preview_type(value, expected):
    assert asc_assets.normalize_preview_type(value) == expected


def test_normalize_preview_type_rejects_unknown():
    with pytest.raises(ValueError, match="unsupported preview type 'WATCH_ULTRA'"):
        asc_assets.normalize_preview_type("APP_WATCH_ULTRA")
    with pytest.raises(ValueError, match="device type is required"):
        asc_assets.normalize_preview_type("  ")


class TestDetectPreviewMimeType:
    @pytest.mark.parametrize(
        "name, expected",
        [("demo.mov", "video/quicktime"), ("DEMO.MP4", "video/mp4")],
    )
    def test_video_extensions(self, name, expected):
        assert asc_assets.detect_preview_mime_type(name) == expected

    def test_missing_extension(self):
        with pytest.raises(ValueError, match="missing an extension"):
            asc_assets.detect_preview_mime_type("previews/demo")

    def test_non_video_extension(self):
        with pytest.raises(ValueError, match="unsupported preview file extension '.png'"):
            asc_assets.detect_preview_mime_type("demo.png")


class TestUploadPreviews:
    def _add_upload_routes(self, fake_http, size):
        fake_http.add(
            "POST",
            "/v1/appPreviews",
            FakeResponse(201, _upload_resource("preview-1", size, "https://upload.example.test/1")),
            FakeResponse(201, _upload_resource("preview-2", size, "https://upload.example.test/2")),
        )
        fake_http.add("PUT", "upload.example.test", FakeResponse(200, text=""))
        fake_http.add("PATCH", "/v1/appPreviews/", FakeResponse(200, {"data": {"id": "preview"}}))

    def test_uploads_into_existing_set(self, fake_http, fake_clock, tmp_path):
        (tmp_path / "b.mp4").write_bytes(b"mp4-body")
        (tmp_path / "a.mov").write_bytes(b"mov-body")
        fake_http.add(
            "GET",
            "/v1/appStoreVersionLocalizations/loc-1/appPreviewSets",
            FakeResponse(
                200,
                {
                    "data": [
                        {"id": "pset-0", "attributes": {"previewType": "IPHONE_67"}},
                        {"id": "pset-1", "attributes": {"previewType": "IPHONE_65"}},
                    ]
                },
            ),
        )
        self._add_upload_routes(fake_http, 8)
        fake_http.add("GET", "/v1/appPreviews/", _delivery("UPLOAD_COMPLETE"), _delivery("COMPLETE"))

        result = asc_assets.upload_previews("loc-1", str(tmp_path), "APP_IPHONE_65")

        output = result.to_api()
        assert output["setId"] == "pset-1"
        assert output["previewType"] == "IPHONE_65"
        assert [item["fileName"] for item in output["results"]] == ["a.mov", "b.mp4"]
        assert [item["state"] for item in output["results"]] == ["COMPLETE", "COMPLETE"]
        assert fake_http.calls_to("POST", "/v1/appPreviewSets") == []
        assert fake_clock.sleeps

        creates = [call["json"]["data"] for call in fake_http.calls_to("POST", "/v1/appPreviews")]
        assert creates[0]["attributes"] == {"fileName": "a.mov", "fileSize": 8, "mimeType": "video/quicktime"}
        assert creates[1]["attributes"]["mimeType"] == "video/mp4"
        assert creates[0]["relationships"]["appPreviewSet"]["data"]["id"] == "pset-1"
        commit = fake_http.calls_to("PATCH", "/v1/appPreviews/preview-1")[0]["json"]["data"]
        assert commit["attributes"] == {
            "uploaded": True,
            "sourceFileChecksum": hashlib.md5(b"mov-body").hexdigest(),
        }

    def test_creates_missing_set(self, fake_http, fake_clock, tmp_path):
        preview = tmp_path / "tour.mov"
        preview.write_bytes(b"12345678")
        fake_http.add(
            "GET",
            "/v1/appStoreVersionLocalizations/loc-1/appPreviewSets",
            FakeResponse(200, {"data": []}),
        )
        fake_http.add(
            "POST",
            "/v1/appPreviewSets",
            FakeResponse(201, {"data": {"id": "pset-new", "attributes": {"previewType": "IPAD_PRO_129"}}}),
        )
        self._add_upload_routes(fake_http, 8)
        fake_http.add("GET", "/v1/appPreviews/", _delivery("COMPLETE"))

        result = asc_assets.upload_previews("loc-1", str(preview), "ipad_pro_129")

        assert result.set_id == "pset-new"
        body = fake_http.calls_to("POST", "/v1/appPreviewSets")[0]["json"]["data"]
        assert body["attributes"] == {"previewType": "IPAD_PRO_129"}
        assert body["relationships"]["appStoreVersionLocalization"]["data"]["id"] == "loc-1"

    def test_delivery_failure(self, fake_http, fake_clock, tmp_path):
        preview = tmp_path / "tour.mov"
        preview.write_bytes(b"12345678")
        fake_http.add(
            "GET",
            "/v1/appStoreVersionLocalizations/loc-1/appPreviewSets",
            FakeResponse(200, {"data": [{"id": "pset-1", "attributes": {"previewType": "IPHONE_65"}}]}),
        )
        self._add_upload_routes(fake_http, 8)
        fake_http.add(
            "GET",
            "/v1/appPreviews/",
            _delivery("FAILED", [{"code": "VIDEO_TOO_LONG", "message": "over 30 seconds"}]),
        )

        with pytest.raises(BuildProcessingError, match="VIDEO_TOO_LONG"):
            asc_assets.upload_previews("loc-1", str(preview), "IPHONE_65")

    def test_rejects_non_video_files_before_any_request(self, fake_http, tmp_path):
        (tmp_path / "shot.png").write_bytes(b"png")

        with pytest.raises(ValueError, match="unsupported preview file extension"):
            asc_assets.upload_previews("loc-1", str(tmp_path), "IPHONE_65")
        assert fake_http.calls == []
