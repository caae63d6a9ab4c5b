from __future__ import annotations

import zipfile

import pytest

import ipa_info
from conftest import build_ipa


def test_extract_reads_top_level_app_only(ipa_file):
    info = ipa_info.extract_bundle_info(ipa_file)

    assert info.version == "1.2.3"
    assert info.build_number == "42"


def test_extract_rejects_non_zip(tmp_path):
    path = tmp_path / "broken.ipa"
    path.write_bytes(b"not a zip")

    with pytest.raises(ValueError, match="cannot open IPA"):
        ipa_info.extract_bundle_info(str(path))


def test_extract_requires_info_plist(tmp_path):
    path = tmp_path / "empty.ipa"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("Payload/Demo.app/Demo", b"binary")

    with pytest.raises(ValueError, match="Info.plist not found"):
        ipa_info.extract_bundle_info(str(path))


def test_explicit_values_win(ipa_file):
    assert ipa_info.resolve_bundle_info(ipa_file, "2.0", "100") == ("2.0", "100")
    assert ipa_info.resolve_bundle_info(ipa_file, " 2.0 ", None) == ("2.0", "42")


def test_missing_values_are_extracted(ipa_file):
    assert ipa_info.resolve_bundle_info(ipa_file) == ("1.2.3", "42")


def test_extraction_failure_names_missing_flags(tmp_path):
    path = tmp_path / "broken.ipa"
    path.write_bytes(b"nope")

    with pytest.raises(ValueError, match="--build-number required"):
        ipa_info.resolve_bundle_info(str(path), "1.0", None)
    with pytest.raises(ValueError, match="--version and --build-number required"):
        ipa_info.resolve_bundle_info(str(path))


def test_plist_without_version_keys(tmp_path):
    path = str(build_ipa(tmp_path / "bare.ipa", version=None, build_number=None))

    with pytest.raises(
        ValueError,
        match="Info.plist missing CFBundleShortVersionString and CFBundleVersion; provide --version and --build-number",
    ):
        ipa_info.resolve_bundle_info(path)


def test_validate_ipa_path(tmp_path, ipa_file):
    assert ipa_info.validate_ipa_path(ipa_file) > 0
    with pytest.raises(ValueError, match="must be a file"):
        ipa_info.validate_ipa_path(str(tmp_path))
    with pytest.raises(ValueError, match="failed to stat IPA"):
        ipa_info.validate_ipa_path(str(tmp_path / "missing.ipa"))
