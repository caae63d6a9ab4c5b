"""Command-line entry point for App Store Connect uploads and publishing."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

import asc_assets
import asc_publish
from asc_api import generate_jwt, parse_duration
from asc_logging import configure_logging
from build_processing import DEFAULT_POLL_INTERVAL

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


def _duration(value: str) -> float:
    parsed = parse_duration(value)
    if parsed is None or parsed < 0:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r} (use values like 30s, 5m, 1h)")
    return parsed


def _print_json(payload: Any, pretty: bool) -> None:
    if hasattr(payload, "to_api"):
        payload = payload.to_api()
    print(json.dumps(payload, ensure_ascii=False, indent=2 if pretty else None))


def _resolve_app_id(parser: argparse.ArgumentParser, value: Optional[str]) -> str:
    app_id = (value or os.getenv("ASC_APP_ID", "")).strip()
    if not app_id:
        parser.error("--app is required (or set ASC_APP_ID)")
    return app_id


def _require(parser: argparse.ArgumentParser, value: Optional[str], flag: str) -> str:
    text = (value or "").strip()
    if not text:
        parser.error(f"{flag} is required")
    return text


def _cmd_jwt(args: argparse.Namespace) -> Any:
    print(generate_jwt(force_refresh=args.force_refresh))
    return None


def _cmd_builds_upload(args: argparse.Namespace) -> Any:
    parser = args.parser
    return asc_publish.builds_upload(
        _resolve_app_id(parser, args.app),
        _require(parser, args.ipa, "--ipa"),
        version=args.version,
        build_number=args.build_number,
        platform=args.platform,
        concurrency=args.concurrency,
        verify_checksum=args.checksum,
        dry_run=args.dry_run,
        wait=args.wait,
        poll_interval=args.poll_interval,
        test_notes=args.test_notes,
        locale=args.locale,
    )


def _cmd_publish_testflight(args: argparse.Namespace) -> Any:
    parser = args.parser
    app_id = _resolve_app_id(parser, args.app)
    ipa_path = _require(parser, args.ipa, "--ipa")
    groups = asc_publish.parse_group_ids(args.group or [])
    if not groups:
        parser.error("--group is required")
    return asc_publish.publish_testflight(
        app_id,
        ipa_path,
        groups,
        version=args.version,
        build_number=args.build_number,
        platform=args.platform,
        notify=args.notify,
        wait=args.wait,
        poll_interval=args.poll_interval,
        timeout=args.timeout,
    )


def _cmd_publish_appstore(args: argparse.Namespace) -> Any:
    parser = args.parser
    if args.submit and not args.confirm:
        parser.error("--confirm is required with --submit")
    return asc_publish.publish_appstore(
        _resolve_app_id(parser, args.app),
        _require(parser, args.ipa, "--ipa"),
        version=args.version,
        build_number=args.build_number,
        platform=args.platform,
        submit=args.submit,
        confirm=args.confirm,
        wait=args.wait,
        poll_interval=args.poll_interval,
        timeout=args.timeout,
    )


def _cmd_encryption_documents_upload(args: argparse.Namespace) -> Any:
    parser = args.parser
    return asc_assets.upload_encryption_document(
        _require(parser, args.declaration, "--declaration"),
        _require(parser, args.file, "--file"),
    )


def _cmd_assets_screenshots_upload(args: argparse.Namespace) -> Any:
    parser = args.parser
    return asc_assets.upload_screenshots(
        _require(parser, args.version_localization, "--version-localization"),
        _require(parser, args.path, "--path"),
        _require(parser, args.device_type, "--device-type"),
    )


def _cmd_assets_previews_upload(args: argparse.Namespace) -> Any:
    parser = args.parser
    return asc_assets.upload_previews(
        _require(parser, args.version_localization, "--version-localization"),
        _require(parser, args.path, "--path"),
        _require(parser, args.device_type, "--device-type"),
    )


def _add_command(
    subparsers: Any,
    name: str,
    handler: Callable[[argparse.Namespace], Any],
    help_text: str,
    parents: List[argparse.ArgumentParser],
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, help=help_text, description=help_text, parents=parents)
    parser.set_defaults(handler=handler, parser=parser, command=parser.prog.split(" ", 1)[-1])
    return parser


def _add_build_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--app", help="App Store Connect app ID (or ASC_APP_ID)")
    parser.add_argument("--ipa", help="Path to the .ipa file")
    parser.add_argument(
        "--version", help="CFBundleShortVersionString (read from the IPA when omitted)"
    )
    parser.add_argument(
        "--build-number", dest="build_number", help="CFBundleVersion (read from the IPA when omitted)"
    )
    parser.add_argument(
        "--platform", default="IOS", help="Platform: IOS, MAC_OS, TV_OS, VISION_OS"
    )
    parser.add_argument(
        "--wait", action="store_true", help="Wait for build processing to complete"
    )
    parser.add_argument(
        "--poll-interval",
        dest="poll_interval",
        type=_duration,
        default=DEFAULT_POLL_INTERVAL,
        help="Polling interval for build discovery and processing (default 30s)",
    )


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    common.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug output to stderr"
    )

    parser = argparse.ArgumentParser(
        prog="asc",
        description="Upload builds and assets to App Store Connect and publish them.",
    )
    commands = parser.add_subparsers(dest="command_group", metavar="<command>")
    commands.required = True

    jwt_parser = _add_command(
        commands, "jwt", _cmd_jwt, "Print a JWT for the App Store Connect API.", [common]
    )
    jwt_parser.add_argument(
        "--force-refresh",
        action="store_true",
        help="Ignore any cached token and force generation of a new JWT.",
    )

    builds = commands.add_parser("builds", help="Build uploads.")
    builds_commands = builds.add_subparsers(dest="action", metavar="<subcommand>")
    builds_commands.required = True
    upload = _add_command(
        builds_commands, "upload", _cmd_builds_upload, "Upload an IPA build.", [common]
    )
    _add_build_arguments(upload)
    upload.add_argument(
        "--concurrency", type=int, default=1, help="Number of parallel upload operations"
    )
    upload.add_argument(
        "--checksum", action="store_true", help="Verify the file against the server checksums"
    )
    upload.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="Reserve the upload and print the operations without sending the file",
    )
    upload.add_argument("--test-notes", dest="test_notes", help="What to Test notes")
    upload.add_argument("--locale", help="Locale for --test-notes (e.g. en-US)")

    publish = commands.add_parser("publish", help="End-to-end publish workflows.")
    publish_commands = publish.add_subparsers(dest="action", metavar="<subcommand>")
    publish_commands.required = True

    testflight = _add_command(
        publish_commands,
        "testflight",
        _cmd_publish_testflight,
        "Upload an IPA and distribute it to TestFlight beta groups.",
        [common],
    )
    _add_build_arguments(testflight)
    testflight.add_argument(
        "--group", action="append", help="Beta group ID(s), comma-separated or repeated"
    )
    testflight.add_argument(
        "--notify", action="store_true", help="Notify testers after adding to groups"
    )
    testflight.add_argument(
        "--timeout", type=_duration, default=0, help="Override upload and processing timeout"
    )

    appstore = _add_command(
        publish_commands,
        "appstore",
        _cmd_publish_appstore,
        "Upload an IPA, attach it to an App Store version and optionally submit it.",
        [common],
    )
    _add_build_arguments(appstore)
    appstore.add_argument(
        "--submit", action="store_true", help="Submit for review after attaching the build"
    )
    appstore.add_argument(
        "--confirm", action="store_true", help="Confirm submission (required with --submit)"
    )
    appstore.add_argument(
        "--timeout", type=_duration, default=0, help="Override upload and processing timeout"
    )

    encryption = commands.add_parser("encryption", help="Encryption declarations.")
    encryption_commands = encryption.add_subparsers(dest="action", metavar="<subcommand>")
    encryption_commands.required = True
    documents = encryption_commands.add_parser("documents", help="Declaration documents.")
    documents_commands = documents.add_subparsers(dest="subaction", metavar="<subcommand>")
    documents_commands.required = True
    document_upload = _add_command(
        documents_commands,
        "upload",
        _cmd_encryption_documents_upload,
        "Upload an encryption declaration document.",
        [common],
    )
    document_upload.add_argument("--declaration", help="Encryption declaration ID")
    document_upload.add_argument("--file", help="Path to the document file")

    assets = commands.add_parser("assets", help="App Store assets.")
    assets_commands = assets.add_subparsers(dest="action", metavar="<subcommand>")
    assets_commands.required = True
    screenshots = assets_commands.add_parser("screenshots", help="App Store screenshots.")
    screenshots_commands = screenshots.add_subparsers(dest="subaction", metavar="<subcommand>")
    screenshots_commands.required = True
    screenshot_upload = _add_command(
        screenshots_commands,
        "upload",
        _cmd_assets_screenshots_upload,
        "Upload screenshots for a version localization.",
        [common],
    )
    screenshot_upload.add_argument(
        "--version-localization", dest="version_localization", help="App Store version localization ID"
    )
    screenshot_upload.add_argument("--path", help="Screenshot file or directory")
    screenshot_upload.add_argument("--device-type", dest="device_type", help="Device type, e.g. IPHONE_65")

    previews = assets_commands.add_parser("previews", help="App previews.")
    previews_commands = previews.add_subparsers(dest="subaction", metavar="<subcommand>")
    previews_commands.required = True
    preview_upload = _add_command(
        previews_commands,
        "upload",
        _cmd_assets_previews_upload,
        "Upload app previews for a version localization.",
        [common],
    )
    preview_upload.add_argument(
        "--version-localization", dest="version_localization", help="App Store version localization ID"
    )
    preview_upload.add_argument("--path", help="Preview video file or directory")
    preview_upload.add_argument("--device-type", dest="device_type", help="Device type, e.g. IPHONE_65")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose, prog=parser.prog)

    try:
        result = args.handler(args)
    except (RuntimeError, ValueError, OSError) as exc:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"Error: {args.command}: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FAILURE

    if result is not None:
        _print_json(result, args.pretty)
    return EXIT_SUCCESS


if __name__ == "__main__":
    raise SystemExit(main())
