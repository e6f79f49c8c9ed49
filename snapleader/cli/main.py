#!/usr/bin/env python3
# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
SnapLeader CLI.

Usage:
    snapleader run [OPTIONS]      # Run a tracking node until interrupted
    snapleader lease [OPTIONS]    # Show the current leader lease
    snapleader version            # Show version information
    snapleader --help             # Show help

Examples:
    # Two terminals, same channel: one leads, the other follows
    snapleader run --activity entry-1 --project p-1 --backend-url http://localhost:8000

    # Capture a browser page instead of the desktop
    snapleader run --activity entry-1 --source browser --url https://example.com

    # Who holds the lease right now?
    snapleader lease --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import platform
import sys
import time
from typing import Callable, List, Optional

from playwright.async_api import async_playwright

from snapleader.capture.source import CaptureSource, DesktopCaptureSource, PlaywrightCaptureSource
from snapleader.coordination.config import TRANSPORT_CHOICES
from snapleader.coordination.coordinator import Role
from snapleader.coordination.lease import LeaseStore
from snapleader.coordination.storage import FileStorage
from snapleader.exceptions import CaptureError, ConfigurationError, StorageError
from snapleader.node import TrackingNode, TrackingNodeConfig
from snapleader.utils.logger import configure_logging, logger


def get_version() -> str:
    """Get the SnapLeader version."""
    import snapleader
    return getattr(snapleader, "__version__", "unknown")


def cmd_version(args: argparse.Namespace) -> int:
    """Show version information."""
    version = get_version()

    if args.json:
        info = {
            "snapleader": version,
            "python": platform.python_version(),
            "platform": platform.system(),
        }
        print(json.dumps(info, indent=2))
    else:
        print(f"SnapLeader {version}")

    return 0


def build_node_config(args: argparse.Namespace) -> TrackingNodeConfig:
    """Environment configuration with command line overrides applied."""
    config = TrackingNodeConfig.from_env()
    coordinator = config.coordinator

    if args.node_id:
        coordinator.node_id = args.node_id
    if args.channel:
        coordinator.channel_name = args.channel
    if args.transport:
        coordinator.transport = args.transport
    if args.storage_dir:
        coordinator.storage_dir = args.storage_dir
    if args.backend_url:
        config.capture.backend_url = args.backend_url
    if args.no_capture:
        config.capture_enabled = False

    return config


def cmd_lease(args: argparse.Namespace) -> int:
    """Show the lease held in a storage directory."""
    try:
        storage = FileStorage(args.storage_dir)
    except StorageError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    record = LeaseStore(storage, args.lease_key).get()
    if record is None:
        if args.json:
            print(json.dumps({"holderId": None}))
        else:
            print("No leader lease")
        return 0

    # Lease timestamps come from the host-wide monotonic clock
    age = record.age(time.monotonic())
    stale = age > args.lease_ttl / 1000.0

    if args.json:
        print(json.dumps({
            "holderId": record.holder_id,
            "timestamp": record.timestamp,
            "ageSeconds": round(age, 3),
            "stale": stale,
        }, indent=2))
    else:
        state = "stale" if stale else "fresh"
        print(f"Leader: {record.holder_id} ({state}, renewed {age:.1f}s ago)")
    return 0


async def _run_node(args: argparse.Namespace) -> int:
    config = build_node_config(args)

    playwright = None
    browser = None
    source_factory: Callable[[], CaptureSource] = DesktopCaptureSource

    if args.source == "browser":
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(headless=not args.headed)
        page = await browser.new_page()
        await page.goto(args.url)

        def source_factory() -> CaptureSource:
            return PlaywrightCaptureSource(page)

    def on_role_change(role: Role) -> None:
        print(f"[{config.coordinator.node_id}] now {role.value}", flush=True)

    def on_capture_error(error: CaptureError) -> None:
        print(f"[{config.coordinator.node_id}] capture error: {error}", file=sys.stderr, flush=True)

    try:
        node = await TrackingNode.create(
            config,
            source_factory=source_factory,
            on_role_change=on_role_change,
            on_capture_error=on_capture_error,
        )
        async with node:
            try:
                if args.activity:
                    await node.track(args.activity, project_id=args.project)
                if args.duration:
                    await asyncio.sleep(args.duration)
                else:
                    await asyncio.Event().wait()
            finally:
                # Also reached when Ctrl-C cancels the wait
                if args.status:
                    print(json.dumps(node.get_status(), indent=2, default=str), flush=True)
    finally:
        if browser is not None:
            await browser.close()
        if playwright is not None:
            await playwright.stop()

    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run a tracking node until interrupted."""
    if args.source == "browser" and not args.url:
        print("Error: --url is required with --source browser", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run_node(args))
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, node stopped")
        return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="snapleader",
        description="SnapLeader - leader-coordinated activity capture",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run         Run a tracking node
  lease       Show the current leader lease
  version     Show version information

Configuration is read from SNAPLEADER_* environment variables; command
line options override them.
""",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("SNAPLEADER_LOG_LEVEL", "INFO"),
        help="Set logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a tracking node")
    run_parser.add_argument("--node-id", help="Node identifier (generated by default)")
    run_parser.add_argument("--channel", help="Channel shared by the nodes")
    run_parser.add_argument("--transport", choices=TRANSPORT_CHOICES, help="Broadcast backend")
    run_parser.add_argument("--storage-dir", help="Shared storage directory")
    run_parser.add_argument("--backend-url", help="Time-tracking backend base URL")
    run_parser.add_argument("--activity", help="Activity (time entry) id to track")
    run_parser.add_argument("--project", help="Project id of the activity")
    run_parser.add_argument(
        "--source",
        choices=["desktop", "browser"],
        default="desktop",
        help="Capture source (default: desktop)",
    )
    run_parser.add_argument("--url", help="Page to open for --source browser")
    run_parser.add_argument("--headed", action="store_true", help="Show the browser window")
    run_parser.add_argument("--no-capture", action="store_true", help="Coordinate without capturing")
    run_parser.add_argument(
        "--duration",
        type=float,
        default=0.0,
        help="Stop after this many seconds (default: run until interrupted)",
    )
    run_parser.add_argument("--status", action="store_true", help="Print node status on exit")
    run_parser.set_defaults(func=cmd_run)

    # lease command
    lease_parser = subparsers.add_parser("lease", help="Show the current leader lease")
    lease_parser.add_argument(
        "--storage-dir",
        default=os.environ.get("SNAPLEADER_STORAGE_DIR", "./.snapleader"),
        help="Shared storage directory",
    )
    lease_parser.add_argument(
        "--lease-key",
        default=os.environ.get("SNAPLEADER_LEASE_KEY", "snapleader-leader"),
        help="Lease storage key",
    )
    lease_parser.add_argument(
        "--lease-ttl",
        type=int,
        default=int(os.environ.get("SNAPLEADER_LEASE_TTL", "8000")),
        help="Lease TTL in ms, for the stale check",
    )
    lease_parser.add_argument("--json", "-j", action="store_true", help="Output in JSON format")
    lease_parser.set_defaults(func=cmd_lease)

    # version command
    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.add_argument("--json", "-j", action="store_true", help="Output in JSON format")
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    if hasattr(args, "func"):
        sys.exit(args.func(args))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
