"""
Command line front end for the time capsule core.

Every command runs as the principal named by --user against the configured
SQLite database and object store:

Usage:
    capsule --user alice groups
    capsule --user alice create-group "Class of 2026" 2027-06-01T12:00
    capsule --user bob join 3f0c...
    capsule --user bob post 3f0c... "Remember the fire drill?"
    capsule --user bob upload 3f0c... ./photo.jpg
    capsule --user alice show 3f0c...
    capsule prompt

Invariants:
    - Exit code 0 on success, 1 on any CapsuleError
    - Entries of locked groups are never printed
    - Signed URLs are printed only by `show`, never logged

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output line-oriented for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Optional, Sequence, TextIO

from ..config import CapsuleConfig
from ..errors import CapsuleError
from ..gate import lock_message
from ..media import classify_media
from ..models import Group, Principal, ResolutionState
from ..prompts import random_prompt
from ..session import ReadModel, SessionController

logger = logging.getLogger(__name__)


class CapsuleCLI:
    """Command implementations over a started SessionController.

    Example:
        >>> cli = CapsuleCLI(runtime.controller)
        >>> await cli.groups()
    """

    def __init__(self, controller: SessionController, out: Optional[TextIO] = None) -> None:
        self.controller = controller
        self.out = out or sys.stdout

    def _print(self, line: str = "") -> None:
        print(line, file=self.out)

    def _describe(self, group: Group) -> str:
        state = lock_message(group.unlock_at, self.controller.clock.now()) or "unlocked"
        return f"{group.id}  {group.name}  ({state})"

    async def groups(self) -> int:
        groups = await self.controller.refresh_groups()
        if not groups:
            self._print("No groups yet. Create one or join with a group id.")
        for group in groups:
            self._print(self._describe(group))
        return 0

    async def create_group(self, name: str, unlock_at: str) -> int:
        group = await self.controller.create_group(name, unlock_at)
        self._print(group.id)
        return 0

    async def join(self, group_id: str) -> int:
        await self.controller.join_group(group_id)
        self._print(f"Joined {group_id}")
        return 0

    async def post(self, group_id: str, text: str) -> int:
        await self.controller.select_group(group_id)
        entry = await self.controller.submit_entry(text)
        self._print(entry.id)
        return 0

    async def upload(self, group_id: str, file: str) -> int:
        path = Path(file)
        data = path.read_bytes()
        content_type, _ = mimetypes.guess_type(path.name)
        await self.controller.select_group(group_id)
        entry = await self.controller.upload_media(path.name, data, content_type)
        self._print(entry.id)
        return 0

    async def show(self, group_id: str) -> int:
        await self.controller.select_group(group_id)
        self._render(self.controller.read_model())
        return 0

    def prompt(self) -> int:
        self._print(self.controller.random_prompt())
        return 0

    def _render(self, model: ReadModel) -> None:
        group = model.active_group
        if group is None:
            return
        self._print(f"{group.name}  ({group.id})")
        if not model.unlocked:
            self._print(model.lock_message or "Locked")
            return
        if not model.entries:
            self._print("No entries yet.")
            return
        for item in model.entries:
            entry = item.entry
            stamp = entry.created_at.strftime("%Y-%m-%d %H:%M")
            if entry.has_text:
                self._print(f"[{stamp}] {entry.author_id}: {entry.text}")
            if entry.has_media:
                kind = classify_media(entry.media_reference).value
                if item.resolution is ResolutionState.RESOLVED:
                    self._print(f"[{stamp}] {entry.author_id}: {kind} {item.url}")
                else:
                    self._print(f"[{stamp}] {entry.author_id}: {kind} unavailable")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="capsule", description="Time capsule group journal")
    parser.add_argument("--user", help="Principal id to act as")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("groups", help="List your groups")

    create_parser = subparsers.add_parser("create-group", help="Create a group and join it")
    create_parser.add_argument("name", help="Group name")
    create_parser.add_argument("unlock_at", help="Unlock time, ISO-8601 (UTC if no offset)")

    join_parser = subparsers.add_parser("join", help="Join a group by id")
    join_parser.add_argument("group_id")

    post_parser = subparsers.add_parser("post", help="Write a text entry")
    post_parser.add_argument("group_id")
    post_parser.add_argument("text")

    upload_parser = subparsers.add_parser("upload", help="Upload a photo or video")
    upload_parser.add_argument("group_id")
    upload_parser.add_argument("file")

    show_parser = subparsers.add_parser("show", help="Show a group's entries")
    show_parser.add_argument("group_id")

    subparsers.add_parser("prompt", help="Suggest something to write about")
    return parser


async def run(
    args: argparse.Namespace,
    config: Optional[CapsuleConfig] = None,
    out: Optional[TextIO] = None,
) -> int:
    """Execute one parsed command and return its exit code."""
    from ..main import Runtime

    if args.command == "prompt":
        print(random_prompt(), file=out or sys.stdout)
        return 0

    if not args.user:
        print("--user is required for this command", file=sys.stderr)
        return 2

    runtime = Runtime(Principal(args.user), config=config)
    try:
        await runtime.start()
        cli = CapsuleCLI(runtime.controller, out)
        if args.command == "groups":
            return await cli.groups()
        if args.command == "create-group":
            return await cli.create_group(args.name, args.unlock_at)
        if args.command == "join":
            return await cli.join(args.group_id)
        if args.command == "post":
            return await cli.post(args.group_id, args.text)
        if args.command == "upload":
            return await cli.upload(args.group_id, args.file)
        if args.command == "show":
            return await cli.show(args.group_id)
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2
    except CapsuleError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await runtime.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments, configure logging and run one command."""
    from ..main import setup_logging

    args = build_parser().parse_args(argv)
    try:
        config = CapsuleConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config)
    return asyncio.run(run(args, config))


if __name__ == "__main__":
    sys.exit(main())
