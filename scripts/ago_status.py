#!/usr/bin/env python3
"""Command-line tool for the AGO film processor.

Usage
-----
::

    python scripts/ago_status.py status
    python scripts/ago_status.py connect --watch 10
    python scripts/ago_status.py programs
    python scripts/ago_status.py recipes
    python scripts/ago_status.py upload <recipe-id>

Options::

    --db PATH          Recipe database (default: ago_recipes.db)
    --ip-only          Skip WiFi control, only probe the device IP
    --verbose / -v     Enable debug logging

Device address and timings come from ``AGO_*`` environment variables and
the settings table of the recipe database.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from agosync import AgoClient, AgoConfig, ConnectionStatus, Notice, NoticeLevel  # noqa: E402

_MARKS = {
    NoticeLevel.SUCCESS: "+",
    NoticeLevel.INFO: "i",
    NoticeLevel.WARNING: "!",
    NoticeLevel.ERROR: "x",
}


def _print_notice(notice: Notice) -> None:
    print(f"  [{_MARKS.get(notice.level, '?')}] {notice.message}")


def _print_status(status: ConnectionStatus) -> None:
    network = status.current_ssid or "-"
    previous = status.previous_ssid or "-"
    interface = status.interface or "none"
    print(f"  state={status.state}  network={network}  previous={previous}  interface={interface}")


async def _watch(client: AgoClient, seconds: float) -> None:
    if seconds <= 0:
        return
    remove = client.add_status_listener(_print_status)
    try:
        await asyncio.sleep(seconds)
    finally:
        remove()


async def run(args: argparse.Namespace) -> int:
    config = AgoConfig.from_env()
    async with AgoClient(
        config,
        db_path=args.db,
        detect_wifi=not args.ip_only,
        notify=_print_notice,
        poll=args.watch > 0,
    ) as client:
        if args.command == "status":
            _print_status(await client.refresh_status())
            await _watch(client, args.watch)
        elif args.command == "connect":
            _print_status(await client.connect())
            await _watch(client, args.watch)
        elif args.command == "disconnect":
            await client.refresh_status()
            _print_status(await client.disconnect())
        elif args.command == "programs":
            await client.refresh_status()
            programs = await client.list_programs()
            if programs is None:
                return 1
            if not programs:
                print("  No custom programs found on the AGO.")
            for program in programs:
                print(f"  {program.filename:<24} {program.display_name}")
        elif args.command == "recipes":
            for recipe in client.recipes.recipes:
                total = sum(step.total_seconds for step in recipe.steps)
                print(f"  {recipe.id}  {recipe.name:<32} {len(recipe.steps)} steps  {total // 60}m{total % 60:02d}s")
        elif args.command == "upload":
            await client.refresh_status()
            try:
                result = await client.upload_recipe(args.recipe_id)
            except KeyError:
                print(f"  Unknown recipe: {args.recipe_id}")
                return 1
            if result is None:
                return 1
            print(f"  {result.message}")
        elif args.command == "export":
            path = await client.recipes.export_recipe_file(args.recipe_id, args.folder)
            if path is None:
                return 1
            print(f"  Wrote {path}")
        elif args.command == "import":
            recipe = await client.recipes.import_recipe_file(args.path)
            if recipe is None:
                return 1
            print(f"  Imported {recipe.name} as {recipe.id}")
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AGO connection and program tool")
    parser.add_argument("--db", default="ago_recipes.db", help="Recipe database path")
    parser.add_argument("--ip-only", action="store_true", help="Do not control WiFi; only probe the device IP")
    parser.add_argument("--watch", type=float, default=0.0, help="Keep polling and print status changes for SECS")
    parser.add_argument("--verbose", "-v", action="store_true")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Run one connectivity poll and print the status")
    commands.add_parser("connect", help="Join the AGO network")
    commands.add_parser("disconnect", help="Leave the AGO network")
    commands.add_parser("programs", help="List custom programs stored on the AGO")
    commands.add_parser("recipes", help="List local recipes")
    upload = commands.add_parser("upload", help="Upload a local recipe to the AGO")
    upload.add_argument("recipe_id")
    export = commands.add_parser("export", help="Write a recipe as AGO JSON")
    export.add_argument("recipe_id")
    export.add_argument("--folder", help="Target folder (default: export_folder setting)")
    import_ = commands.add_parser("import", help="Import an AGO JSON recipe file")
    import_.add_argument("path")
    return parser


def main() -> None:
    args = _parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\nDone.")


if __name__ == "__main__":
    main()
