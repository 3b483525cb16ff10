from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .core.config import get_settings
from .core.db import create_engine, create_session_factory
from .core.storage import get_storage
from .db.models import UploadSession
from .services.upload_service import UploadService
from .uploads.integrity import compute_file_md5

console = Console()


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Specimen image ingest developer CLI")
    subparsers = parser.add_subparsers(dest="command")

    checksum_parser = subparsers.add_parser("checksum", help="Print the MD5 a client must declare for a file")
    checksum_parser.add_argument("file", help="Path to the image file")
    checksum_parser.set_defaults(func=_cmd_checksum)

    stale_parser = subparsers.add_parser(
        "stale-uploads",
        help="List upload sessions that are still open but have not been touched recently",
    )
    stale_parser.add_argument(
        "--older-than-hours",
        type=float,
        default=24.0,
        help="Only report sessions untouched for at least this many hours (default 24).",
    )
    stale_parser.set_defaults(func=_cmd_stale_uploads)
    return parser


def _cmd_checksum(args: argparse.Namespace) -> None:
    path = Path(args.file).expanduser().resolve()
    if not path.is_file():
        console.print(f"[red]File not found: {path}[/]")
        sys.exit(2)
    console.print(compute_file_md5(path), highlight=False)


def _cmd_stale_uploads(args: argparse.Namespace) -> None:
    """Report abandoned sessions. Their backend multipart objects are left untouched."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=args.older_than_hours)
    uploads = asyncio.run(_load_stale_uploads(cutoff))

    if not uploads:
        console.print("[green]No stale upload sessions.[/]")
        return

    table = Table(title=f"Upload sessions untouched since {cutoff.isoformat(timespec='seconds')}")
    for column in ("Upload", "Specimen", "Status", "Next part", "Buffered bytes", "Updated"):
        table.add_column(column)
    for upload in uploads:
        table.add_row(
            upload.id,
            str(upload.specimen_id),
            upload.status.value,
            str(upload.current_part_index),
            str(upload.buffered_bytes),
            str(upload.updated_at),
        )
    console.print(table)


async def _load_stale_uploads(cutoff: datetime) -> list[UploadSession]:
    settings = get_settings()
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)
    try:
        async with session_factory() as session:
            service = UploadService(settings, get_storage(settings), session)
            return await service.list_stale(older_than=cutoff)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    main()
