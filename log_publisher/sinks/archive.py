"""
Date-partitioned archive files.

Layout: <root>/<tag>/<YYYY-MM-DD>.log, one line per event:

    [2024-01-15T10:23:45.123456+00:00] [my-app] message

Files are created on first write and only ever appended to.
"""
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import structlog

from log_publisher.exceptions import ArchiveWriteError

logger = structlog.get_logger(__name__)


def escape_line(message: str) -> str:
    """Keep a message on a single physical line; backslashes are doubled first."""
    return message.replace("\\", "\\\\").replace("\r", "\\r").replace("\n", "\\n")



class FileArchiver:
    """
    Appends log lines into per-tag, per-day (UTC) files.

    Assumes one writing process per archive root. Each line is written with a
    single append-mode write, so concurrent writers within the process never
    interleave partial lines.
    """

    def __init__(self, root: Optional[Union[str, Path]]):
        """
        Initialize archiver.

        Args:
            root: Archive root directory, or None to disable archiving
        """
        self.root = Path(root) if root is not None else None

    @property
    def enabled(self) -> bool:
        """Check if an archive root is configured."""
        return self.root is not None

    def path_for(self, tag: str, timestamp: datetime) -> Path:
        """
        Compute the archive file for a tag and instant.

        Args:
            tag: Archive category
            timestamp: Event time (naive values are taken as UTC)

        Returns:
            Path: <root>/<tag>/<YYYY-MM-DD>.log
        """
        if self.root is None:
            raise ArchiveWriteError("Archive root is not configured")
        return self.root / tag / f"{_as_utc(timestamp).date().isoformat()}.log"

    @staticmethod
    def format_line(app_name: str, message: str, timestamp: datetime) -> str:
        """Build one archive line, newline included."""
        return f"[{_as_utc(timestamp).isoformat()}] [{app_name}] {escape_line(message)}\n"

    async def write(
        self,
        tag: str,
        app_name: str,
        message: str,
        timestamp: datetime,
    ) -> Optional[Path]:
        """
        Append one line to the tag/day file.

        Args:
            tag: Archive category (info, logs, exceptions, criticals)
            app_name: Application name
            message: Log message
            timestamp: Event time

        Returns:
            Optional[Path]: File written, or None when archiving is disabled

        Raises:
            ArchiveWriteError: If the directory or file cannot be written
        """
        if self.root is None:
            return None

        path = self.path_for(tag, timestamp)
        line = self.format_line(app_name, message, timestamp)
        await asyncio.to_thread(self._append, path, line)
        return path

    @staticmethod
    def _append(path: Path, line: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Mode "a" creates the file when missing
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.warning("archive_write_failed", path=str(path), error=str(e))
            raise ArchiveWriteError(f"Failed to append to {path}: {e}", original_error=e) from e


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)
