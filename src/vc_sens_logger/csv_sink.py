"""Append-only CSV persistence for logging sessions.

Each session owns one file. The header is written once, the first time
the sink is used on a missing or empty file, and rows are only ever
appended after it.
"""

from __future__ import annotations

import csv
import io
import logging
import threading
from pathlib import Path
from typing import Sequence, Union

from .models import CSV_HEADER

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _encode_row(row: Sequence[object]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(row)
    return buffer.getvalue()


def ensure_header(path: PathLike) -> bool:
    """Write the CSV header iff the file is missing or empty.

    Returns:
        True if the header was written by this call.
    """
    filepath = Path(path)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    if filepath.exists() and filepath.read_text(encoding="utf-8").strip():
        logger.debug("CSV header already present: %s", filepath)
        return False

    with open(filepath, "w", newline="", encoding="utf-8") as f:
        f.write(_encode_row(CSV_HEADER))
    logger.info("CSV header written: %s", filepath)
    return True


def append_row(row: Sequence[object], path: PathLike) -> None:
    """Append one row with standard CSV quoting and a trailing newline."""
    with open(path, "a", newline="", encoding="utf-8") as f:
        f.write(_encode_row(row))


class CsvSink:
    """CSV file writer bound to one session's log file.

    Writes are synchronous and flushed per row so that the presentation
    layer can tail the file between ticks.
    """

    def __init__(self, filepath: PathLike):
        self._filepath = Path(filepath)
        self._rows_written = 0
        self._lock = threading.Lock()

    @property
    def filepath(self) -> Path:
        return self._filepath

    def ensure_header(self) -> bool:
        with self._lock:
            return ensure_header(self._filepath)

    def append(self, row: Sequence[object]) -> None:
        with self._lock:
            try:
                append_row(row, self._filepath)
            except OSError as e:
                logger.error("Failed to append to %s: %s", self._filepath, e)
                raise
            self._rows_written += 1

    @property
    def rows_written(self) -> int:
        with self._lock:
            return self._rows_written

    @property
    def file_size_bytes(self) -> int:
        try:
            return self._filepath.stat().st_size
        except OSError:
            return 0
