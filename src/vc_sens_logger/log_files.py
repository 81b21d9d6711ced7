"""Log directory helpers used by the presentation layer.

Path generation for new sessions, tailing the current log, and the
archive/delete actions.
"""

from __future__ import annotations

import csv
import logging
import os
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from .csv_sink import PathLike
from .models import CSV_HEADER, MISSING, Sample

logger = logging.getLogger(__name__)

ARCHIVE_NAME = "sensor_data.zip"
NO_LOG_YET = "No log data yet."
NO_ENTRIES = "No data entries."
TAIL_BLOCK_SIZE = 8192

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_device_name(device_name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", device_name.strip())
    return cleaned or "sensor"


def generate_csv_file_path(
    directory: PathLike, device_name: str, now: Optional[datetime] = None
) -> Path:
    """Build a fresh per-session log path inside ``directory``.

    The file name is ``<device>_<YYYYMMDD_HHMMSS>.csv``; the directory is
    created if needed but the file itself is not.
    """
    now = now or datetime.now()
    log_dir = Path(directory)
    log_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{sanitize_device_name(device_name)}_{now.strftime('%Y%m%d_%H%M%S')}.csv"
    return log_dir / filename


def tail_lines(path: PathLike, count: int, block_size: int = TAIL_BLOCK_SIZE) -> List[str]:
    """Return the last ``count`` non-blank data lines of a log.

    Reads backwards from the end of the file in blocks, so the cost does
    not grow with the session length. The first line seen is always
    dropped: it is either the header or a line cut by the block boundary.
    """
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        data = b""
        while pos > 0 and data.count(b"\n") <= count:
            step = min(block_size, pos)
            pos -= step
            f.seek(pos)
            data = f.read(step) + data

    lines = data.decode("utf-8", errors="replace").splitlines()[1:]
    return [line for line in lines if line.strip()][-count:]


def parse_log_line(line: str) -> List[str]:
    """Split one CSV log line into its cells, honouring quoting."""
    return next(csv.reader([line]), [])


def read_latest_lines(path: Optional[PathLike], count: int = 10) -> List[str]:
    """Return up to ``count`` most recent data lines, header excluded."""
    if path is None or not Path(path).exists():
        return [NO_LOG_YET]

    try:
        data_lines = tail_lines(path, count)
    except OSError as e:
        logger.warning("Error reading log file %s: %s", path, e)
        return [f"Error reading log file: {e}"]

    if not data_lines:
        return [NO_ENTRIES]
    return data_lines


def list_csv_files(directory: PathLike) -> List[Path]:
    log_dir = Path(directory)
    if not log_dir.is_dir():
        return []
    return sorted(p for p in log_dir.glob("*.csv") if p.is_file())


@dataclass
class DeleteResult:
    deleted: List[Path] = field(default_factory=list)
    failed: List[tuple] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def delete_all_csv(directory: PathLike) -> DeleteResult:
    """Delete every CSV log and the archive in ``directory``.

    A file that cannot be removed is reported in ``failed`` and does not
    stop the others from being deleted.
    """
    result = DeleteResult()
    targets = list_csv_files(directory)
    archive = Path(directory) / ARCHIVE_NAME
    if archive.exists():
        targets.append(archive)

    for path in targets:
        try:
            path.unlink()
            result.deleted.append(path)
        except OSError as e:
            logger.warning("Could not delete %s: %s", path, e)
            result.failed.append((path, str(e)))

    logger.info(
        "Deleted %d log file(s), %d failure(s)", len(result.deleted), len(result.failed)
    )
    return result


def zip_all_csv(directory: PathLike) -> Optional[Path]:
    """Archive every CSV log into ``sensor_data.zip``.

    Returns:
        Path of the archive, or None when there is nothing to archive.
    """
    files = list_csv_files(directory)
    if not files:
        logger.info("No CSV files to archive in %s", directory)
        return None

    archive = Path(directory) / ARCHIVE_NAME
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in files:
            zf.write(path, arcname=path.name)
    logger.info("Archived %d CSV file(s) to %s", len(files), archive)
    return archive


def _parse_optional(value: str) -> Optional[float]:
    if value == MISSING or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def load_samples(path: Optional[PathLike], limit: Optional[int] = None) -> List[Sample]:
    """Read a session log back into samples, most recent ``limit`` rows only."""
    if path is None or not Path(path).exists():
        return []

    if limit is not None:
        return _to_samples(csv.reader(tail_lines(path, limit)))

    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        next(reader, None)
        return _to_samples(reader)


def _to_samples(rows: Iterable[List[str]]) -> List[Sample]:
    samples: List[Sample] = []
    for row in rows:
        if len(row) != len(CSV_HEADER):
            logger.debug("Skipping malformed log row: %r", row)
            continue
        samples.append(
            Sample(
                timestamp=row[0],
                temperature=_parse_optional(row[1]),
                humidity=_parse_optional(row[2]),
                latitude=_parse_optional(row[3]),
                longitude=_parse_optional(row[4]),
                accuracy=_parse_optional(row[5]),
            )
        )
    return samples
