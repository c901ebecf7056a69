"""
Atomic JSON file helpers for the file-backed key-value store.

Every value lives in its own JSON document. Writes land in a sibling temp
file that is fsynced and then renamed over the target, so a reader sees
either the previous document or the new one, never a partial write.
"""

import json
import os
import tempfile
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError

TEMP_PREFIX = ".tmp_"
CORRUPT_MARKER = "corrupt"


async def ensure_directory(path: Path) -> None:
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> Any | None:
    """Read and parse a JSON document.

    Returns:
        The parsed value, or None if the file is missing or blank

    Raises:
        StorageIOError: operation "parse_json" for unparseable content,
            "read_json" for any other I/O failure
    """
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e

    if not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_json", str(path), e) from e


async def write_json_atomic(path: Path, data: Any) -> None:
    """Replace path with the JSON encoding of data.

    The value is encoded before any file is touched, so an unserializable
    value leaves the previous document in place.
    """
    try:
        encoded = json.dumps(data, default=_json_default, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise StorageIOError("encode_json", str(path), e) from e

    await ensure_directory(path.parent)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX, suffix=path.suffix)
    os.close(fd)
    try:
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(encoded)
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.replace(temp_path, path)
    except OSError as e:
        raise StorageIOError("write_json", str(path), e) from e
    finally:
        # Already gone after a successful replace.
        with suppress(FileNotFoundError):
            await aiofiles.os.remove(temp_path)


async def remove_file(path: Path) -> bool:
    """Remove a file. Returns False if it did not exist."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e
    return True


async def quarantine_file(path: Path, now: datetime | None = None) -> Path:
    """Move an unreadable file aside so it can be inspected later.

    Args:
        path: File to move
        now: Timestamp for the new name (defaults to the current UTC time)

    Returns:
        The new path, ``{stem}.{YYYYmmdd_HHMMSS}.corrupt{suffix}`` in the
        same directory
    """
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d_%H%M%S")
    target = path.with_name(f"{path.stem}.{stamp}.{CORRUPT_MARKER}{path.suffix}")
    try:
        await aiofiles.os.replace(path, target)
    except OSError as e:
        raise StorageIOError("quarantine", str(path), e) from e
    return target


def _json_default(obj: Any) -> Any:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
