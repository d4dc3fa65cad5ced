"""
Atomic file operations for the on-disk project tree.

Every file the sync layer writes (item files, project indexes, timelines and
code write-backs) goes through a temporary file in the target directory that
is renamed over the destination, so an interrupted sync never leaves a
half-written JSON file behind for the next collection pass.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from loguru import logger


def atomic_write_text(
    file_path: Union[str, Path],
    content: str,
    encoding: str = 'utf-8',
    mode: int = 0o644
) -> None:
    """
    Write text content to a file atomically.

    Args:
        file_path: Path to the target file
        content: Text content to write
        encoding: Text encoding (default: utf-8)
        mode: File permissions (default: 0o644)

    Raises:
        OSError: If the write or rename operation fails
    """
    file_path = Path(file_path)
    parent_dir = file_path.parent
    parent_dir.mkdir(parents=True, exist_ok=True)

    temp_path = None
    try:
        fd, temp_path = tempfile.mkstemp(
            dir=parent_dir,
            prefix=f".{file_path.name}.",
            suffix=".tmp",
            text=True
        )
        with os.fdopen(fd, 'w', encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        # os.replace is atomic on POSIX
        os.replace(temp_path, str(file_path))
        logger.debug(f"Atomically wrote {len(content)} chars to {file_path}")

    except OSError as e:
        if temp_path and os.path.exists(temp_path):
            try:
                os.unlink(temp_path)
            except OSError:
                logger.debug(f"Could not remove temp file {temp_path}")
        logger.error(f"Failed to atomically write to {file_path}: {e}")
        raise


def atomic_write_json(
    file_path: Union[str, Path],
    data: Any,
    encoding: str = 'utf-8',
    mode: int = 0o644,
    indent: Optional[int] = 2
) -> None:
    """
    Write JSON data to a file atomically.

    Raises:
        OSError: If the write or rename operation fails
        TypeError: If the data cannot be serialized to JSON
    """
    content = json.dumps(data, indent=indent, ensure_ascii=False)
    atomic_write_text(file_path, content, encoding=encoding, mode=mode)


def read_json(file_path: Union[str, Path], encoding: str = 'utf-8') -> Any:
    """
    Read and parse a JSON file.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the content is not valid JSON
    """
    with open(file_path, 'r', encoding=encoding) as f:
        return json.load(f)


def atomic_update_json(
    file_path: Union[str, Path],
    updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    encoding: str = 'utf-8'
) -> Dict[str, Any]:
    """
    Read a JSON object, pass it through ``updater`` and write the result back atomically.

    Used for write-backs such as persisting a newly assigned public code into
    an item file without touching any other field.

    Returns:
        The object that was written.
    """
    data = read_json(file_path, encoding=encoding)
    if not isinstance(data, dict):
        raise ValueError(f"{file_path} does not hold a JSON object")
    updated = updater(data)
    atomic_write_json(file_path, updated, encoding=encoding)
    return updated
