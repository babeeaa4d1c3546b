"""JSON file persistence shared by client state, offline queue and server store."""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Any

from .exceptions import StorageError

logger = logging.getLogger(__name__)


def read_json(path: str | Path, default: Any = None) -> Any:
    """Load a JSON document, returning ``default`` when missing or corrupted."""
    path = Path(path)
    if not path.exists():
        return default

    try:
        with open(path) as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable state file {path}: {e}")
        return default


def write_json(path: str | Path, data: Any) -> None:
    """Write a JSON document atomically.

    Writes to a temporary file in the same directory and renames it over the
    target, so readers see either the old or the new document, never a torn
    one. Raises StorageError if the write fails; the original file is kept.
    """
    path = Path(path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        json_data = json.dumps(data, indent=2)

        # Same directory keeps the rename on one filesystem
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
        try:
            with open(fd, "w") as f:
                f.write(json_data)
            Path(tmp_path).replace(path)
        except Exception:
            try:
                Path(tmp_path).unlink()
            except OSError:
                pass
            raise

    except (OSError, TypeError, ValueError) as e:
        raise StorageError(f"Failed to write {path.name}", details={"error": str(e)}) from e
