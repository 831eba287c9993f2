# kalina: User I/O Context and key-value Storage. Storage is the only place that touches disk; the host state loads from it at startup and writes back on every mutation.

import copy
import logging
import pathlib
import sys
from typing import Any, Dict, Optional

from .fs import read_json, write_json

logger = logging.getLogger("kalina")


class Context:
    """
    Thin wrapper around console I/O and logging used by Kalina.

    This abstraction decouples direct stdout/stderr usage from the engine so the
    orchestrator can run under the CLI, a test, or another front-end.
    """

    def __init__(self, out=None) -> None:
        """Initialize a console-based context (stdout unless another stream is given)."""
        self.out = out or sys.stdout

    def send_to_user(self, message: str, end: str = "\n") -> None:
        """Send a user-facing message to the output stream."""
        self.out.write(message + end)
        self.out.flush()

    def log(self, message: str) -> None:
        """Emit a diagnostic line through the kalina logger."""
        logger.info(message)

    def error_message(self, message: str) -> None:
        """Print an error message to stderr."""
        print(f"Error: {message}", file=sys.stderr)


class Storage:
    """
    JSON key-value store rooted at the Kalina data directory.

    Each key is one file, <home>/<key>.json. Values are plain JSON; there is no
    schema versioning, so callers must tolerate absent or corrupt values.
    """

    def __init__(self, home: pathlib.Path) -> None:
        """Initialize storage with the data directory (created if missing)."""
        self.home = pathlib.Path(home)
        self.home.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> pathlib.Path:
        return self.home / f"{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for key, or default if missing or unreadable."""
        return read_json(self._path(key), default)

    def set(self, key: str, value: Any) -> None:
        """Persist value for key atomically."""
        write_json(self._path(key), value)


class MemoryStorage:
    """In-process substitute for Storage; values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self.data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self.data:
            return default
        return copy.deepcopy(self.data[key])

    def set(self, key: str, value: Any) -> None:
        self.data[key] = copy.deepcopy(value)
