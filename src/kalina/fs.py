# kalina: Filesystem helpers shared by storage and the CLI (tolerant JSON reads, atomic JSON writes, attachment loading).

import base64
import json
import mimetypes
import pathlib
from typing import Any, Dict


def read_json(path: pathlib.Path, default: Any) -> Any:
    """Read JSON from path; return default if file is missing or invalid."""
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except Exception:
        return default


def write_json(path: pathlib.Path, obj: Any) -> None:
    """Atomically write a JSON object to path (UTF-8, pretty-printed)."""
    tmp = path.with_suffix(".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
    tmp.replace(path)


# kalina: Attachments travel as base64 + mime type; the mime type is guessed from the suffix.
def load_attachment(path: pathlib.Path) -> Dict[str, str]:
    """Read a local file into an attachment dict: base64, mime_type, name."""
    data = path.read_bytes()
    mime, _ = mimetypes.guess_type(path.name)
    return {
        "base64": base64.b64encode(data).decode("ascii"),
        "mime_type": mime or "application/octet-stream",
        "name": path.name,
    }
