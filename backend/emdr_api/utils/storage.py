"""Local file storage for uploaded student documents."""

import re
import time
from pathlib import Path

from ..config import settings

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    """Reduce `name` to a filesystem-safe basename."""
    base = Path(name.replace("\\", "/")).name
    cleaned = _UNSAFE.sub("_", base).strip("._")
    return cleaned or "upload"


def save_upload(student_id: int, file_name: str, content: bytes, root: Path = None) -> Path:
    """Write `content` under `<root>/<student_id>/` and return the stored path.

    Stored names are prefixed with a millisecond timestamp so repeated
    uploads of the same file never overwrite each other.
    """
    root = Path(root or settings.UPLOAD_DIR)
    target_dir = root / str(student_id)
    target_dir.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    target = target_dir / f"{stamp}_{safe_filename(file_name)}"
    while target.exists():
        stamp += 1
        target = target_dir / f"{stamp}_{safe_filename(file_name)}"
    target.write_bytes(content)
    return target
