from __future__ import annotations

import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path


@dataclass(slots=True)
class StoredFile:
    path: Path
    filename: str
    content_type: str


_FILE_INDEX: dict[uuid.UUID, StoredFile] = {}


def _base_dir() -> Path:
    base = Path(tempfile.gettempdir()) / "bookops_files"
    base.mkdir(parents=True, exist_ok=True)
    return base


def store_bytes(content: bytes, filename: str, content_type: str) -> uuid.UUID:
    file_id = uuid.uuid4()
    safe_name = Path(filename).name if filename else "file.bin"
    extension = Path(safe_name).suffix or ".bin"
    file_path = _base_dir() / f"{file_id}{extension}"
    file_path.write_bytes(content)
    _FILE_INDEX[file_id] = StoredFile(path=file_path, filename=safe_name, content_type=content_type or "application/octet-stream")
    return file_id


def get_bytes(file_id: uuid.UUID) -> bytes:
    stored = _FILE_INDEX.get(file_id)
    if stored is None or not stored.path.exists():
        raise FileNotFoundError(f"file_id not found: {file_id}")
    return stored.path.read_bytes()


def get_metadata(file_id: uuid.UUID) -> StoredFile:
    stored = _FILE_INDEX.get(file_id)
    if stored is None:
        raise FileNotFoundError(f"file_id not found: {file_id}")
    return stored
