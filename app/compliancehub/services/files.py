from pathlib import Path
import hashlib
import uuid
from fastapi import UploadFile, HTTPException
from compliancehub.core.config import get_settings

ALLOWED_MIME = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
ALLOWED_EXT = {".pdf", ".jpg", ".jpeg", ".png", ".doc", ".docx"}


def storage_root() -> Path:
    return Path(get_settings().storage_dir)


def store_upload(file: UploadFile, folder: str) -> tuple[str, int, str]:
    """Write an upload below the storage root.

    Returns the path relative to the storage root, the size and the sha256.
    """
    settings = get_settings()
    content = file.file.read()
    size = len(content)
    if size > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail="File too large")

    ext = Path(file.filename or "").suffix.lower()
    if file.content_type not in ALLOWED_MIME or ext not in ALLOWED_EXT:
        raise HTTPException(status_code=400, detail="Unsupported file type")

    target = storage_root() / folder
    target.mkdir(parents=True, exist_ok=True)
    filename = f"{uuid.uuid4().hex}{ext}"
    (target / filename).write_bytes(content)

    checksum = hashlib.sha256(content).hexdigest()
    return f"{folder}/{filename}", size, checksum


def resolve(relative_path: str) -> Path:
    root = storage_root().resolve()
    path = (root / relative_path).resolve()
    if root not in path.parents:
        raise HTTPException(status_code=400, detail="Invalid file path")
    return path


def delete_stored(relative_path: str | None) -> bool:
    if not relative_path:
        return False
    path = resolve(relative_path)
    if path.is_file():
        path.unlink()
        return True
    return False
