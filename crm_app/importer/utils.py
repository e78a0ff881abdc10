"""Storage for uploaded CSV files awaiting import."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator
from uuid import uuid4

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from crm_app.utils.logging_config import get_importer_logger

DEFAULT_UPLOAD_SUBDIR = "import_uploads"
CSV_EXTENSIONS: tuple[str, ...] = ("csv", "tsv", "txt")


def resolve_upload_directory(app) -> Path:
    """Return the upload directory, creating it on demand.

    ``IMPORTER_UPLOAD_DIR`` may be absolute or relative to the instance folder.
    """
    configured = app.config.get("IMPORTER_UPLOAD_DIR") or DEFAULT_UPLOAD_SUBDIR
    upload_dir = Path(configured)
    if not upload_dir.is_absolute():
        upload_dir = Path(app.instance_path) / upload_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str | None, allowed_extensions: Iterable[str] = CSV_EXTENSIONS) -> bool:
    suffix = Path(filename or "").suffix.lstrip(".").lower()
    return bool(suffix) and suffix in {ext.lower() for ext in allowed_extensions}


def display_filename(file_storage: FileStorage) -> str:
    """Name recorded on the job; never used as a filesystem path."""
    return secure_filename(file_storage.filename or "") or "upload.csv"


def persist_upload(file_storage: FileStorage, app) -> Path:
    """Save an upload under a random name in the upload directory and return its path."""
    suffix = Path(display_filename(file_storage)).suffix or ".csv"
    target = resolve_upload_directory(app) / f"{uuid4().hex}{suffix}"
    file_storage.save(target)
    get_importer_logger().debug("Stored upload %s as %s", file_storage.filename, target)
    return target


def cleanup_upload(path: Path | str) -> None:
    """Delete a stored upload; failures are logged, not raised."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        get_importer_logger().warning("Could not delete upload %s: %s", path, exc)


def stale_uploads(upload_dir: Path, max_age: timedelta) -> Iterator[Path]:
    """Yield files in ``upload_dir`` last modified more than ``max_age`` ago."""
    cutoff = datetime.now(timezone.utc) - max_age
    for path in upload_dir.iterdir():
        try:
            if not path.is_file():
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except FileNotFoundError:  # deleted by a finishing job
            continue
        if modified < cutoff:
            yield path
