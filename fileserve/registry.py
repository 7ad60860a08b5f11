import logging
import os
import sqlite3
import uuid
from pathlib import Path
from typing import List, Optional

from .errors import (
    FileTooLargeError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    StorageFaultError,
)
from .models import FileEntry
from .storage import format_timestamp, get_db, utc_now

# size_bytes is a signed 64-bit INTEGER column in SQLite.
MAX_FILE_SIZE_BYTES = 2**63 - 1

logger = logging.getLogger("fileserve.registry")


def _validate_path(path: str) -> str:
    if not isinstance(path, (str, os.PathLike)):
        raise InvalidInputError("Path must be a string")
    text = os.fspath(path)
    if not isinstance(text, str) or not text.strip():
        raise InvalidInputError("Path cannot be empty")
    if "\x00" in text:
        raise InvalidInputError("Path cannot contain NUL characters")
    return text


def canonicalize_path(path: str) -> Path:
    """Resolve *path* to its absolute form with symlinks followed.

    Raises :class:`NotFoundError` if nothing exists at the path.
    """

    text = _validate_path(path)
    try:
        return Path(text).expanduser().resolve(strict=True)
    except FileNotFoundError as error:
        raise NotFoundError(f"No such file: {text}") from error
    except PermissionError as error:
        raise PermissionDeniedError(f"Cannot resolve path: {text}") from error
    except (OSError, RuntimeError) as error:
        # RuntimeError covers symlink loops on older interpreters.
        raise InvalidInputError(f"Cannot resolve path {text}: {error}") from error


def _lookup_key(path: str) -> str:
    try:
        return str(canonicalize_path(path))
    except NotFoundError:
        text = _validate_path(path)
        return os.path.normpath(os.path.abspath(os.path.expanduser(text)))


def _select_by_path(conn: sqlite3.Connection, abs_path: str) -> Optional[FileEntry]:
    row = conn.execute(
        "SELECT id, abs_path, name, size_bytes, created_at FROM file WHERE abs_path = ?",
        (abs_path,),
    ).fetchone()
    return FileEntry.from_row(row) if row else None


def register_or_get_file(path: str) -> FileEntry:
    """Return the registry entry for *path*, creating it on first sight.

    Re-registering a path that canonicalises to an existing entry returns that
    entry unchanged. A concurrent registration of the same path that wins the
    insert race is treated the same way.
    """

    canonical = canonicalize_path(path)
    abs_path = str(canonical)

    with get_db() as conn:
        existing = _select_by_path(conn, abs_path)
    if existing is not None:
        logger.debug("file_register_existing file_id=%s path=%s", existing.id, abs_path)
        return existing

    if canonical.is_dir():
        raise InvalidInputError(f"Path is a directory: {abs_path}")

    try:
        size_bytes = canonical.stat().st_size
    except FileNotFoundError as error:
        raise NotFoundError(f"No such file: {abs_path}") from error
    except PermissionError as error:
        raise PermissionDeniedError(f"Cannot read metadata for {abs_path}") from error
    except OSError as error:
        raise PermissionDeniedError(f"Cannot read metadata for {abs_path}: {error}") from error

    if size_bytes > MAX_FILE_SIZE_BYTES:
        raise FileTooLargeError(abs_path, size_bytes)

    entry = FileEntry(
        id=str(uuid.uuid4()),
        abs_path=abs_path,
        name=canonical.name or "unnamed",
        size_bytes=size_bytes,
        created_at=format_timestamp(utc_now()),
    )

    try:
        with get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO file (id, abs_path, name, size_bytes, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.id, entry.abs_path, entry.name, entry.size_bytes, entry.created_at),
            )
    except sqlite3.IntegrityError as error:
        if "abs_path" not in str(error):
            logger.error("file_register_integrity_error path=%s error=%s", abs_path, error)
            raise StorageFaultError(str(error)) from error
        with get_db() as conn:
            winner = _select_by_path(conn, abs_path)
        if winner is None:
            # The winning row was deleted again before we could read it.
            raise StorageFaultError(f"Concurrent registration of {abs_path} vanished") from error
        logger.info("file_register_race_resolved file_id=%s path=%s", winner.id, abs_path)
        return winner

    logger.info(
        "file_registered file_id=%s path=%s size=%d",
        entry.id,
        entry.abs_path,
        entry.size_bytes,
    )
    return entry


def get_file_by_path(path: str) -> Optional[FileEntry]:
    abs_path = _lookup_key(path)
    with get_db() as conn:
        return _select_by_path(conn, abs_path)


def get_file(file_id: str) -> Optional[FileEntry]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT id, abs_path, name, size_bytes, created_at FROM file WHERE id = ?",
            (file_id,),
        ).fetchone()
    return FileEntry.from_row(row) if row else None


def list_files() -> List[FileEntry]:
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT id, abs_path, name, size_bytes, created_at
            FROM file ORDER BY created_at DESC, rowid DESC
            """
        ).fetchall()
    return [FileEntry.from_row(row) for row in rows]


def delete_file(file_id: str) -> bool:
    """Delete a file entry; its shares go with it through the FK cascade."""

    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute("DELETE FROM file WHERE id = ?", (file_id,))
        deleted = cursor.rowcount > 0

    if deleted:
        logger.info("file_deleted file_id=%s", file_id)
    return deleted
