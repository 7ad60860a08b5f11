import logging
import sqlite3
from datetime import datetime
from typing import List, Optional, Union

from .errors import InvalidInputError, NotFoundError, StorageFaultError
from .models import PublicShare, Share
from .passwords import hash_password
from .slugs import SlugAllocator, default_allocator
from .storage import format_timestamp, get_db, parse_timestamp, utc_now

MAX_DOWNLOADS_LIMIT = 2**63 - 1

_SHARE_COLUMNS = "slug, file_id, expires_at, max_downloads, dl_count, password_hash, created_at"

logger = logging.getLogger("fileserve.shares")


def _normalize_quota(max_downloads: Optional[int]) -> Optional[int]:
    if max_downloads is None:
        return None
    if isinstance(max_downloads, bool) or not isinstance(max_downloads, int):
        raise InvalidInputError("max_downloads must be an integer")
    if max_downloads < 1:
        raise InvalidInputError("max_downloads must be at least 1")
    if max_downloads > MAX_DOWNLOADS_LIMIT:
        raise InvalidInputError("max_downloads is too large")
    return max_downloads


def _normalize_expiry(expires_at: Union[str, datetime, None]) -> Optional[str]:
    if expires_at is None:
        return None
    if isinstance(expires_at, str) and not expires_at.strip():
        return None
    parsed = parse_timestamp(expires_at)
    try:
        return format_timestamp(parsed)
    except (OverflowError, ValueError) as error:
        raise InvalidInputError(f"Invalid timestamp: {expires_at!r}") from error


def _file_exists(file_id: str) -> bool:
    with get_db() as conn:
        row = conn.execute(
            "SELECT EXISTS(SELECT 1 FROM file WHERE id = ?) AS present", (file_id,)
        ).fetchone()
    return bool(row["present"])


def _slug_exists(slug: str) -> bool:
    with get_db() as conn:
        row = conn.execute(
            "SELECT EXISTS(SELECT 1 FROM share WHERE slug = ?) AS present", (slug,)
        ).fetchone()
    return bool(row["present"])


def create_share(
    file_id: str,
    expires_at: Union[str, datetime, None] = None,
    max_downloads: Optional[int] = None,
    password: Optional[str] = None,
    allocator: Optional[SlugAllocator] = None,
) -> Share:
    """Issue a new share for an existing file.

    An empty password means the share is not password protected. The file
    must exist when the share row is inserted; the foreign key turns a file
    deleted mid-call into :class:`NotFoundError`.
    """

    expires_text = _normalize_expiry(expires_at)
    quota = _normalize_quota(max_downloads)

    if not isinstance(file_id, str) or not file_id:
        raise InvalidInputError("file_id is required")
    if not _file_exists(file_id):
        raise NotFoundError(f"File not found: {file_id}")

    password_hash = hash_password(password) if password else None
    allocator = allocator or default_allocator

    # candidates() raises AllocationExhaustedError once its budget is spent.
    for slug in allocator.candidates(_slug_exists):
        created_at = format_timestamp(utc_now())
        try:
            with get_db() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    """
                    INSERT INTO share (
                        slug,
                        file_id,
                        expires_at,
                        max_downloads,
                        dl_count,
                        password_hash,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, 0, ?, ?)
                    """,
                    (slug, file_id, expires_text, quota, password_hash, created_at),
                )
                row = conn.execute(
                    f"SELECT {_SHARE_COLUMNS} FROM share WHERE slug = ?", (slug,)
                ).fetchone()
        except sqlite3.IntegrityError as error:
            message = str(error)
            if "FOREIGN KEY" in message:
                logger.info("share_create_file_vanished file_id=%s", file_id)
                raise NotFoundError(f"File not found: {file_id}") from error
            if "share.slug" in message:
                logger.warning("share_slug_insert_collision file_id=%s", file_id)
                continue
            logger.error("share_create_integrity_error file_id=%s error=%s", file_id, error)
            raise StorageFaultError(message) from error

        share = Share.from_row(row)
        logger.info(
            "share_created slug=%s file_id=%s expires_at=%s max_downloads=%s password_required=%s",
            share.slug,
            share.file_id,
            share.expires_at,
            share.max_downloads,
            share.password_required,
        )
        return share


def get_share(slug: str) -> Optional[Share]:
    with get_db() as conn:
        row = conn.execute(
            f"SELECT {_SHARE_COLUMNS} FROM share WHERE slug = ?", (slug,)
        ).fetchone()
    return Share.from_row(row) if row else None


def list_shares() -> List[Share]:
    with get_db() as conn:
        rows = conn.execute(
            f"SELECT {_SHARE_COLUMNS} FROM share ORDER BY created_at DESC, rowid DESC"
        ).fetchall()
    return [Share.from_row(row) for row in rows]


def list_shares_for_file(file_id: str) -> List[Share]:
    with get_db() as conn:
        rows = conn.execute(
            f"""
            SELECT {_SHARE_COLUMNS} FROM share
            WHERE file_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (file_id,),
        ).fetchall()
    return [Share.from_row(row) for row in rows]


def get_public_share(slug: str) -> Optional[PublicShare]:
    with get_db() as conn:
        row = conn.execute(
            """
            SELECT
                s.slug AS slug,
                f.name AS file_name,
                f.size_bytes AS file_size,
                f.created_at AS created_at,
                s.dl_count AS dl_count,
                s.max_downloads AS max_downloads,
                s.expires_at AS expires_at,
                s.password_hash IS NOT NULL AS password_required
            FROM share s
            JOIN file f ON s.file_id = f.id
            WHERE s.slug = ?
            """,
            (slug,),
        ).fetchone()
    return PublicShare.from_row(row) if row else None


def delete_share(slug: str) -> bool:
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute("DELETE FROM share WHERE slug = ?", (slug,))
        deleted = cursor.rowcount > 0

    if deleted:
        logger.info("share_deleted slug=%s", slug)
    return deleted


def purge_spent_shares(now: Optional[datetime] = None) -> int:
    """Delete shares that can never be redeemed again.

    That is every share past its expiry or with its download quota used up.
    """

    cutoff = format_timestamp(now or utc_now())
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            """
            DELETE FROM share
            WHERE (expires_at IS NOT NULL AND expires_at <= ?)
               OR (max_downloads IS NOT NULL AND dl_count >= max_downloads)
            """,
            (cutoff,),
        )
        removed = cursor.rowcount

    if removed:
        logger.info("share_purge_completed removed=%d", removed)
    return removed
