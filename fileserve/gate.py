"""Redemption-time access decisions for shares.

Each call to :func:`redeem` runs the checks in a fixed order (lookup,
expiry, quota, password) and ends in exactly one :class:`RedeemStatus`.
Admission bumps the share's download counter with a single conditional
UPDATE, so concurrent redemptions can never push it past the quota.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .logs import sanitize_log_value
from .passwords import burn_verification, verify_password
from .shares import get_share
from .storage import format_timestamp, get_db, utc_now

logger = logging.getLogger("fileserve.gate")


class RedeemStatus(enum.Enum):
    ADMITTED = "admitted"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class Redemption:
    status: RedeemStatus
    path: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.status is RedeemStatus.ADMITTED


def _deny(slug: str, status: RedeemStatus) -> Redemption:
    logger.info(
        "share_redeem_denied slug=%s reason=%s", sanitize_log_value(slug), status.value
    )
    return Redemption(status)


def _admit(slug: str, stamp: str) -> Redemption:
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            """
            UPDATE share
            SET dl_count = dl_count + 1
            WHERE slug = ?
              AND (max_downloads IS NULL OR dl_count < max_downloads)
              AND (expires_at IS NULL OR expires_at > ?)
            """,
            (slug, stamp),
        )
        if cursor.rowcount == 1:
            target = conn.execute(
                """
                SELECT f.abs_path AS abs_path, f.name AS name, s.dl_count AS dl_count
                FROM share s
                JOIN file f ON s.file_id = f.id
                WHERE s.slug = ?
                """,
                (slug,),
            ).fetchone()
            current = None
        else:
            target = None
            current = conn.execute(
                "SELECT expires_at FROM share WHERE slug = ?", (slug,)
            ).fetchone()

    if target is not None:
        logger.info(
            "share_redeemed slug=%s dl_count=%d", sanitize_log_value(slug), target["dl_count"]
        )
        return Redemption(
            RedeemStatus.ADMITTED, path=target["abs_path"], display_name=target["name"]
        )

    # Lost a race between the checks and the update.
    if current is None:
        return _deny(slug, RedeemStatus.NOT_FOUND)
    if current["expires_at"] is not None and stamp >= current["expires_at"]:
        return _deny(slug, RedeemStatus.EXPIRED)
    return _deny(slug, RedeemStatus.QUOTA_EXCEEDED)


def check_password(slug: str, password: Optional[str] = None) -> RedeemStatus:
    """Verify *password* for *slug* without spending a download.

    Returns ``ADMITTED`` when the password matches or the share has none,
    ``UNAUTHORIZED`` on a mismatch and ``NOT_FOUND`` for unknown slugs.
    """

    supplied = password if isinstance(password, str) else ""

    share = get_share(slug) if isinstance(slug, str) and slug else None
    if share is None:
        burn_verification(supplied)
        logger.info("share_password_check slug=%s result=not_found", sanitize_log_value(str(slug)))
        return RedeemStatus.NOT_FOUND

    if share.password_hash is not None and not verify_password(supplied, share.password_hash):
        logger.info("share_password_check slug=%s result=unauthorized", sanitize_log_value(slug))
        return RedeemStatus.UNAUTHORIZED
    return RedeemStatus.ADMITTED


def redeem(
    slug: str, password: Optional[str] = None, now: Optional[datetime] = None
) -> Redemption:
    """Decide whether *slug* may be downloaded with *password*.

    On admission the download counter has already been incremented and the
    result carries the file's canonical path and display name. Denials leave
    the counter untouched.
    """

    stamp = format_timestamp(now or utc_now())
    supplied = password if isinstance(password, str) else ""

    share = get_share(slug) if isinstance(slug, str) and slug else None
    if share is None:
        # Keep unknown slugs as slow as a wrong password.
        burn_verification(supplied)
        return _deny(str(slug), RedeemStatus.NOT_FOUND)

    if share.expires_at is not None and stamp >= share.expires_at:
        return _deny(slug, RedeemStatus.EXPIRED)

    if share.max_downloads is not None and share.dl_count >= share.max_downloads:
        return _deny(slug, RedeemStatus.QUOTA_EXCEEDED)

    if share.password_hash is not None and not verify_password(supplied, share.password_hash):
        return _deny(slug, RedeemStatus.UNAUTHORIZED)

    return _admit(slug, stamp)
