"""Records returned by the file registry and share store.

Rows come straight from ``sqlite3.Row`` objects; ``to_dict`` renders them for
JSON responses.
"""

import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class FileEntry:
    id: str
    abs_path: str
    name: str
    size_bytes: int
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileEntry":
        return cls(
            id=row["id"],
            abs_path=row["abs_path"],
            name=row["name"],
            size_bytes=int(row["size_bytes"]),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Share:
    slug: str
    file_id: str
    expires_at: Optional[str]
    max_downloads: Optional[int]
    dl_count: int
    password_hash: Optional[str]
    created_at: str

    @property
    def password_required(self) -> bool:
        return self.password_hash is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Share":
        return cls(
            slug=row["slug"],
            file_id=row["file_id"],
            expires_at=row["expires_at"],
            max_downloads=row["max_downloads"],
            dl_count=int(row["dl_count"]),
            password_hash=row["password_hash"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        """Admin-facing view; the password hash never leaves the process."""

        payload = asdict(self)
        payload.pop("password_hash")
        payload["password_required"] = self.password_required
        return payload


@dataclass(frozen=True)
class PublicShare:
    """What an anonymous caller may see before presenting a password."""

    slug: str
    file_name: str
    file_size: int
    created_at: str
    dl_count: int
    max_downloads: Optional[int]
    expires_at: Optional[str]
    password_required: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PublicShare":
        return cls(
            slug=row["slug"],
            file_name=row["file_name"],
            file_size=int(row["file_size"]),
            created_at=row["created_at"],
            dl_count=int(row["dl_count"]),
            max_downloads=row["max_downloads"],
            expires_at=row["expires_at"],
            password_required=bool(row["password_required"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
