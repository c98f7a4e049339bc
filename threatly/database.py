"""SQLite database operations for Threatly."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "threatly.db"

# --- Dataclasses ---


@dataclass
class Article:
    """An ingested article plus the classification written back onto it."""

    id: int | None
    link: str
    title: str
    content: str | None
    source: str | None
    published_at: str | None
    collected_at: str | None = None
    threat_level: str | None = None
    threat_type: str | None = None
    industries: list[str] = field(default_factory=list)
    is_spam: bool = False
    alert_matches: list[int] = field(default_factory=list)
    classified_at: str | None = None
    last_updated: str | None = None
    read: bool = False
    saved: bool = False

    @property
    def is_classified(self) -> bool:
        return self.classified_at is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Article":
        industries = json.loads(row["industries"]) if row["industries"] else []
        matches = json.loads(row["alert_matches"]) if row["alert_matches"] else []
        return cls(
            id=row["id"],
            link=row["link"],
            title=row["title"],
            content=row["content"],
            source=row["source"],
            published_at=row["published_at"],
            collected_at=row["collected_at"],
            threat_level=row["threat_level"],
            threat_type=row["threat_type"],
            industries=industries,
            is_spam=bool(row["is_spam"]),
            alert_matches=matches,
            classified_at=row["classified_at"],
            last_updated=row["last_updated"],
            read=bool(row["read"]),
            saved=bool(row["saved"]),
        )


@dataclass
class Keyword:
    """Alert rule the LLM matches articles against."""

    id: int | None
    name: str
    display_name: str
    description: str
    owner: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Keyword":
        return cls(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"] or row["name"],
            description=row["description"] or "",
            owner=row["owner"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class PromptTemplate:
    """Operator-maintained prompt text, optionally with {alerts}/{articles}."""

    id: int | None
    name: str
    content: str
    is_active: bool
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PromptTemplate":
        return cls(
            id=row["id"],
            name=row["name"],
            content=row["content"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# --- Schema ---

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS articles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    link TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    content TEXT,
    source TEXT,
    published_at TEXT,
    collected_at TEXT DEFAULT (datetime('now')),
    threat_level TEXT,
    threat_type TEXT,
    industries TEXT,
    is_spam INTEGER DEFAULT 0,
    alert_matches TEXT,
    classified_at TEXT,
    last_updated TEXT,
    read INTEGER DEFAULT 0,
    saved INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS keywords (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    display_name TEXT,
    description TEXT NOT NULL,
    owner TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS prompts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    is_active INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS run_leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_articles_link ON articles(link);
CREATE INDEX IF NOT EXISTS idx_articles_classified ON articles(classified_at);
CREATE INDEX IF NOT EXISTS idx_prompts_active ON prompts(is_active);
"""


# --- Database class ---


class Database:
    """SQLite database operations."""

    def __init__(self, db_path: str = f"data/{DEFAULT_DB_NAME}"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)

    @contextmanager
    def connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Articles ---

    def insert_article(
        self,
        link: str,
        title: str,
        content: str | None = None,
        source: str | None = None,
        published_at: str | None = None,
    ) -> int | None:
        """Insert an article. Returns ID on success, None if the link is known."""
        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    """INSERT INTO articles (link, title, content, source, published_at)
                    VALUES (?, ?, ?, ?, ?)""",
                    (link, title, content, source, published_at),
                )
                return cursor.lastrowid
            except sqlite3.IntegrityError:
                return None

    def get_article_by_id(self, article_id: int) -> Article | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM articles WHERE id = ?", (article_id,)
            ).fetchone()
            return Article.from_row(row) if row else None

    def find_unclassified(self, limit: int) -> list[Article]:
        """Get articles with a title and content that have never been classified."""
        with self.connection() as conn:
            rows = conn.execute(
                """SELECT * FROM articles
                WHERE title IS NOT NULL AND TRIM(title) != ''
                  AND content IS NOT NULL AND TRIM(content) != ''
                  AND classified_at IS NULL
                ORDER BY id ASC
                LIMIT ?""",
                (limit,),
            ).fetchall()
            return [Article.from_row(r) for r in rows]

    def update_article_classification(
        self,
        article_id: int,
        threat_level: str,
        threat_type: str,
        industries: list[str],
        is_spam: bool,
        alert_matches: list[int],
    ) -> bool:
        """Write classification fields onto an article.

        Only the classification columns are touched, so user-driven read and
        saved state survives. Returns False if the article no longer exists.
        """
        now = _utcnow()
        with self.connection() as conn:
            cursor = conn.execute(
                """UPDATE articles
                SET threat_level = ?, threat_type = ?, industries = ?, is_spam = ?,
                    alert_matches = ?, classified_at = ?, last_updated = ?
                WHERE id = ?""",
                (
                    threat_level,
                    threat_type,
                    json.dumps(industries),
                    int(is_spam),
                    json.dumps(alert_matches),
                    now,
                    now,
                    article_id,
                ),
            )
            return cursor.rowcount > 0

    def reset_classification(self, article_ids: list[int] | None = None) -> int:
        """Make articles eligible for classification again.

        With no ids, every article is reset. Returns the number of rows reset.
        """
        query = """UPDATE articles
            SET threat_level = NULL, threat_type = NULL, industries = NULL,
                is_spam = 0, alert_matches = NULL, classified_at = NULL,
                last_updated = ?
            WHERE classified_at IS NOT NULL"""
        params: list = [_utcnow()]
        if article_ids is not None:
            if not article_ids:
                return 0
            query += f" AND id IN ({', '.join('?' for _ in article_ids)})"
            params.extend(article_ids)

        with self.connection() as conn:
            return conn.execute(query, params).rowcount

    def mark_read(self, article_id: int, read: bool = True) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE articles SET read = ? WHERE id = ?", (int(read), article_id)
            )

    def mark_saved(self, article_id: int, saved: bool = True) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE articles SET saved = ? WHERE id = ?", (int(saved), article_id)
            )

    # --- Keywords ---

    def insert_keyword(
        self,
        name: str,
        description: str,
        display_name: str | None = None,
        owner: str | None = None,
    ) -> int | None:
        """Insert an alert keyword. Returns ID, or None if the name is taken."""
        key = name.strip().lower()
        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    """INSERT INTO keywords (name, display_name, description, owner)
                    VALUES (?, ?, ?, ?)""",
                    (key, display_name or name.strip(), description, owner),
                )
                return cursor.lastrowid
            except sqlite3.IntegrityError:
                return None

    def list_keywords(self) -> list[Keyword]:
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM keywords ORDER BY id ASC").fetchall()
            return [Keyword.from_row(r) for r in rows]

    def get_keyword(self, keyword_id: int) -> Keyword | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM keywords WHERE id = ?", (keyword_id,)
            ).fetchone()
            return Keyword.from_row(row) if row else None

    def update_keyword(
        self,
        keyword_id: int,
        display_name: str | None = None,
        description: str | None = None,
    ) -> None:
        updates = []
        params: list = []
        if display_name is not None:
            updates.append("display_name = ?")
            params.append(display_name)
        if description is not None:
            updates.append("description = ?")
            params.append(description)
        if not updates:
            return
        updates.append("updated_at = datetime('now')")
        params.append(keyword_id)

        with self.connection() as conn:
            conn.execute(
                f"UPDATE keywords SET {', '.join(updates)} WHERE id = ?",
                params,
            )

    def delete_keyword(self, keyword_id: int) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM keywords WHERE id = ?", (keyword_id,))

    # --- Prompts ---

    def insert_prompt(self, name: str, content: str, activate: bool = False) -> int:
        with self.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO prompts (name, content) VALUES (?, ?)",
                (name, content),
            )
            prompt_id = cursor.lastrowid
        if activate:
            self.activate_prompt(prompt_id)
        return prompt_id

    def list_prompts(self) -> list[PromptTemplate]:
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM prompts ORDER BY id ASC").fetchall()
            return [PromptTemplate.from_row(r) for r in rows]

    def get_prompt(self, prompt_id: int) -> PromptTemplate | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM prompts WHERE id = ?", (prompt_id,)
            ).fetchone()
            return PromptTemplate.from_row(row) if row else None

    def get_active_prompt(self) -> PromptTemplate | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM prompts WHERE is_active = 1 ORDER BY updated_at DESC LIMIT 1"
            ).fetchone()
            return PromptTemplate.from_row(row) if row else None

    def activate_prompt(self, prompt_id: int) -> bool:
        """Make one prompt the active one, deactivating all others."""
        with self.connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM prompts WHERE id = ?", (prompt_id,)
            ).fetchone()
            if not exists:
                return False
            conn.execute(
                "UPDATE prompts SET is_active = 0, updated_at = datetime('now') WHERE is_active = 1"
            )
            conn.execute(
                "UPDATE prompts SET is_active = 1, updated_at = datetime('now') WHERE id = ?",
                (prompt_id,),
            )
            return True

    def deactivate_prompts(self) -> None:
        """Fall back to the built-in default prompt."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE prompts SET is_active = 0, updated_at = datetime('now') WHERE is_active = 1"
            )

    # --- Run leases ---

    def acquire_lease(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Take a named lease unless a live one is held by someone else."""
        now = datetime.now(timezone.utc)
        expires = now + timedelta(seconds=ttl_seconds)
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM run_leases WHERE name = ? AND expires_at <= ?",
                (name, now.isoformat()),
            )
            cursor = conn.execute(
                """INSERT OR IGNORE INTO run_leases (name, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)""",
                (name, owner, now.isoformat(), expires.isoformat()),
            )
            return cursor.rowcount > 0

    def renew_lease(self, name: str, owner: str, ttl_seconds: int) -> bool:
        """Push back the expiry of a lease; False once someone else holds it."""
        expires = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE run_leases SET expires_at = ? WHERE name = ? AND owner = ?",
                (expires.isoformat(), name, owner),
            )
            return cursor.rowcount > 0

    def release_lease(self, name: str, owner: str) -> None:
        with self.connection() as conn:
            conn.execute(
                "DELETE FROM run_leases WHERE name = ? AND owner = ?", (name, owner)
            )

    # --- Stats ---

    def get_stats(self) -> dict:
        with self.connection() as conn:
            total = conn.execute("SELECT COUNT(*) as c FROM articles").fetchone()["c"]
            classified = conn.execute(
                "SELECT COUNT(*) as c FROM articles WHERE classified_at IS NOT NULL"
            ).fetchone()["c"]
            matched = conn.execute(
                """SELECT COUNT(*) as c FROM articles
                WHERE alert_matches IS NOT NULL AND alert_matches != '[]'"""
            ).fetchone()["c"]
            spam = conn.execute(
                "SELECT COUNT(*) as c FROM articles WHERE is_spam = 1"
            ).fetchone()["c"]
            levels = conn.execute(
                """SELECT threat_level, COUNT(*) as c FROM articles
                WHERE classified_at IS NOT NULL GROUP BY threat_level"""
            ).fetchall()
            keywords = conn.execute("SELECT COUNT(*) as c FROM keywords").fetchone()["c"]
            prompts = conn.execute("SELECT COUNT(*) as c FROM prompts").fetchone()["c"]

            return {
                "total_articles": total,
                "classified_articles": classified,
                "unclassified_articles": total - classified,
                "matched_articles": matched,
                "spam_articles": spam,
                "threat_levels": {r["threat_level"]: r["c"] for r in levels},
                "keywords": keywords,
                "prompts": prompts,
            }


# --- Utility functions ---


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# --- Singleton ---

_db_instance: Database | None = None


def get_db(db_path: str | None = None, data_dir: str | None = None) -> Database:
    """Get or create the singleton Database instance."""
    global _db_instance
    if _db_instance is None:
        if db_path is None:
            db_path = str(Path(data_dir or "data") / DEFAULT_DB_NAME)
        _db_instance = Database(db_path)
    return _db_instance


def reset_db() -> None:
    """Reset the singleton (for testing)."""
    global _db_instance
    _db_instance = None
