"""
SQLite persistence for StreetSage reviews, area suggestions and estates.

Lightweight design. No ORM — just raw sqlite3.
Works locally and on a single host without additional services; the
submission log lives here too so every gunicorn worker shares one
rate-limit window.

Every function opens its connection under contextlib.closing(), so a
failed write is discarded and the connection released instead of leaving
the database locked.

Visibility rule for public reads (status = 'approved' AND deleted_at IS
NULL) is enforced in the SQL of list_approved_reviews(), not by callers.
"""

import hashlib
import logging
import os
import sqlite3
import uuid
from contextlib import closing
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("STREETSAGE_DB_PATH", "streetsage.db")

REVIEW_VIEWS = ("pending", "approved", "rejected", "deleted")
SUGGESTION_VIEWS = ("pending", "approved", "rejected")

_PUBLIC_REVIEW_COLUMNS = (
    "id, created_at, county, town, estate, rating, title, body, author_name"
)


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id() -> str:
    """Short, URL-safe record ID (12 chars)."""
    return uuid.uuid4().hex[:12]


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    with closing(_get_db()) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS estates (
                id          TEXT PRIMARY KEY,
                county      TEXT NOT NULL,
                town        TEXT NOT NULL,
                name        TEXT NOT NULL,
                created_at  TEXT NOT NULL,
                UNIQUE (county, town, name)
            );

            CREATE TABLE IF NOT EXISTS reviews (
                id            TEXT PRIMARY KEY,
                county        TEXT NOT NULL,
                town          TEXT NOT NULL,
                estate        TEXT NOT NULL,
                rating        INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
                title         TEXT,
                body          TEXT NOT NULL,
                author_name   TEXT,
                author_email  TEXT,
                status        TEXT NOT NULL DEFAULT 'pending',
                deleted_at    TEXT,
                created_at    TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_reviews_place ON reviews(county, town, estate);
            CREATE INDEX IF NOT EXISTS idx_reviews_status ON reviews(status);
            CREATE INDEX IF NOT EXISTS idx_reviews_created ON reviews(created_at);

            CREATE TABLE IF NOT EXISTS suggestions (
                id             TEXT PRIMARY KEY,
                county         TEXT NOT NULL,
                town           TEXT NOT NULL,
                estate         TEXT NOT NULL,
                notes          TEXT,
                contact_email  TEXT,
                status         TEXT NOT NULL DEFAULT 'pending',
                created_at     TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_suggestions_status ON suggestions(status);

            -- Append-only anti-abuse log: one row per accepted submission
            CREATE TABLE IF NOT EXISTS submission_log (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                ip_hash     TEXT NOT NULL,
                inserted_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_submission_log_ip ON submission_log(ip_hash, inserted_at);

            -- Overpass API response cache for the place enrichment script
            CREATE TABLE IF NOT EXISTS overpass_cache (
                cache_key     TEXT PRIMARY KEY,
                response_json TEXT NOT NULL,
                created_at    TEXT NOT NULL
            );
        """)
        conn.commit()


# ---------------------------------------------------------------------------
# Estates (row-based place list)
# ---------------------------------------------------------------------------

def _insert_estate(conn, county: str, town: str, name: str) -> Optional[str]:
    """INSERT OR IGNORE on the caller's connection; the caller commits."""
    estate_id = generate_id()
    cur = conn.execute(
        """INSERT OR IGNORE INTO estates (id, county, town, name, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (estate_id, county, town, name, _now()),
    )
    return estate_id if cur.rowcount else None


def add_estate(county: str, town: str, name: str) -> Optional[str]:
    """Insert an estate row. Returns its id, or None if it already existed."""
    with closing(_get_db()) as conn:
        estate_id = _insert_estate(conn, county, town, name)
        conn.commit()
    return estate_id


def list_estates() -> List[dict]:
    with closing(_get_db()) as conn:
        rows = conn.execute(
            """SELECT id, name, town, county FROM estates
               ORDER BY county COLLATE NOCASE, town COLLATE NOCASE, name COLLATE NOCASE"""
        ).fetchall()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------

def create_review(county, town, estate, rating, body, title=None,
                  author_name=None, author_email=None) -> dict:
    """Insert a review in 'pending' state and return the stored row."""
    review_id = generate_id()
    with closing(_get_db()) as conn:
        conn.execute(
            """INSERT INTO reviews
               (id, county, town, estate, rating, title, body,
                author_name, author_email, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)""",
            (review_id, county, town, estate, int(rating), title or None, body,
             author_name or None, author_email or None, _now()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
    return dict(row)


def get_review(review_id: str) -> Optional[dict]:
    with closing(_get_db()) as conn:
        row = conn.execute("SELECT * FROM reviews WHERE id = ?", (review_id,)).fetchone()
    return dict(row) if row else None


def list_approved_reviews(county: str, town: str, estate: str, limit: int = 50) -> List[dict]:
    """Public feed for one place: approved, not deleted, newest first.

    Never selects author_email.
    """
    with closing(_get_db()) as conn:
        rows = conn.execute(
            f"""SELECT {_PUBLIC_REVIEW_COLUMNS} FROM reviews
                WHERE county = ? AND town = ? AND estate = ?
                  AND status = 'approved' AND deleted_at IS NULL
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?""",
            (county, town, estate, limit),
        ).fetchall()
    return [dict(row) for row in rows]


def list_reviews(view: str = "pending", limit: int = 500,
                 ids: Optional[Iterable[str]] = None) -> List[dict]:
    """Moderator listing. 'deleted' means soft-deleted in any status.

    When ids is given the view is ignored and exactly those rows are returned.
    """
    sql = "SELECT * FROM reviews"
    params: list = []
    id_list = list(ids) if ids is not None else None
    if id_list:
        sql += f" WHERE id IN ({', '.join('?' for _ in id_list)})"
        params.extend(id_list)
    elif view == "deleted":
        sql += " WHERE deleted_at IS NOT NULL"
    else:
        sql += " WHERE deleted_at IS NULL AND status = ?"
        params.append(view)
    sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
    params.append(limit)

    with closing(_get_db()) as conn:
        rows = conn.execute(sql, params).fetchall()
    return [dict(row) for row in rows]


def apply_review_changes(review_id: str, changes: Dict[str, Optional[str]],
                         expected_status: str, expected_deleted: bool) -> bool:
    """Compare-and-set update of status/deleted_at.

    Applies only if the row is still in the expected state, so two
    moderators acting on the same record cannot silently overwrite each
    other. Returns True if exactly one row changed.
    """
    allowed = {"status", "deleted_at"}
    if not changes or set(changes) - allowed:
        raise ValueError(f"Unsupported review changes: {sorted(changes)}")
    assignments = ", ".join(f"{col} = ?" for col in changes)
    deleted_clause = "deleted_at IS NOT NULL" if expected_deleted else "deleted_at IS NULL"

    with closing(_get_db()) as conn:
        cur = conn.execute(
            f"""UPDATE reviews SET {assignments}
                WHERE id = ? AND status = ? AND {deleted_clause}""",
            (*changes.values(), review_id, expected_status),
        )
        changed = cur.rowcount
        conn.commit()
    return changed == 1


# ---------------------------------------------------------------------------
# Area suggestions
# ---------------------------------------------------------------------------

def create_suggestion(county, town, estate, notes=None, contact_email=None) -> dict:
    suggestion_id = generate_id()
    with closing(_get_db()) as conn:
        conn.execute(
            """INSERT INTO suggestions
               (id, county, town, estate, notes, contact_email, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)""",
            (suggestion_id, county, town, estate, notes or None, contact_email or None, _now()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)).fetchone()
    return dict(row)


def get_suggestion(suggestion_id: str) -> Optional[dict]:
    with closing(_get_db()) as conn:
        row = conn.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)).fetchone()
    return dict(row) if row else None


def list_suggestions(view: str = "pending", limit: int = 500) -> List[dict]:
    with closing(_get_db()) as conn:
        rows = conn.execute(
            """SELECT * FROM suggestions WHERE status = ?
               ORDER BY created_at DESC, rowid DESC LIMIT ?""",
            (view, limit),
        ).fetchall()
    return [dict(row) for row in rows]


def set_suggestion_status(suggestion_id: str, new_status: str, expected_status: str) -> bool:
    """Move a suggestion to new_status and keep the estates table in step.

    One transaction: the compare-and-set on status, then the estate insert
    (on approval) or removal (when an approved suggestion is rejected).
    Approving an already-approved suggestion re-inserts a missing estate
    row. Returns False if the status no longer matched expected_status;
    a sqlite3.Error leaves nothing written.
    """
    with closing(_get_db()) as conn:
        if new_status != expected_status:
            cur = conn.execute(
                "UPDATE suggestions SET status = ? WHERE id = ? AND status = ?",
                (new_status, suggestion_id, expected_status),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False
        row = conn.execute(
            "SELECT county, town, estate FROM suggestions WHERE id = ?", (suggestion_id,)
        ).fetchone()
        if row is None:
            conn.rollback()
            return False

        if new_status == "approved":
            _insert_estate(conn, row["county"], row["town"], row["estate"])
        elif expected_status == "approved":
            # Keep the estate while another approved suggestion still names it
            still_named = conn.execute(
                """SELECT 1 FROM suggestions
                   WHERE county = ? AND town = ? AND estate = ? AND status = 'approved'""",
                (row["county"], row["town"], row["estate"]),
            ).fetchone()
            if still_named is None:
                conn.execute(
                    "DELETE FROM estates WHERE county = ? AND town = ? AND name = ?",
                    (row["county"], row["town"], row["estate"]),
                )
        conn.commit()
    return True


# ---------------------------------------------------------------------------
# Submission log (rate limiting)
# ---------------------------------------------------------------------------

def log_submission(ip_hash: str) -> None:
    with closing(_get_db()) as conn:
        conn.execute(
            "INSERT INTO submission_log (ip_hash, inserted_at) VALUES (?, ?)",
            (ip_hash, _now()),
        )
        conn.commit()


def count_recent_submissions(ip_hash: str, minutes: int = 60) -> int:
    """Submissions from ip_hash within the trailing window."""
    cutoff = (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()
    with closing(_get_db()) as conn:
        row = conn.execute(
            """SELECT COUNT(*) AS cnt FROM submission_log
               WHERE ip_hash = ? AND inserted_at >= ?""",
            (ip_hash, cutoff),
        ).fetchone()
    return row["cnt"] if row else 0


# ---------------------------------------------------------------------------
# Overpass API response cache
# ---------------------------------------------------------------------------

_OVERPASS_CACHE_TTL_DAYS = 7


def overpass_cache_key(query_string: str) -> str:
    """Generate a deterministic cache key from an Overpass query string."""
    return hashlib.sha256(query_string.encode()).hexdigest()


def get_overpass_cache(cache_key: str, ttl_days: Optional[int] = None) -> Optional[str]:
    """Look up a cached Overpass response by key.

    Returns the raw JSON string if found and younger than the TTL, else None.
    Cache errors are swallowed so they never break an enrichment run.
    """
    ttl = _OVERPASS_CACHE_TTL_DAYS if ttl_days is None else ttl_days
    try:
        with closing(_get_db()) as conn:
            row = conn.execute(
                "SELECT response_json, created_at FROM overpass_cache WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
    except sqlite3.Error:
        logger.warning("Overpass cache lookup failed", exc_info=True)
        return None

    if not row:
        return None
    try:
        created = datetime.fromisoformat(row["created_at"])
    except (TypeError, ValueError):
        return row["response_json"]
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    if datetime.now(timezone.utc) - created > timedelta(days=ttl):
        return None
    return row["response_json"]


def set_overpass_cache(cache_key: str, response_json: str) -> None:
    """Store an Overpass response. Failures are logged, never raised."""
    try:
        with closing(_get_db()) as conn:
            conn.execute(
                """INSERT OR REPLACE INTO overpass_cache (cache_key, response_json, created_at)
                   VALUES (?, ?, ?)""",
                (cache_key, response_json, _now()),
            )
            conn.commit()
    except sqlite3.Error:
        logger.warning("Overpass cache write failed", exc_info=True)
