import json
import os
import sqlite3
from typing import Any, Dict, Iterable, List, Mapping, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    with _pool.get_connection() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS user_profiles (
              user_id     TEXT PRIMARY KEY,
              profile     TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS questions (
              id               TEXT PRIMARY KEY,
              fingerprint      TEXT NOT NULL UNIQUE,
              question         TEXT NOT NULL,
              answers          TEXT NOT NULL,
              correct_answer   TEXT,
              category         TEXT NOT NULL,
              subtopic         TEXT,
              branch           TEXT,
              tags             TEXT,
              difficulty       TEXT,
              learning_capsule TEXT,
              source           TEXT,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_questions_category ON questions(category);

            CREATE TABLE IF NOT EXISTS weight_changes (
              id                   INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id              TEXT NOT NULL,
              question_id          TEXT NOT NULL,
              interaction_type     TEXT NOT NULL CHECK(interaction_type IN ('correct','incorrect','skipped')),
              question_text        TEXT,
              category             TEXT NOT NULL,
              subtopic             TEXT,
              branch               TEXT,
              old_topic_weight     REAL,
              new_topic_weight     REAL,
              old_subtopic_weight  REAL,
              new_subtopic_weight  REAL,
              old_branch_weight    REAL,
              new_branch_weight    REAL,
              skip_compensation    TEXT,
              occurred_at          TEXT NOT NULL,
              created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_weight_changes_user ON weight_changes(user_id, id);

            CREATE TABLE IF NOT EXISTS generation_events (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              type        TEXT NOT NULL,
              generated   INTEGER DEFAULT 0,
              saved       INTEGER DEFAULT 0,
              payload     TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_generation_events_user ON generation_events(user_id, id);
            """
        )
        con.commit()


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return None


# -------------- profiles --------------
def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    """Return the stored profile document for ``user_id`` or ``None``."""
    rows = _query("SELECT profile FROM user_profiles WHERE user_id = ?", [user_id])
    if not rows:
        return None
    decoded = _decode_json_field(rows[0]["profile"])
    return decoded if isinstance(decoded, dict) else {}


def upsert_profile(user_id: str, profile: Mapping[str, Any]) -> None:
    _exec(
        """
        INSERT INTO user_profiles (user_id, profile, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
            profile = excluded.profile,
            updated_at = CURRENT_TIMESTAMP
        """,
        [user_id, json.dumps(dict(profile), ensure_ascii=False)],
    )


# -------------- questions --------------
def fingerprint_exists(fingerprint: str) -> bool:
    rows = _query("SELECT 1 FROM questions WHERE fingerprint = ? LIMIT 1", [fingerprint])
    return bool(rows)


def insert_question(question_id: str, fingerprint: str, item: Mapping[str, Any]) -> None:
    """Store a generated question; raises ``sqlite3.IntegrityError`` on a repeated fingerprint."""
    answers = list(item.get("answers") or [])
    correct = next((a.get("text") for a in answers if a.get("isCorrect")), None)
    _exec(
        """
        INSERT INTO questions (
            id, fingerprint, question, answers, correct_answer, category,
            subtopic, branch, tags, difficulty, learning_capsule, source
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            question_id,
            fingerprint,
            item.get("question"),
            json.dumps(answers, ensure_ascii=False),
            correct,
            item.get("category"),
            item.get("subtopic"),
            item.get("branch"),
            json.dumps(list(item.get("tags") or []), ensure_ascii=False),
            item.get("difficulty"),
            item.get("learningCapsule"),
            item.get("source"),
        ),
    )


def list_questions(category: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
    sql = (
        "SELECT id, fingerprint, question, answers, correct_answer, category, subtopic, branch,"
        " tags, difficulty, source, created_at FROM questions"
    )
    params: list[Any] = []
    if category:
        sql += " WHERE category = ?"
        params.append(category)
    sql += " ORDER BY created_at, id LIMIT ?"
    params.append(int(limit))
    result = []
    for row in _query(sql, params):
        data = dict(row)
        data["answers"] = _decode_json_field(data.get("answers")) or []
        data["tags"] = _decode_json_field(data.get("tags")) or []
        result.append(data)
    return result


# -------------- weight changes --------------
def log_weight_change(change: Mapping[str, Any]) -> None:
    old = change.get("oldWeights") or {}
    new = change.get("newWeights") or {}
    _exec(
        """
        INSERT INTO weight_changes (
            user_id, question_id, interaction_type, question_text, category, subtopic, branch,
            old_topic_weight, new_topic_weight, old_subtopic_weight, new_subtopic_weight,
            old_branch_weight, new_branch_weight, skip_compensation, occurred_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            change.get("userId"),
            change.get("questionId"),
            change.get("interactionType"),
            change.get("questionText"),
            change.get("category"),
            change.get("subtopic"),
            change.get("branch"),
            old.get("topic"),
            new.get("topic"),
            old.get("subtopic"),
            new.get("subtopic"),
            old.get("branch"),
            new.get("branch"),
            json.dumps(change.get("skipCompensation") or {}),
            change.get("timestamp"),
        ),
    )


def list_weight_changes(user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM weight_changes WHERE user_id = ? ORDER BY id DESC LIMIT ?",
        [user_id, int(limit)],
    )
    result = []
    for row in rows:
        data = dict(row)
        data["skip_compensation"] = _decode_json_field(data.get("skip_compensation")) or {}
        result.append(data)
    return result


# -------------- generation events --------------
def log_generation_event(event: Mapping[str, Any]) -> int:
    cur = _exec(
        "INSERT INTO generation_events (user_id, type, generated, saved, payload) VALUES (?,?,?,?,?)",
        (
            event.get("userId"),
            event.get("type"),
            int(event.get("generated") or 0),
            int(event.get("saved") or 0),
            json.dumps(dict(event), ensure_ascii=False),
        ),
    )
    return int(cur.lastrowid)


def list_generation_events(user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    sql = "SELECT id, user_id, type, generated, saved, payload, created_at FROM generation_events"
    params: list[Any] = []
    if user_id:
        sql += " WHERE user_id = ?"
        params.append(user_id)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(int(limit))
    result = []
    for row in _query(sql, params):
        data = dict(row)
        data["payload"] = _decode_json_field(data.get("payload")) or {}
        result.append(data)
    return result
