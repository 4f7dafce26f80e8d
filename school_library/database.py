import json
import logging
import os
import secrets
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import bcrypt

from school_library.errors import AuthenticationError, DuplicateResourceError, StoreError
from school_library.models import (
    Book,
    IssuedBook,
    Message,
    MessageStatus,
    Profile,
    Role,
    Session,
    format_timestamp,
    utc_now,
)
from school_library.store import Store

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12

SCHEMA = """
CREATE TABLE IF NOT EXISTS auth_users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    token TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES auth_users(id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    full_name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('admin', 'student')),
    grade INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS books (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    author TEXT NOT NULL,
    class_suitable INTEGER NOT NULL,
    total_count INTEGER NOT NULL DEFAULT 0 CHECK (total_count >= 0),
    available_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (available_count >= 0 AND available_count <= total_count)
);
CREATE TABLE IF NOT EXISTS issued_books (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL,
    student_id TEXT NOT NULL,
    issued_by TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    due_date TEXT NOT NULL,
    returned_at TEXT,
    fine_amount REAL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (book_id) REFERENCES books(id),
    FOREIGN KEY (student_id) REFERENCES profiles(id),
    FOREIGN KEY (issued_by) REFERENCES profiles(id)
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    student_id TEXT NOT NULL,
    text TEXT NOT NULL,
    admin_reply TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    FOREIGN KEY (student_id) REFERENCES profiles(id)
);
CREATE INDEX IF NOT EXISTS idx_profiles_role_created ON profiles(role, created_at);
CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
CREATE INDEX IF NOT EXISTS idx_issued_open ON issued_books(returned_at, due_date);
CREATE INDEX IF NOT EXISTS idx_issued_pair ON issued_books(student_id, book_id, issued_at);
CREATE INDEX IF NOT EXISTS idx_messages_student ON messages(student_id, created_at);
"""


def _hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def _verify_password(password: str, stored: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
    except ValueError:
        return False


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteStore(Store):
    """Store collaborator backed by a local SQLite file.

    Every operation opens its own connection, so one instance can serve the
    worker threads FastAPI runs sync endpoints on. Availability changes are
    single conditional UPDATE statements.
    """

    def __init__(self, db_file: str, bcrypt_rounds: int = BCRYPT_ROUNDS) -> None:
        self.db_file = db_file
        self.bcrypt_rounds = bcrypt_rounds

    def get_db_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def initialize(self) -> None:
        """Create the tables if they do not exist yet."""
        directory = os.path.dirname(os.path.abspath(self.db_file))
        os.makedirs(directory, exist_ok=True)
        conn = self.get_db_connection()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()
        logger.info("SQLite store ready at %s", self.db_file)

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        conn = self.get_db_connection()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.IntegrityError as e:
            raise self._integrity_error(e) from e
        except sqlite3.Error as e:
            raise StoreError(str(e), code="SQLITE_ERROR") from e
        finally:
            conn.close()

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        conn = self.get_db_connection()
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        except sqlite3.Error as e:
            raise StoreError(str(e), code="SQLITE_ERROR") from e
        finally:
            conn.close()

    def _query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    @staticmethod
    def _integrity_error(e: sqlite3.IntegrityError) -> Exception:
        text = str(e)
        if "UNIQUE" in text:
            return DuplicateResourceError("A record with this value already exists.", {"constraint": text})
        if "FOREIGN KEY" in text:
            return StoreError("Referenced record does not exist.", code="FOREIGN_KEY",
                              hint="Check that the student, book and admin ids exist.")
        return StoreError(text, code="CONSTRAINT")

    # ------------------------- Identity ------------------------- #
    def create_identity(self, email: str, password: str, metadata: Dict[str, Any]) -> str:
        user_id = str(uuid.uuid4())
        password_hash = _hash_password(password, self.bcrypt_rounds)
        try:
            self._execute(
                "INSERT INTO auth_users (id, email, password_hash, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, email, password_hash, json.dumps(metadata), format_timestamp(utc_now())),
            )
        except DuplicateResourceError as e:
            raise DuplicateResourceError(f"A user with email {email} is already registered.") from e
        return user_id

    def delete_identity(self, user_id: str) -> None:
        self._execute("DELETE FROM auth_users WHERE id = ?", (user_id,))

    def sign_in(self, email: str, password: str) -> Session:
        row = self._query_one("SELECT id, password_hash FROM auth_users WHERE email = ?", (email,))
        if not row or not _verify_password(password, row["password_hash"]):
            raise AuthenticationError("Invalid login credentials")
        token = secrets.token_hex(32)
        self._execute(
            "INSERT INTO sessions (token, user_id, created_at) VALUES (?, ?, ?)",
            (token, row["id"], format_timestamp(utc_now())),
        )
        return Session(access_token=token, user_id=row["id"])

    def sign_out(self, access_token: str) -> None:
        self._execute("DELETE FROM sessions WHERE token = ?", (access_token,))

    def get_session_user(self, access_token: str) -> Optional[str]:
        row = self._query_one("SELECT user_id FROM sessions WHERE token = ?", (access_token,))
        return row["user_id"] if row else None

    # ------------------------- Profiles ------------------------- #
    def insert_profile(self, user_id: str, email: str, full_name: str, role: Role,
                       grade: Optional[int]) -> Profile:
        now = format_timestamp(utc_now())
        self._execute(
            """
            INSERT INTO profiles (id, email, full_name, role, grade, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, email, full_name, role.value, grade, now, now),
        )
        return self.get_profile(user_id)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        row = self._query_one("SELECT * FROM profiles WHERE id = ?", (user_id,))
        return Profile.from_dict(row) if row else None

    def list_profiles(self, role: Role, ids: Optional[List[str]] = None) -> List[Profile]:
        sql = "SELECT * FROM profiles WHERE role = ?"
        params: List[Any] = [role.value]
        if ids is not None:
            if not ids:
                return []
            sql += f" AND id IN ({_placeholders(ids)})"
            params.extend(ids)
        sql += " ORDER BY created_at DESC, rowid DESC"
        return [Profile.from_dict(row) for row in self._query(sql, params)]

    def count_profiles(self, role: Role) -> int:
        row = self._query_one("SELECT COUNT(*) AS n FROM profiles WHERE role = ?", (role.value,))
        return int(row["n"])

    # ------------------------- Books ------------------------- #
    def insert_book(self, title: str, author: str, class_suitable: int, total_count: int) -> Book:
        book_id = str(uuid.uuid4())
        now = format_timestamp(utc_now())
        self._execute(
            """
            INSERT INTO books (id, title, author, class_suitable, total_count, available_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (book_id, title, author, class_suitable, total_count, total_count, now, now),
        )
        return self.get_book(book_id)

    def get_book(self, book_id: str) -> Optional[Book]:
        row = self._query_one("SELECT * FROM books WHERE id = ?", (book_id,))
        return Book.from_dict(row) if row else None

    def list_books(self, available_only: bool = False, title_search: Optional[str] = None,
                   max_class: Optional[int] = None, ids: Optional[List[str]] = None) -> List[Book]:
        clauses: List[str] = []
        params: List[Any] = []
        if available_only:
            clauses.append("available_count > 0")
        if title_search:
            clauses.append("instr(lower(title), lower(?)) > 0")
            params.append(title_search)
        if max_class is not None:
            clauses.append("class_suitable <= ?")
            params.append(max_class)
        if ids is not None:
            if not ids:
                return []
            clauses.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        sql = "SELECT * FROM books"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        return [Book.from_dict(row) for row in self._query(sql, params)]

    def count_books(self) -> int:
        row = self._query_one("SELECT COUNT(*) AS n FROM books")
        return int(row["n"])

    def adjust_available(self, book_id: str, delta: int) -> bool:
        if delta == -1:
            guard = "available_count > 0"
        elif delta == 1:
            guard = "available_count < total_count"
        else:
            raise ValueError("delta must be -1 or +1")
        changed = self._execute(
            f"UPDATE books SET available_count = available_count + ?, updated_at = ? WHERE id = ? AND {guard}",
            (delta, format_timestamp(utc_now()), book_id),
        )
        return changed == 1

    # ------------------------- Issued books ------------------------- #
    def insert_issue(self, book_id: str, student_id: str, issued_by: str,
                     issued_at: datetime, due_date: datetime) -> IssuedBook:
        issue_id = str(uuid.uuid4())
        issued = format_timestamp(issued_at)
        self._execute(
            """
            INSERT INTO issued_books (id, book_id, student_id, issued_by, issued_at, due_date, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (issue_id, book_id, student_id, issued_by, issued, format_timestamp(due_date), issued),
        )
        return self._get_issue(issue_id)

    def _get_issue(self, issue_id: str) -> Optional[IssuedBook]:
        row = self._query_one("SELECT * FROM issued_books WHERE id = ?", (issue_id,))
        return IssuedBook.from_dict(row) if row else None

    def find_open_issue(self, student_id: str, book_id: str) -> Optional[IssuedBook]:
        row = self._query_one(
            """
            SELECT * FROM issued_books
            WHERE student_id = ? AND book_id = ? AND returned_at IS NULL
            ORDER BY issued_at ASC, rowid ASC LIMIT 1
            """,
            (student_id, book_id),
        )
        return IssuedBook.from_dict(row) if row else None

    def close_issue(self, issue_id: str, returned_at: datetime,
                    fine_amount: Optional[float]) -> Optional[IssuedBook]:
        changed = self._execute(
            "UPDATE issued_books SET returned_at = ?, fine_amount = ? WHERE id = ? AND returned_at IS NULL",
            (format_timestamp(returned_at), fine_amount, issue_id),
        )
        return self._get_issue(issue_id) if changed == 1 else None

    def list_issues(self, student_id: Optional[str] = None, open_only: bool = False,
                    limit: Optional[int] = None) -> List[IssuedBook]:
        clauses: List[str] = []
        params: List[Any] = []
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        if open_only:
            clauses.append("returned_at IS NULL")
        sql = "SELECT * FROM issued_books"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY issued_at DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [IssuedBook.from_dict(row) for row in self._query(sql, params)]

    def count_open_issues(self, due_before: Optional[datetime] = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM issued_books WHERE returned_at IS NULL"
        params: List[Any] = []
        if due_before is not None:
            sql += " AND due_date < ?"
            params.append(format_timestamp(due_before))
        row = self._query_one(sql, params)
        return int(row["n"])

    # ------------------------- Messages ------------------------- #
    def insert_message(self, student_id: str, text: str) -> Message:
        message_id = str(uuid.uuid4())
        self._execute(
            "INSERT INTO messages (id, student_id, text, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (message_id, student_id, text, MessageStatus.PENDING.value, format_timestamp(utc_now())),
        )
        return self._get_message(message_id)

    def _get_message(self, message_id: str) -> Optional[Message]:
        row = self._query_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        return Message.from_dict(row) if row else None

    def list_messages(self, student_id: Optional[str] = None,
                      status: Optional[MessageStatus] = None) -> List[Message]:
        clauses: List[str] = []
        params: List[Any] = []
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        sql = "SELECT * FROM messages"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        return [Message.from_dict(row) for row in self._query(sql, params)]

    def update_message(self, message_id: str, admin_reply: str,
                       status: MessageStatus) -> Optional[Message]:
        changed = self._execute(
            "UPDATE messages SET admin_reply = ?, status = ? WHERE id = ?",
            (admin_reply, status.value, message_id),
        )
        return self._get_message(message_id) if changed == 1 else None
