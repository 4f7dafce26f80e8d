"""The store collaborator: persistence plus identity management.

``Library`` only talks to this interface. Two implementations exist:
``database.SQLiteStore`` for local use and tests, and
``services.supabase_store.SupabaseStore`` for the hosted Postgres/auth service.
Implementations are constructed explicitly (see ``create_store``) and closed
when the application shuts down.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from school_library.config import Settings
from school_library.models import Book, IssuedBook, Message, MessageStatus, Profile, Role, Session


class Store(ABC):

    # ------------------------- Identity ------------------------- #
    @abstractmethod
    def create_identity(self, email: str, password: str, metadata: Dict[str, Any]) -> str:
        """Create an authentication identity and return its id.

        Raises ``DuplicateResourceError`` when the e-mail is already registered.
        """

    @abstractmethod
    def delete_identity(self, user_id: str) -> None:
        ...

    @abstractmethod
    def sign_in(self, email: str, password: str) -> Session:
        """Raises ``AuthenticationError`` on bad credentials."""

    @abstractmethod
    def sign_out(self, access_token: str) -> None:
        ...

    @abstractmethod
    def get_session_user(self, access_token: str) -> Optional[str]:
        """Return the user id behind a token, or None if the token is not valid."""

    # ------------------------- Profiles ------------------------- #
    @abstractmethod
    def insert_profile(self, user_id: str, email: str, full_name: str, role: Role,
                       grade: Optional[int]) -> Profile:
        ...

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Profile]:
        ...

    @abstractmethod
    def list_profiles(self, role: Role, ids: Optional[List[str]] = None) -> List[Profile]:
        """Profiles with the given role, newest ``created_at`` first."""

    @abstractmethod
    def count_profiles(self, role: Role) -> int:
        ...

    # ------------------------- Books ------------------------- #
    @abstractmethod
    def insert_book(self, title: str, author: str, class_suitable: int, total_count: int) -> Book:
        ...

    @abstractmethod
    def get_book(self, book_id: str) -> Optional[Book]:
        ...

    @abstractmethod
    def list_books(self, available_only: bool = False, title_search: Optional[str] = None,
                   max_class: Optional[int] = None, ids: Optional[List[str]] = None) -> List[Book]:
        ...

    @abstractmethod
    def count_books(self) -> int:
        ...

    @abstractmethod
    def adjust_available(self, book_id: str, delta: int) -> bool:
        """Move ``available_count`` by one copy as a single conditional update.

        ``delta=-1`` only applies while ``available_count > 0`` and ``delta=+1``
        only while ``available_count < total_count``. Returns whether the row
        changed.
        """

    # ------------------------- Issued books ------------------------- #
    @abstractmethod
    def insert_issue(self, book_id: str, student_id: str, issued_by: str,
                     issued_at: datetime, due_date: datetime) -> IssuedBook:
        ...

    @abstractmethod
    def find_open_issue(self, student_id: str, book_id: str) -> Optional[IssuedBook]:
        """The open issuance for the pair with the earliest ``issued_at``."""

    @abstractmethod
    def close_issue(self, issue_id: str, returned_at: datetime,
                    fine_amount: Optional[float]) -> Optional[IssuedBook]:
        """Set ``returned_at`` if the issuance is still open; None if it was not."""

    @abstractmethod
    def list_issues(self, student_id: Optional[str] = None, open_only: bool = False,
                    limit: Optional[int] = None) -> List[IssuedBook]:
        """Issuances newest ``issued_at`` first."""

    @abstractmethod
    def count_open_issues(self, due_before: Optional[datetime] = None) -> int:
        """Open issuances, optionally only those with ``due_date < due_before``."""

    # ------------------------- Messages ------------------------- #
    @abstractmethod
    def insert_message(self, student_id: str, text: str) -> Message:
        ...

    @abstractmethod
    def list_messages(self, student_id: Optional[str] = None,
                      status: Optional[MessageStatus] = None) -> List[Message]:
        ...

    @abstractmethod
    def update_message(self, message_id: str, admin_reply: str,
                       status: MessageStatus) -> Optional[Message]:
        ...

    # ------------------------- Lifecycle ------------------------- #
    def initialize(self) -> None:
        """Prepare the backing store (schema, connections). Default: nothing."""

    def close(self) -> None:
        ...


def create_store(config: Settings) -> Store:
    """Build the store named by ``config.store_backend``."""
    backend = config.store_backend.lower()
    if backend == "sqlite":
        from school_library.database import SQLiteStore
        store: Store = SQLiteStore(config.library_db_file, bcrypt_rounds=config.bcrypt_rounds)
    elif backend == "supabase":
        from school_library.services.supabase_store import SupabaseStore
        store = SupabaseStore.from_settings(config)
    else:
        raise ValueError(f"Unknown store backend: {config.store_backend}")
    store.initialize()
    return store
