"""Store collaborator for a hosted Supabase project.

Rows go through PostgREST (``/rest/v1``) and identities through GoTrue
(``/auth/v1``), both with the service-role key. PostgREST has no
``col = col - 1`` update, so availability changes are compare-and-set
PATCHes filtered on the value that was just read.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from school_library.config import Settings
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
from school_library.services.http_client import HTTPClient
from school_library.store import Store

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
REPRESENTATION = {"Prefer": "return=representation"}


def _in_filter(ids: List[str]) -> str:
    return "in.(" + ",".join(ids) + ")"


class SupabaseStore(Store):

    def __init__(
        self,
        url: str,
        service_role_key: str,
        anon_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        max_cas_attempts: int = 5,
    ) -> None:
        self.anon_key = anon_key or service_role_key
        self.max_cas_attempts = max_cas_attempts
        self._http = HTTPClient(
            url,
            headers={
                "apikey": service_role_key,
                "Authorization": f"Bearer {service_role_key}",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "SupabaseStore":
        if not config.supabase_url or not config.supabase_service_role_key:
            raise StoreError(
                "Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY",
                code="CONFIG",
                hint="Set both variables in the environment or in .env",
            )
        return cls(
            config.supabase_url,
            config.supabase_service_role_key,
            anon_key=config.supabase_anon_key,
            timeout=config.supabase_timeout,
        )

    def close(self) -> None:
        self._http.close()

    # ------------------------- HTTP helpers ------------------------- #
    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._http.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise StoreError("Could not reach the Supabase backend.", code="UNREACHABLE",
                             details={"reason": str(e)}) from e

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = str(body.get("code") or body.get("error_code") or response.status_code)
        message = str(
            body.get("message") or body.get("msg") or body.get("error_description")
            or body.get("error") or f"Supabase request failed with status {response.status_code}"
        )
        if code == UNIQUE_VIOLATION or code == "email_exists" or "already been registered" in message:
            raise DuplicateResourceError(message, {"code": code})
        raise StoreError(message, code=code, hint=body.get("hint"),
                         details={"details": body.get("details")} if body.get("details") else None)

    def _select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        response = self._send("GET", f"/rest/v1/{table}", params={"select": "*", **params})
        self._raise_for_status(response)
        return response.json()

    def _select_one(self, table: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self._select(table, {**params, "limit": 1})
        return rows[0] if rows else None

    def _insert(self, table: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._send("POST", f"/rest/v1/{table}", json=payload, headers=REPRESENTATION)
        self._raise_for_status(response)
        rows = response.json()
        if not rows:
            raise StoreError(f"Insert into {table} returned no row", code="EMPTY_INSERT")
        return rows[0]

    def _update(self, table: str, filters: Dict[str, Any], payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        response = self._send("PATCH", f"/rest/v1/{table}", params=filters, json=payload, headers=REPRESENTATION)
        self._raise_for_status(response)
        return response.json()

    def _count(self, table: str, filters: Dict[str, Any]) -> int:
        response = self._send("HEAD", f"/rest/v1/{table}", params={"select": "id", **filters},
                              headers={"Prefer": "count=exact"})
        self._raise_for_status(response)
        content_range = response.headers.get("content-range", "")
        try:
            return int(content_range.rsplit("/", 1)[1])
        except (IndexError, ValueError) as e:
            raise StoreError("Supabase did not return a row count", code="NO_COUNT",
                             details={"content_range": content_range}) from e

    # ------------------------- Identity ------------------------- #
    def create_identity(self, email: str, password: str, metadata: Dict[str, Any]) -> str:
        response = self._send(
            "POST",
            "/auth/v1/admin/users",
            json={"email": email, "password": password, "email_confirm": True, "user_metadata": metadata},
        )
        self._raise_for_status(response)
        body = response.json()
        user = body.get("user") or body
        if not user.get("id"):
            raise StoreError("Failed to create user", code="NO_USER")
        return str(user["id"])

    def delete_identity(self, user_id: str) -> None:
        response = self._send("DELETE", f"/auth/v1/admin/users/{user_id}")
        self._raise_for_status(response)

    def sign_in(self, email: str, password: str) -> Session:
        response = self._send(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers={"apikey": self.anon_key, "Authorization": f"Bearer {self.anon_key}"},
        )
        if response.status_code in (400, 401):
            raise AuthenticationError("Invalid login credentials")
        self._raise_for_status(response)
        body = response.json()
        return Session(access_token=body["access_token"], user_id=str(body["user"]["id"]))

    def sign_out(self, access_token: str) -> None:
        response = self._send(
            "POST",
            "/auth/v1/logout",
            headers={"apikey": self.anon_key, "Authorization": f"Bearer {access_token}"},
        )
        # An already expired token is as good as signed out
        if response.status_code in (401, 403, 404):
            return
        self._raise_for_status(response)

    def get_session_user(self, access_token: str) -> Optional[str]:
        response = self._send(
            "GET",
            "/auth/v1/user",
            headers={"apikey": self.anon_key, "Authorization": f"Bearer {access_token}"},
        )
        if response.status_code in (401, 403):
            return None
        self._raise_for_status(response)
        return str(response.json()["id"])

    # ------------------------- Profiles ------------------------- #
    def insert_profile(self, user_id: str, email: str, full_name: str, role: Role,
                       grade: Optional[int]) -> Profile:
        row = self._insert(
            "profiles",
            {"id": user_id, "email": email, "full_name": full_name, "role": role.value, "grade": grade},
        )
        return Profile.from_dict(row)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        row = self._select_one("profiles", {"id": f"eq.{user_id}"})
        return Profile.from_dict(row) if row else None

    def list_profiles(self, role: Role, ids: Optional[List[str]] = None) -> List[Profile]:
        params: Dict[str, Any] = {"role": f"eq.{role.value}", "order": "created_at.desc"}
        if ids is not None:
            if not ids:
                return []
            params["id"] = _in_filter(ids)
        return [Profile.from_dict(row) for row in self._select("profiles", params)]

    def count_profiles(self, role: Role) -> int:
        return self._count("profiles", {"role": f"eq.{role.value}"})

    # ------------------------- Books ------------------------- #
    def insert_book(self, title: str, author: str, class_suitable: int, total_count: int) -> Book:
        row = self._insert(
            "books",
            {
                "title": title,
                "author": author,
                "class_suitable": class_suitable,
                "total_count": total_count,
                "available_count": total_count,
            },
        )
        return Book.from_dict(row)

    def get_book(self, book_id: str) -> Optional[Book]:
        row = self._select_one("books", {"id": f"eq.{book_id}"})
        return Book.from_dict(row) if row else None

    def list_books(self, available_only: bool = False, title_search: Optional[str] = None,
                   max_class: Optional[int] = None, ids: Optional[List[str]] = None) -> List[Book]:
        params: Dict[str, Any] = {"order": "created_at.desc"}
        if available_only:
            params["available_count"] = "gt.0"
        if title_search:
            params["title"] = f"ilike.*{title_search}*"
        if max_class is not None:
            params["class_suitable"] = f"lte.{max_class}"
        if ids is not None:
            if not ids:
                return []
            params["id"] = _in_filter(ids)
        return [Book.from_dict(row) for row in self._select("books", params)]

    def count_books(self) -> int:
        return self._count("books", {})

    def adjust_available(self, book_id: str, delta: int) -> bool:
        if delta not in (-1, 1):
            raise ValueError("delta must be -1 or +1")
        for attempt in range(1, self.max_cas_attempts + 1):
            book = self.get_book(book_id)
            if book is None:
                return False
            current = book.available_count
            if delta < 0 and current <= 0:
                return False
            if delta > 0 and current >= book.total_count:
                return False
            rows = self._update(
                "books",
                {"id": f"eq.{book_id}", "available_count": f"eq.{current}"},
                {"available_count": current + delta, "updated_at": format_timestamp(utc_now())},
            )
            if rows:
                return True
            logger.info("available_count of book %s changed concurrently (attempt %d)", book_id, attempt)
        raise StoreError("Book availability kept changing; try again.", code="CONFLICT")

    # ------------------------- Issued books ------------------------- #
    def insert_issue(self, book_id: str, student_id: str, issued_by: str,
                     issued_at: datetime, due_date: datetime) -> IssuedBook:
        row = self._insert(
            "issued_books",
            {
                "book_id": book_id,
                "student_id": student_id,
                "issued_by": issued_by,
                "issued_at": format_timestamp(issued_at),
                "due_date": format_timestamp(due_date),
            },
        )
        return IssuedBook.from_dict(row)

    def find_open_issue(self, student_id: str, book_id: str) -> Optional[IssuedBook]:
        row = self._select_one(
            "issued_books",
            {
                "student_id": f"eq.{student_id}",
                "book_id": f"eq.{book_id}",
                "returned_at": "is.null",
                "order": "issued_at.asc",
            },
        )
        return IssuedBook.from_dict(row) if row else None

    def close_issue(self, issue_id: str, returned_at: datetime,
                    fine_amount: Optional[float]) -> Optional[IssuedBook]:
        rows = self._update(
            "issued_books",
            {"id": f"eq.{issue_id}", "returned_at": "is.null"},
            {"returned_at": format_timestamp(returned_at), "fine_amount": fine_amount},
        )
        return IssuedBook.from_dict(rows[0]) if rows else None

    def list_issues(self, student_id: Optional[str] = None, open_only: bool = False,
                    limit: Optional[int] = None) -> List[IssuedBook]:
        params: Dict[str, Any] = {"order": "issued_at.desc"}
        if student_id is not None:
            params["student_id"] = f"eq.{student_id}"
        if open_only:
            params["returned_at"] = "is.null"
        if limit is not None:
            params["limit"] = limit
        return [IssuedBook.from_dict(row) for row in self._select("issued_books", params)]

    def count_open_issues(self, due_before: Optional[datetime] = None) -> int:
        filters: Dict[str, Any] = {"returned_at": "is.null"}
        if due_before is not None:
            filters["due_date"] = f"lt.{format_timestamp(due_before)}"
        return self._count("issued_books", filters)

    # ------------------------- Messages ------------------------- #
    def insert_message(self, student_id: str, text: str) -> Message:
        row = self._insert(
            "messages",
            {"student_id": student_id, "text": text, "status": MessageStatus.PENDING.value},
        )
        return Message.from_dict(row)

    def list_messages(self, student_id: Optional[str] = None,
                      status: Optional[MessageStatus] = None) -> List[Message]:
        params: Dict[str, Any] = {"order": "created_at.desc"}
        if student_id is not None:
            params["student_id"] = f"eq.{student_id}"
        if status is not None:
            params["status"] = f"eq.{status.value}"
        return [Message.from_dict(row) for row in self._select("messages", params)]

    def update_message(self, message_id: str, admin_reply: str,
                       status: MessageStatus) -> Optional[Message]:
        rows = self._update(
            "messages",
            {"id": f"eq.{message_id}"},
            {"admin_reply": admin_reply, "status": status.value},
        )
        return Message.from_dict(rows[0]) if rows else None
