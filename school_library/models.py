from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    ADMIN = "admin"
    STUDENT = "student"


class MessageStatus(str, Enum):
    PENDING = "pending"
    REPLIED = "replied"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as fixed-width ISO-8601 UTC so stored values sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        # Postgres may answer with a trailing 'Z'
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Profile:
    """A user record; ``id`` is shared with the authentication identity."""
    id: str
    email: str
    full_name: str
    role: Role = Role.STUDENT
    grade: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Profile":
        grade = data.get("grade")
        return Profile(
            id=str(data["id"]),
            email=data["email"],
            full_name=data["full_name"],
            role=Role(data.get("role") or Role.STUDENT.value),
            grade=int(grade) if grade is not None else None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Book:
    """A catalog entry. ``0 <= available_count <= total_count`` always holds."""
    id: str
    title: str
    author: str
    class_suitable: int
    total_count: int
    available_count: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Book":
        return Book(
            id=str(data["id"]),
            title=data["title"],
            author=data["author"],
            class_suitable=int(data["class_suitable"]),
            total_count=int(data["total_count"]),
            available_count=int(data["available_count"]),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class IssuedBook:
    """One circulation record. It is open while ``returned_at`` is unset."""
    id: str
    book_id: str
    student_id: str
    issued_by: str
    issued_at: str
    due_date: str
    returned_at: Optional[str] = None
    fine_amount: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if not self.is_open:
            return False
        return parse_timestamp(self.due_date) < (now or utc_now())

    def status(self, now: Optional[datetime] = None) -> str:
        if not self.is_open:
            return "returned"
        return "overdue" if self.is_overdue(now) else "ok"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "IssuedBook":
        fine = data.get("fine_amount")
        return IssuedBook(
            id=str(data["id"]),
            book_id=str(data["book_id"]),
            student_id=str(data["student_id"]),
            issued_by=str(data["issued_by"]),
            issued_at=data["issued_at"],
            due_date=data["due_date"],
            returned_at=data.get("returned_at"),
            fine_amount=float(fine) if fine is not None else None,
        )


@dataclass
class Message:
    id: str
    student_id: str
    text: str
    status: MessageStatus = MessageStatus.PENDING
    admin_reply: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        return Message(
            id=str(data["id"]),
            student_id=str(data["student_id"]),
            text=data["text"],
            status=MessageStatus(data.get("status") or MessageStatus.PENDING.value),
            admin_reply=data.get("admin_reply"),
            created_at=data.get("created_at"),
        )


@dataclass
class Session:
    """A signed-in identity as returned by the store collaborator."""
    access_token: str
    user_id: str
