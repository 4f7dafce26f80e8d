import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from school_library.config import Settings, settings
from school_library.errors import (
    AuthenticationError,
    AuthorizationError,
    NoCopiesAvailableError,
    NoOpenIssuanceError,
    NotFoundError,
    ValidationError,
)
from school_library.models import (
    Book,
    IssuedBook,
    Message,
    MessageStatus,
    Profile,
    Role,
    Session,
    parse_timestamp,
    utc_now,
)
from school_library.store import Store
from school_library.validators import EmailValidator, NumberValidator, PasswordValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_SORTS = ("title_asc", "title_desc")


@dataclass
class Onboarding:
    """Result of creating an account. ``generated_password`` is only set when
    the caller did not supply one, and is never stored anywhere else."""
    profile: Profile
    generated_password: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Library:
    """School library service layer on top of an injected store collaborator."""

    def __init__(self, store: Store, config: Optional[Settings] = None) -> None:
        self.store = store
        self.config = config or settings

    # ------------------------- Onboarding ------------------------- #
    def create_student(
        self,
        name: Optional[str],
        email: Optional[str] = None,
        grade: Any = None,
        password: Optional[str] = None,
        age: Any = None,
        parent_name: Optional[str] = None,
        contact_number: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Onboarding:
        """Create an auth identity and its student profile as one unit.

        E-mail is derived from the name and a password generated when they are
        not supplied. Extended fields travel in the identity metadata.
        """
        problems: List[str] = []
        fields: List[str] = []

        if TextValidator.is_blank(name):
            problems.append("name is required")
            fields.append("name")
        else:
            name = name.strip()

        if TextValidator.is_blank(email):
            if "name" not in fields:
                email = EmailValidator.derive_email(name, self.config.student_email_domain)
                if not EmailValidator.is_valid_email(email):
                    problems.append("email is required when it cannot be derived from the name")
                    fields.append("email")
        else:
            email = EmailValidator.normalize_email(email)
            if not EmailValidator.is_valid_email(email):
                problems.append("email is not a valid address")
                fields.append("email")

        generated = None
        if TextValidator.is_blank(password):
            generated = PasswordValidator.generate(self.config.generated_password_length)
            password = generated
        elif not PasswordValidator.is_acceptable(password):
            problems.append("password must be 6 to 72 characters")
            fields.append("password")

        parsed_grade = parsed_age = None
        try:
            parsed_grade = NumberValidator.parse_grade(grade)
        except ValidationError as e:
            problems.append(str(e))
            fields.extend(e.fields)
        try:
            parsed_age = NumberValidator.parse_optional_int(age, "age")
            if parsed_age is not None and parsed_age <= 0:
                raise ValidationError("age must be positive", ["age"])
        except ValidationError as e:
            problems.append(str(e))
            fields.extend(e.fields)

        if problems:
            raise ValidationError("; ".join(problems), fields)

        extras = {
            "age": parsed_age,
            "parent_name": (parent_name or "").strip() or None,
            "contact_number": (contact_number or "").strip() or None,
            "address": (address or "").strip() or None,
        }
        extras = {key: value for key, value in extras.items() if value is not None}
        profile = self._onboard(name, email, password, Role.STUDENT, parsed_grade, extras)
        return Onboarding(profile=profile, generated_password=generated, details=extras)

    def create_admin(self, name: str, email: str, password: str) -> Profile:
        fields = []
        if TextValidator.is_blank(name):
            fields.append("name")
        email = EmailValidator.normalize_email(email)
        if not EmailValidator.is_valid_email(email):
            fields.append("email")
        if not PasswordValidator.is_acceptable(password):
            fields.append("password")
        if fields:
            raise ValidationError("name, a valid email and a password of 6 to 72 characters are required", fields)
        return self._onboard(name.strip(), email, password, Role.ADMIN, None, {})

    def _onboard(self, name: str, email: str, password: str, role: Role,
                 grade: Optional[int], extras: Dict[str, Any]) -> Profile:
        metadata = {"full_name": name, **extras}
        user_id = self.store.create_identity(email, password, metadata)
        try:
            profile = self.store.insert_profile(user_id, email, name, role, grade)
        except Exception:
            logger.warning("Profile insert failed for %s; removing identity %s", email, user_id)
            try:
                self.store.delete_identity(user_id)
            except Exception:
                logger.exception("Could not remove identity %s after failed profile insert", user_id)
            raise
        logger.info("Created %s profile %s (%s)", role.value, profile.id, email)
        return profile

    def list_students(self) -> List[Profile]:
        return self.store.list_profiles(Role.STUDENT)

    def get_profile(self, user_id: str) -> Profile:
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Profile not found.")
        return profile

    # ------------------------- Portal auth ------------------------- #
    def login(self, email: str, password: str, portal: Role) -> tuple[Session, Profile]:
        """Sign in and make sure the account belongs to the requested portal.

        A mismatching role signs the fresh session straight back out.
        """
        if TextValidator.is_blank(email) or TextValidator.is_blank(password):
            raise ValidationError("email and password are required", ["email", "password"])
        session = self.store.sign_in(EmailValidator.normalize_email(email), password)
        profile = self.store.get_profile(session.user_id)
        if profile is None or profile.role != portal:
            self.store.sign_out(session.access_token)
            logger.info("Rejected %s portal login for user %s", portal.value, session.user_id)
            raise AuthorizationError(f"Access denied. {portal.value.title()} credentials required.")
        return session, profile

    def logout(self, access_token: str) -> None:
        self.store.sign_out(access_token)

    def authenticate(self, access_token: str) -> Profile:
        user_id = self.store.get_session_user(access_token)
        if user_id is None:
            raise AuthenticationError("Invalid or expired session.")
        profile = self.store.get_profile(user_id)
        if profile is None:
            raise AuthenticationError("No profile is linked to this session.")
        return profile

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: Optional[str], author: Optional[str], class_suitable: Any, total_count: Any) -> Book:
        fields = [name for name, value in (("title", title), ("author", author)) if TextValidator.is_blank(value)]
        if fields:
            raise ValidationError("Please provide Title, Author, Class Suitable and Total Copies", fields)
        class_number = NumberValidator.parse_non_negative(class_suitable, "class_suitable")
        copies = NumberValidator.parse_non_negative(total_count, "total_count")
        book = self.store.insert_book(title.strip(), author.strip(), class_number, copies)
        logger.info("Added book %s (%s copies)", book.id, copies)
        return book

    def get_book(self, book_id: str) -> Book:
        book = self.store.get_book(book_id)
        if book is None:
            raise NotFoundError("Book not found.")
        return book

    def browse_books(self, search: Optional[str] = None, max_class: Optional[int] = None,
                     available_only: bool = True, sort: Optional[str] = None) -> List[Book]:
        if sort is not None and sort not in BOOK_SORTS:
            raise ValidationError(f"Invalid sort. Allowed: {', '.join(BOOK_SORTS)}", ["sort"])
        books = self.store.list_books(
            available_only=available_only,
            title_search=search.strip() if search and search.strip() else None,
            max_class=max_class,
        )
        if sort:
            books = sorted(books, key=lambda b: b.title.casefold(), reverse=sort == "title_desc")
        return books

    # ------------------------- Circulation ------------------------- #
    def issue_book(self, student_id: str, book_id: str, issued_by: str,
                   due_date: Optional[datetime] = None, now: Optional[datetime] = None) -> IssuedBook:
        """Open an issuance and take one copy off the shelf.

        The copy is claimed first with a conditional decrement, so two admins
        can never hand out the same last copy. If the issuance row cannot be
        written the copy is put back.
        """
        now = now or utc_now()
        student = self.store.get_profile(student_id)
        if student is None or student.role != Role.STUDENT:
            raise NotFoundError("Student not found.")
        issuer = self.store.get_profile(issued_by)
        if issuer is None or issuer.role != Role.ADMIN:
            raise AuthorizationError("Access denied. Only admins can issue books.")
        book = self.get_book(book_id)
        due = due_date or now + timedelta(days=self.config.default_loan_days)
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)

        if not self.store.adjust_available(book_id, -1):
            raise NoCopiesAvailableError(f"No copies of '{book.title}' are available.")
        try:
            issue = self.store.insert_issue(book_id, student_id, issued_by, now, due)
        except Exception:
            logger.warning("Issuance insert failed for book %s; returning the claimed copy", book_id)
            if not self.store.adjust_available(book_id, 1):
                logger.error("Could not put back the claimed copy of book %s", book_id)
            raise
        logger.info("Issued book %s to student %s (issue %s, due %s)", book_id, student_id, issue.id, issue.due_date)
        return issue

    def return_book(self, student_id: str, book_id: str, now: Optional[datetime] = None) -> IssuedBook:
        """Close the oldest open issuance of the pair and shelve the copy again."""
        now = now or utc_now()
        while True:
            issue = self.store.find_open_issue(student_id, book_id)
            if issue is None:
                raise NoOpenIssuanceError("No open issuance found for this student and book.")
            fine = self.calculate_fine(issue.due_date, now)
            closed = self.store.close_issue(issue.id, now, fine)
            if closed is not None:
                break
            # someone else closed it first; look again

        if not self.store.adjust_available(book_id, 1):
            logger.warning("Book %s is already fully available; count left unchanged", book_id)
        logger.info("Returned book %s from student %s (issue %s, fine %s)", book_id, student_id, closed.id, fine)
        return closed

    def calculate_fine(self, due_date: Any, returned_at: Optional[datetime] = None) -> float:
        """Fine for a return, counted in whole UTC calendar days past the due date.

        A late return on the due day itself costs nothing, however many hours
        late it is.
        """
        due = parse_timestamp(due_date)
        returned = returned_at or utc_now()
        late_days = (returned.date() - due.date()).days
        return max(0, late_days) * self.config.fine_per_day

    def student_loans(self, student_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Open issuances of a student, newest first, with book titles."""
        now = now or utc_now()
        issues = self.store.list_issues(student_id=student_id, open_only=True)
        titles = self._book_titles(issues)
        return [
            {
                "id": issue.id,
                "book_id": issue.book_id,
                "title": titles.get(issue.book_id, issue.book_id),
                "issued_at": issue.issued_at,
                "due_date": issue.due_date,
                "overdue": issue.is_overdue(now),
            }
            for issue in issues
        ]

    def students_with_open_issues(self) -> List[Profile]:
        student_ids = sorted({issue.student_id for issue in self.store.list_issues(open_only=True)})
        return self.store.list_profiles(Role.STUDENT, ids=student_ids)

    def _book_titles(self, issues: List[IssuedBook]) -> Dict[str, str]:
        ids = sorted({issue.book_id for issue in issues})
        return {book.id: book.title for book in self.store.list_books(ids=ids)}

    def _student_names(self, issues: List[IssuedBook]) -> Dict[str, str]:
        ids = sorted({issue.student_id for issue in issues})
        return {profile.id: profile.full_name for profile in self.store.list_profiles(Role.STUDENT, ids=ids)}

    # ------------------------- Dashboards ------------------------- #
    def admin_dashboard(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        return {
            "total_students": self.store.count_profiles(Role.STUDENT),
            "total_books": self.store.count_books(),
            "open_issues": self.store.count_open_issues(),
            "overdue_issues": self.store.count_open_issues(due_before=now),
            "recent_activity": self.recent_activity(now),
        }

    def recent_activity(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        now = now or utc_now()
        issues = self.store.list_issues(limit=limit or self.config.recent_activity_limit)
        names = self._student_names(issues)
        titles = self._book_titles(issues)
        return [
            {
                "id": issue.id,
                "when": issue.issued_at,
                "student_id": issue.student_id,
                "student": names.get(issue.student_id, issue.student_id),
                "action": "Issued Book",
                "book_id": issue.book_id,
                "book": titles.get(issue.book_id, issue.book_id),
                "due_date": issue.due_date,
                "returned_at": issue.returned_at,
                "status": issue.status(now),
            }
            for issue in issues
        ]

    def student_dashboard(self, student: Profile, now: Optional[datetime] = None) -> Dict[str, Any]:
        loans = self.student_loans(student.id, now)
        return {
            "profile": student.to_dict(),
            "open_issues": loans,
            "overdue_count": sum(1 for loan in loans if loan["overdue"]),
        }

    # ------------------------- Messages ------------------------- #
    def send_message(self, student_id: str, text: Optional[str]) -> Message:
        cleaned = TextValidator.sanitize_text(text)
        if not cleaned:
            raise ValidationError("text is required", ["text"])
        return self.store.insert_message(student_id, cleaned)

    def list_messages(self, student_id: Optional[str] = None, status: Optional[str] = None) -> List[Message]:
        parsed = None
        if status:
            try:
                parsed = MessageStatus(status)
            except ValueError as e:
                allowed = ", ".join(s.value for s in MessageStatus)
                raise ValidationError(f"Invalid status. Allowed: {allowed}", ["status"]) from e
        return self.store.list_messages(student_id=student_id, status=parsed)

    def reply_to_message(self, message_id: str, reply: Optional[str]) -> Message:
        cleaned = TextValidator.sanitize_text(reply)
        if not cleaned:
            raise ValidationError("reply is required", ["reply"])
        message = self.store.update_message(message_id, cleaned, MessageStatus.REPLIED)
        if message is None:
            raise NotFoundError("Message not found.")
        return message
