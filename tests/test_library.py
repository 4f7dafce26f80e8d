from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from school_library.errors import (
    AuthenticationError,
    AuthorizationError,
    DuplicateResourceError,
    NoCopiesAvailableError,
    NoOpenIssuanceError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from school_library.models import MessageStatus, Role, parse_timestamp

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _book(lib, copies=2, title="Charlotte's Web", class_suitable=3):
    return lib.add_book(title, "E. B. White", class_suitable, copies)


def _student(lib, name, grade=3):
    return lib.create_student(name, grade=grade, password="secret1").profile


def test_issue_and_return_cycle(lib, admin):
    book = _book(lib, copies=2)
    a, c, d = (_student(lib, name) for name in ("Student A", "Student C", "Student D"))

    lib.issue_book(a.id, book.id, admin.id, now=NOW)
    lib.issue_book(c.id, book.id, admin.id, now=NOW)
    assert lib.get_book(book.id).available_count == 0

    with pytest.raises(NoCopiesAvailableError, match="Charlotte's Web"):
        lib.issue_book(d.id, book.id, admin.id, now=NOW)
    assert lib.store.count_open_issues() == 2

    returned = lib.return_book(a.id, book.id, now=NOW + timedelta(days=1))
    assert returned.returned_at is not None
    assert lib.get_book(book.id).available_count == 1
    assert lib.store.count_open_issues() == 1


def test_return_without_open_issuance_changes_nothing(lib, admin, student):
    book = _book(lib, copies=1)
    with pytest.raises(NoOpenIssuanceError):
        lib.return_book(student.id, book.id)
    assert lib.get_book(book.id).available_count == 1


def test_second_return_is_rejected(lib, admin, student):
    book = _book(lib, copies=1)
    lib.issue_book(student.id, book.id, admin.id, now=NOW)
    lib.return_book(student.id, book.id, now=NOW)
    with pytest.raises(NoOpenIssuanceError):
        lib.return_book(student.id, book.id, now=NOW)
    assert lib.get_book(book.id).available_count == 1


def test_returned_issuance_is_kept_in_history(lib, admin, student):
    book = _book(lib)
    issue = lib.issue_book(student.id, book.id, admin.id, now=NOW)
    lib.return_book(student.id, book.id, now=NOW)

    history = lib.store.list_issues(student_id=student.id)
    assert [i.id for i in history] == [issue.id]
    assert not history[0].is_open
    assert lib.student_loans(student.id) == []


def test_return_closes_oldest_open_issuance(lib, admin, student):
    book = _book(lib, copies=2)
    first = lib.issue_book(student.id, book.id, admin.id, now=NOW)
    second = lib.issue_book(student.id, book.id, admin.id, now=NOW + timedelta(hours=1))

    returned = lib.return_book(student.id, book.id, now=NOW + timedelta(hours=2))
    assert returned.id == first.id
    assert [loan["id"] for loan in lib.student_loans(student.id)] == [second.id]


def test_available_count_never_exceeds_total(lib):
    book = _book(lib, copies=1)
    assert lib.store.adjust_available(book.id, 1) is False
    assert lib.get_book(book.id).available_count == 1
    assert lib.store.adjust_available(book.id, -1) is True
    assert lib.store.adjust_available(book.id, -1) is False
    assert lib.get_book(book.id).available_count == 0


def test_concurrent_issues_of_last_copy(lib, admin):
    book = _book(lib, copies=1)
    students = [_student(lib, f"Racer {n}") for n in "ABCD"]

    def attempt(profile):
        try:
            lib.issue_book(profile.id, book.id, admin.id)
            return True
        except NoCopiesAvailableError:
            return False

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(attempt, students))

    assert outcomes.count(True) == 1
    assert lib.get_book(book.id).available_count == 0
    assert lib.store.count_open_issues() == 1


def test_issue_unknown_student_or_book(lib, admin, student):
    book = _book(lib)
    with pytest.raises(NotFoundError, match="Student not found."):
        lib.issue_book("nobody", book.id, admin.id)
    with pytest.raises(NotFoundError, match="Student not found."):
        lib.issue_book(admin.id, book.id, admin.id)
    with pytest.raises(NotFoundError, match="Book not found."):
        lib.issue_book(student.id, "missing", admin.id)
    assert lib.get_book(book.id).available_count == 2


def test_failed_issuance_puts_copy_back(lib, admin, student, monkeypatch):
    book = _book(lib, copies=2)

    def broken_insert(*args, **kwargs):
        raise StoreError("insert failed", code="23503")

    monkeypatch.setattr(lib.store, "insert_issue", broken_insert)
    with pytest.raises(StoreError):
        lib.issue_book(student.id, book.id, admin.id, now=NOW)
    assert lib.get_book(book.id).available_count == 2
    assert lib.store.count_open_issues() == 0


def test_only_admins_can_issue(lib, admin, student):
    book = _book(lib, copies=2)
    classmate = _student(lib, "Class Mate")
    with pytest.raises(AuthorizationError, match="Only admins can issue books"):
        lib.issue_book(student.id, book.id, issued_by=classmate.id, now=NOW)
    with pytest.raises(AuthorizationError):
        lib.issue_book(student.id, book.id, issued_by="ghost-admin", now=NOW)
    assert lib.get_book(book.id).available_count == 2
    assert lib.store.count_open_issues() == 0


def test_default_due_date(lib, admin, student):
    book = _book(lib)
    issue = lib.issue_book(student.id, book.id, admin.id, now=NOW)
    assert parse_timestamp(issue.issued_at) == NOW
    assert parse_timestamp(issue.due_date) == NOW + timedelta(days=lib.config.default_loan_days)


def test_fine_for_late_return(lib, admin, student):
    book = _book(lib)
    lib.issue_book(student.id, book.id, admin.id, due_date=NOW + timedelta(days=1), now=NOW)
    returned = lib.return_book(student.id, book.id, now=NOW + timedelta(days=4))
    assert returned.fine_amount == 3 * lib.config.fine_per_day


def test_no_fine_when_returned_later_on_due_day(lib, admin, student):
    book = _book(lib)
    lib.issue_book(student.id, book.id, admin.id, due_date=NOW + timedelta(days=7), now=NOW)
    returned = lib.return_book(student.id, book.id, now=NOW + timedelta(days=7, hours=5))
    assert returned.fine_amount == 0


def test_fine_counts_calendar_days_not_hours(lib, admin, student):
    book = _book(lib)
    due = datetime(2024, 3, 8, 23, 0, tzinfo=timezone.utc)
    lib.issue_book(student.id, book.id, admin.id, due_date=due, now=NOW)
    returned = lib.return_book(student.id, book.id, now=due + timedelta(hours=2))
    assert returned.fine_amount == lib.config.fine_per_day


# --- Onboarding ---
def test_student_email_and_password_are_derived(lib):
    result = lib.create_student("Priya Sharma", grade=4)
    assert result.profile.email == "priya.sharma@kids-paradise.com"
    assert result.profile.role == Role.STUDENT
    assert result.generated_password

    session, profile = lib.login(result.profile.email, result.generated_password, Role.STUDENT)
    assert profile.id == result.profile.id == session.user_id


def test_student_extended_fields_go_to_identity_metadata(lib):
    result = lib.create_student(
        "Ravi Kumar", grade="5", password="secret1", age="10", parent_name="Meena Kumar", contact_number=" 555-0101 "
    )
    assert result.generated_password is None
    assert result.profile.grade == 5
    assert result.details == {"age": 10, "parent_name": "Meena Kumar", "contact_number": "555-0101"}

    row = lib.store._query_one("SELECT metadata FROM auth_users WHERE id = ?", (result.profile.id,))
    assert '"parent_name": "Meena Kumar"' in row["metadata"]


def test_student_validation_collects_fields(lib):
    with pytest.raises(ValidationError) as excinfo:
        lib.create_student("  ", grade="abc", password="123")
    assert set(excinfo.value.fields) == {"name", "grade", "password"}
    assert lib.store.count_profiles(Role.STUDENT) == 0


def test_email_required_when_name_cannot_be_derived(lib):
    with pytest.raises(ValidationError, match="cannot be derived from the name") as excinfo:
        lib.create_student("李明", grade=3, password="secret1")
    assert excinfo.value.fields == ["email"]
    assert lib.store.count_profiles(Role.STUDENT) == 0

    result = lib.create_student("李明", email="li.ming@example.com", grade=3, password="secret1")
    assert result.profile.email == "li.ming@example.com"


def test_grade_out_of_range(lib):
    with pytest.raises(ValidationError) as excinfo:
        lib.create_student("Tall Student", grade=13)
    assert excinfo.value.fields == ["grade"]


def test_duplicate_email_rejected(lib):
    lib.create_student("First Kid", email="kid@example.com", password="secret1")
    with pytest.raises(DuplicateResourceError):
        lib.create_student("Second Kid", email="KID@example.com", password="secret2")
    assert lib.store.count_profiles(Role.STUDENT) == 1


def test_failed_profile_insert_removes_identity(lib, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise StoreError("profiles table unavailable", code="42P01")

    monkeypatch.setattr(lib.store, "insert_profile", broken_insert)
    with pytest.raises(StoreError):
        lib.create_student("Lost Kid", email="lost@example.com", password="secret1")

    monkeypatch.undo()
    with pytest.raises(AuthenticationError):
        lib.store.sign_in("lost@example.com", "secret1")
    # the same address can be onboarded again
    assert lib.create_student("Lost Kid", email="lost@example.com", password="secret1").profile


def test_students_listed_newest_first(lib):
    names = ["Kid One", "Kid Two", "Kid Three"]
    for name in names:
        _student(lib, name)
    assert [s.full_name for s in lib.list_students()] == list(reversed(names))


def test_list_students_excludes_admins(lib, admin, student):
    assert [s.id for s in lib.list_students()] == [student.id]


# --- Portal auth ---
def test_student_cannot_use_admin_portal(lib, student):
    with pytest.raises(AuthorizationError, match="Admin credentials required"):
        lib.login(student.email, "student-pass", Role.ADMIN)
    row = lib.store._query_one("SELECT COUNT(*) AS n FROM sessions")
    assert row["n"] == 0


def test_admin_cannot_use_student_portal(lib, admin):
    with pytest.raises(AuthorizationError, match="Student credentials required"):
        lib.login(admin.email, "admin-pass", Role.STUDENT)


def test_wrong_password(lib, admin):
    with pytest.raises(AuthenticationError):
        lib.login(admin.email, "not-it", Role.ADMIN)


def test_passwords_are_stored_as_bcrypt_hashes(lib, admin):
    row = lib.store._query_one("SELECT password_hash FROM auth_users WHERE id = ?", (admin.id,))
    assert row["password_hash"].startswith("$2b$04$")
    assert "admin-pass" not in row["password_hash"]
    session, profile = lib.login(admin.email, "admin-pass", Role.ADMIN)
    assert profile.id == admin.id


def test_logout_ends_session(lib, admin):
    session, _ = lib.login(" Admin@Kids-Paradise.com ", "admin-pass", Role.ADMIN)
    assert lib.authenticate(session.access_token).id == admin.id
    lib.logout(session.access_token)
    with pytest.raises(AuthenticationError):
        lib.authenticate(session.access_token)


# --- Catalog ---
def test_add_book_requires_fields(lib):
    with pytest.raises(ValidationError, match="Please provide Title, Author"):
        lib.add_book("", "Someone", 3, 1)
    with pytest.raises(ValidationError) as excinfo:
        lib.add_book("Title", "Author", 3, -1)
    assert excinfo.value.fields == ["total_count"]


def test_new_book_is_fully_available(lib):
    book = _book(lib, copies=4)
    assert book.total_count == book.available_count == 4


def test_browse_books_filters(lib, admin, student):
    web = _book(lib, copies=1, title="Charlotte's Web", class_suitable=3)
    _book(lib, copies=2, title="Matilda", class_suitable=5)
    _book(lib, copies=1, title="The Web Weaver", class_suitable=2)
    lib.issue_book(student.id, web.id, admin.id)

    assert [b.title for b in lib.browse_books(search="WEB")] == ["The Web Weaver"]
    assert {b.title for b in lib.browse_books(search="web", available_only=False)} == {"Charlotte's Web", "The Web Weaver"}
    assert [b.title for b in lib.browse_books(max_class=4, sort="title_asc")] == ["The Web Weaver"]
    assert [b.title for b in lib.browse_books(sort="title_desc")] == ["The Web Weaver", "Matilda"]


def test_browse_books_rejects_unknown_sort(lib):
    with pytest.raises(ValidationError):
        lib.browse_books(sort="newest")


# --- Dashboards ---
def test_admin_dashboard_counts(lib, admin, student):
    book = _book(lib, copies=3)
    other = _student(lib, "Other Kid")
    lib.issue_book(student.id, book.id, admin.id, due_date=NOW + timedelta(days=1), now=NOW)
    lib.issue_book(other.id, book.id, admin.id, due_date=NOW + timedelta(days=10), now=NOW + timedelta(hours=1))

    stats = lib.admin_dashboard(now=NOW + timedelta(days=3))
    assert stats["total_students"] == 2
    assert stats["total_books"] == 1
    assert stats["open_issues"] == 2
    assert stats["overdue_issues"] == 1

    activity = stats["recent_activity"]
    assert [a["student"] for a in activity] == ["Other Kid", "Priya Sharma"]
    assert [a["status"] for a in activity] == ["ok", "overdue"]
    assert activity[0]["book"] == "Charlotte's Web"
    assert activity[0]["action"] == "Issued Book"


def test_issue_due_right_now_is_not_overdue_yet(lib, admin, student):
    book = _book(lib)
    lib.issue_book(student.id, book.id, admin.id, due_date=NOW, now=NOW - timedelta(days=14))

    at_due = lib.admin_dashboard(now=NOW)
    assert at_due["overdue_issues"] == 0
    assert at_due["recent_activity"][0]["status"] == "ok"
    assert lib.student_dashboard(student, now=NOW)["overdue_count"] == 0

    just_after = lib.admin_dashboard(now=NOW + timedelta(microseconds=1))
    assert just_after["overdue_issues"] == 1
    assert just_after["recent_activity"][0]["status"] == "overdue"
    assert lib.student_dashboard(student, now=NOW + timedelta(microseconds=1))["overdue_count"] == 1


def test_recent_activity_shows_returns(lib, admin, student):
    book = _book(lib)
    lib.issue_book(student.id, book.id, admin.id, now=NOW)
    lib.return_book(student.id, book.id, now=NOW)
    assert lib.recent_activity(now=NOW)[0]["status"] == "returned"


def test_student_dashboard(lib, admin, student):
    book = _book(lib)
    lib.issue_book(student.id, book.id, admin.id, due_date=NOW + timedelta(days=1), now=NOW)
    data = lib.student_dashboard(student, now=NOW + timedelta(days=2))
    assert data["profile"]["email"] == student.email
    assert data["overdue_count"] == 1
    assert data["open_issues"][0]["title"] == "Charlotte's Web"


def test_students_with_open_issues(lib, admin, student):
    book = _book(lib)
    _student(lib, "Idle Kid")
    lib.issue_book(student.id, book.id, admin.id)
    assert [s.id for s in lib.students_with_open_issues()] == [student.id]


# --- Messages ---
def test_message_lifecycle(lib, student):
    message = lib.send_message(student.id, "<b>Can I renew</b> Matilda?")
    assert message.text == "Can I renew Matilda?"
    assert message.status == MessageStatus.PENDING

    replied = lib.reply_to_message(message.id, "Yes, until Friday.")
    assert replied.status == MessageStatus.REPLIED
    assert replied.admin_reply == "Yes, until Friday."

    assert [m.id for m in lib.list_messages(student.id, "replied")] == [message.id]
    assert lib.list_messages(status="pending") == []


def test_message_validation(lib, student):
    with pytest.raises(ValidationError):
        lib.send_message(student.id, "   ")
    with pytest.raises(ValidationError):
        lib.list_messages(status="archived")
    with pytest.raises(NotFoundError, match="Message not found."):
        lib.reply_to_message("missing", "hello")
