from fastapi.testclient import TestClient

from school_library.api import create_app
from school_library.errors import StoreError


def login(client, email, password, portal):
    response = client.post("/api/auth/login", json={"email": email, "password": password, "portal": portal})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _create_book(client, headers, **overrides):
    payload = {"title": "Matilda", "author": "Roald Dahl", "class_suitable": 4, "total_count": 2}
    payload.update(overrides)
    response = client.post("/api/books", headers=headers, json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_index_and_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    body = client.get("/").json()
    assert body["ok"] is True
    assert "/api/students" in body["routes"]


def test_cors_allows_local_dev_origin(client):
    response = client.options(
        "/api/health",
        headers={"Origin": "http://127.0.0.1:3000", "Access-Control-Request-Method": "GET"},
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://127.0.0.1:3000"


def test_cors_rejects_unknown_origin(client):
    response = client.get("/api/health", headers={"Origin": "https://evil.example.com"})
    assert "access-control-allow-origin" not in response.headers


def test_login_returns_token_and_profile(client, admin):
    response = client.post(
        "/api/auth/login", json={"email": admin.email, "password": "admin-pass", "portal": "admin"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == "admin"


def test_login_wrong_portal_is_forbidden(client, student):
    response = client.post(
        "/api/auth/login", json={"email": student.email, "password": "student-pass", "portal": "admin"}
    )
    assert response.status_code == 403
    assert response.json()["message"] == "Access denied. Admin credentials required."


def test_login_bad_credentials(client, admin):
    response = client.post("/api/auth/login", json={"email": admin.email, "password": "nope!!", "portal": "admin"})
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_logout_invalidates_token(client, admin_headers):
    assert client.get("/api/auth/me", headers=admin_headers).status_code == 200
    assert client.post("/api/auth/logout", headers=admin_headers).json() == {"success": True}
    assert client.get("/api/auth/me", headers=admin_headers).status_code == 401


def test_admin_routes_require_session(client):
    assert client.get("/api/students").status_code == 401
    response = client.get("/api/students", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_students_cannot_use_admin_routes(client, student_headers):
    response = client.get("/api/students", headers=student_headers)
    assert response.status_code == 403
    assert response.json()["error"] == "Access denied"


def test_create_and_list_students(client, admin_headers):
    response = client.post(
        "/api/students",
        headers=admin_headers,
        json={"name": "Ravi Kumar", "grade": "5", "age": 10, "parentName": "Meena Kumar"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["email"] == "ravi.kumar@kids-paradise.com"
    assert body["data"]["parent_name"] == "Meena Kumar"
    assert body["temporary_password"]

    listing = client.get("/api/students", headers=admin_headers).json()
    assert listing["success"] is True
    assert listing["count"] == 1
    assert listing["data"][0]["full_name"] == "Ravi Kumar"
    assert set(listing["data"][0]) == {"id", "full_name", "email", "grade", "created_at", "updated_at"}


def test_create_student_validation_error(client, admin_headers):
    response = client.post("/api/students", headers=admin_headers, json={"grade": "x"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert set(body["fields"]) == {"name", "grade"}


def test_create_student_duplicate_email(client, admin_headers, student):
    response = client.post(
        "/api/students", headers=admin_headers, json={"name": "Priya Again", "email": student.email}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Duplicate resource"


def test_request_body_type_errors_are_400(client, admin_headers):
    response = client.post("/api/circulation/issue", headers=admin_headers, json={"book_id": "b"})
    assert response.status_code == 400
    assert response.json()["fields"] == ["student_id"]


def test_book_catalog_for_students_defaults_to_their_grade(client, admin_headers, student_headers):
    _create_book(client, admin_headers, title="Matilda", class_suitable=4)
    _create_book(client, admin_headers, title="The Hobbit", class_suitable=7)

    own_grade = client.get("/api/books", headers=student_headers).json()
    assert [b["title"] for b in own_grade] == ["Matilda"]

    everything = client.get("/api/books?only_my_grade=false&sort=title_asc", headers=student_headers).json()
    assert [b["title"] for b in everything] == ["Matilda", "The Hobbit"]


def test_create_book_validation(client, admin_headers):
    response = client.post("/api/books", headers=admin_headers, json={"title": "", "author": "X"})
    assert response.status_code == 400
    assert response.json()["message"].startswith("Please provide Title")


def test_issue_and_return_over_http(client, admin_headers, student):
    book = _create_book(client, admin_headers, total_count=1)

    issued = client.post(
        "/api/circulation/issue", headers=admin_headers, json={"student_id": student.id, "book_id": book["id"]}
    )
    assert issued.status_code == 201
    assert issued.json()["returned_at"] is None

    again = client.post(
        "/api/circulation/issue", headers=admin_headers, json={"student_id": student.id, "book_id": book["id"]}
    )
    assert again.status_code == 409

    loans = client.get(f"/api/circulation/open?student_id={student.id}", headers=admin_headers).json()
    assert [loan["title"] for loan in loans] == ["Matilda"]
    borrowers = client.get("/api/circulation/borrowers", headers=admin_headers).json()
    assert [b["id"] for b in borrowers] == [student.id]

    returned = client.post(
        "/api/circulation/return", headers=admin_headers, json={"student_id": student.id, "book_id": book["id"]}
    )
    assert returned.status_code == 200
    assert returned.json()["returned_at"] is not None

    missing = client.post(
        "/api/circulation/return", headers=admin_headers, json={"student_id": student.id, "book_id": book["id"]}
    )
    assert missing.status_code == 404


def test_issue_unknown_book(client, admin_headers, student):
    response = client.post(
        "/api/circulation/issue", headers=admin_headers, json={"student_id": student.id, "book_id": "missing"}
    )
    assert response.status_code == 404
    assert response.json()["message"] == "Book not found."


def test_dashboards(client, admin_headers, student_headers, student):
    book = _create_book(client, admin_headers)
    client.post(
        "/api/circulation/issue",
        headers=admin_headers,
        json={"student_id": student.id, "book_id": book["id"], "due_date": "2020-01-01T00:00:00Z"},
    )

    stats = client.get("/api/dashboard/admin", headers=admin_headers).json()
    assert stats["total_students"] == 1
    assert stats["open_issues"] == 1
    assert stats["overdue_issues"] == 1
    assert stats["recent_activity"][0]["status"] == "overdue"

    mine = client.get("/api/dashboard/student", headers=student_headers).json()
    assert mine["overdue_count"] == 1
    assert mine["profile"]["id"] == student.id

    assert client.get("/api/dashboard/student", headers=admin_headers).status_code == 403


def test_messages_flow(client, admin_headers, student_headers):
    sent = client.post("/api/messages", headers=student_headers, json={"text": "Is Matilda back?"})
    assert sent.status_code == 201
    message_id = sent.json()["id"]

    pending = client.get("/api/messages?status=pending", headers=admin_headers).json()
    assert [m["id"] for m in pending] == [message_id]

    reply = client.post(f"/api/messages/{message_id}/reply", headers=admin_headers, json={"reply": "Yes"})
    assert reply.json()["status"] == "replied"

    mine = client.get("/api/messages", headers=student_headers).json()
    assert mine[0]["admin_reply"] == "Yes"

    assert client.post("/api/messages/nope/reply", headers=admin_headers, json={"reply": "x"}).status_code == 404


def test_store_error_details_hidden_in_production(config, store, admin, student):
    config.environment = "production"
    with TestClient(create_app(config, store)) as client:
        headers = login(client, admin.email, "admin-pass", "admin")
        lib = client.app.state.library
        book = lib.add_book("Matilda", "Roald Dahl", 4, 1)

        def broken_insert(*args, **kwargs):
            raise StoreError("insert failed", code="23503", hint="check ids")

        store.insert_issue = broken_insert
        response = client.post(
            "/api/circulation/issue", headers=headers, json={"student_id": student.id, "book_id": book.id}
        )

    assert response.status_code == 500
    assert "details" not in response.json()
    assert store.get_book(book.id).available_count == 1


def test_store_error_details_shown_outside_production(client, admin_headers, student, store):
    book = client.app.state.library.add_book("Matilda", "Roald Dahl", 4, 1)

    def broken_insert(*args, **kwargs):
        raise StoreError("insert failed", code="23503", hint="check ids")

    store.insert_issue = broken_insert
    response = client.post(
        "/api/circulation/issue", headers=admin_headers, json={"student_id": student.id, "book_id": book.id}
    )
    assert response.status_code == 500
    assert response.json()["details"] == {"code": "23503", "hint": "check ids"}
