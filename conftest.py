import pytest
from fastapi.testclient import TestClient

from school_library.api import create_app
from school_library.config import Settings
from school_library.database import SQLiteStore
from school_library.library import Library


@pytest.fixture
def config(tmp_path, request):
    # Unique database file per test
    return Settings(
        library_db_file=str(tmp_path / f"test_{request.node.name}.db"),
        store_backend="sqlite",
        environment="test",
        bcrypt_rounds=4,
        cors_origins=["http://localhost:5173"],
    )


@pytest.fixture
def store(config):
    store = SQLiteStore(config.library_db_file, bcrypt_rounds=config.bcrypt_rounds)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def lib(store, config):
    return Library(store, config)


@pytest.fixture
def admin(lib):
    return lib.create_admin("Asha Librarian", "admin@kids-paradise.com", "admin-pass")


@pytest.fixture
def student(lib):
    return lib.create_student("Priya Sharma", grade=4, password="student-pass").profile


@pytest.fixture
def client(config, store):
    with TestClient(create_app(config, store)) as test_client:
        yield test_client


def login(client, email, password, portal):
    response = client.post("/api/auth/login", json={"email": email, "password": password, "portal": portal})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def admin_headers(client, admin):
    return login(client, admin.email, "admin-pass", "admin")


@pytest.fixture
def student_headers(client, student):
    return login(client, student.email, "student-pass", "student")
