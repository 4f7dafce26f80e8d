import pytest

from school_library.config import Settings
from school_library.database import SQLiteStore
from school_library.errors import StoreError
from school_library.store import create_store


def test_production_flag():
    config = Settings(environment="development")
    assert not config.is_production
    assert Settings(environment="Production").is_production


def test_cors_origin_list(monkeypatch):
    monkeypatch.setenv("CORS_ORIGIN", "https://library.school.org, http://localhost:5173")
    assert Settings().cors_origins == ["https://library.school.org", "http://localhost:5173"]


def test_create_sqlite_store(tmp_path):
    db_file = tmp_path / "nested" / "library.db"
    store = create_store(Settings(store_backend="sqlite", library_db_file=str(db_file)))
    assert isinstance(store, SQLiteStore)
    assert db_file.exists()
    assert store.count_books() == 0


def test_create_supabase_store_without_credentials():
    with pytest.raises(StoreError):
        create_store(Settings(store_backend="supabase", supabase_url="", supabase_service_role_key=""))


def test_unknown_backend():
    with pytest.raises(ValueError, match="Unknown store backend"):
        create_store(Settings(store_backend="mongo"))
