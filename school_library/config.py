import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "4000"))

    # Store settings
    store_backend: str = os.getenv("STORE_BACKEND", "sqlite")  # sqlite | supabase
    library_db_file: str = os.getenv("LIBRARY_DB_FILE", "school_library.db")

    # Supabase settings (the VITE_ names are what the web client ships with)
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL") or os.getenv("VITE_SUPABASE_URL")
    supabase_service_role_key: Optional[str] = (
        os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("VITE_SUPABASE_SERVICE_ROLE_KEY")
    )
    supabase_anon_key: Optional[str] = os.getenv("SUPABASE_ANON_KEY") or os.getenv("VITE_SUPABASE_ANON_KEY")
    supabase_timeout: float = float(os.getenv("SUPABASE_TIMEOUT", "10"))

    # CORS
    cors_origins: List[str] = field(default_factory=lambda: _env_list("CORS_ORIGIN", "http://localhost:5173"))

    # Circulation settings
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "5"))
    recent_activity_limit: int = int(os.getenv("RECENT_ACTIVITY_LIMIT", "10"))

    # Onboarding settings
    student_email_domain: str = os.getenv("STUDENT_EMAIL_DOMAIN", "kids-paradise.com")
    generated_password_length: int = int(os.getenv("GENERATED_PASSWORD_LENGTH", "12"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "kidlit-backend")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_bool("DEBUG")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


settings = Settings()
