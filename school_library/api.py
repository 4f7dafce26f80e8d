import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from school_library.config import Settings, settings
from school_library.errors import (
    AuthenticationError,
    AuthorizationError,
    DuplicateResourceError,
    LibraryError,
    NoCopiesAvailableError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from school_library.library import Library
from school_library.models import Profile, Role
from school_library.store import Store, create_store

logger = logging.getLogger(__name__)

# Local dev servers on any port and preview deployments on Vercel
LOCAL_ORIGIN_REGEX = r"^(http://localhost:\d+|http://127\.0\.0\.1:\d+|https://[A-Za-z0-9-]+\.vercel\.app)$"

ERROR_STATUS = (
    (ValidationError, 400),
    (DuplicateResourceError, 400),
    (NoCopiesAvailableError, 409),
    (NotFoundError, 404),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (StoreError, 500),
)


# --- Models ---
class ProfileModel(BaseModel):
    id: str
    email: str
    full_name: str
    role: Role
    grade: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class StudentModel(BaseModel):
    id: str
    full_name: str
    email: str
    grade: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class StudentListResponse(BaseModel):
    success: bool = True
    count: int
    data: List[StudentModel]


class StudentCreateModel(BaseModel):
    """Admin onboarding form. Numeric fields may arrive as strings."""
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    email: str | None = None
    grade: Union[int, str, None] = None
    password: str | None = None
    age: Union[int, str, None] = None
    parent_name: str | None = Field(default=None, alias="parentName")
    contact_number: str | None = Field(default=None, alias="contactNumber")
    address: str | None = None


class LoginModel(BaseModel):
    email: str
    password: str
    portal: Role


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: ProfileModel


class BookModel(BaseModel):
    id: str
    title: str
    author: str
    class_suitable: int
    total_count: int
    available_count: int
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    author: str | None = None
    class_suitable: Union[int, str, None] = Field(default=None, alias="classSuitable")
    total_count: Union[int, str, None] = Field(default=None, alias="totalCount")


class IssueCreateModel(BaseModel):
    student_id: str
    book_id: str
    due_date: datetime | None = Field(default=None, description="Defaults to the configured loan period")


class ReturnModel(BaseModel):
    student_id: str
    book_id: str


class IssuedBookModel(BaseModel):
    id: str
    book_id: str
    student_id: str
    issued_by: str
    issued_at: str
    due_date: str
    returned_at: str | None = None
    fine_amount: float | None = None


class LoanModel(BaseModel):
    id: str
    book_id: str
    title: str
    issued_at: str
    due_date: str
    overdue: bool


class ActivityModel(BaseModel):
    id: str
    when: str
    student_id: str
    student: str
    action: str
    book_id: str
    book: str
    due_date: str
    returned_at: str | None = None
    status: str  # ok | overdue | returned


class AdminDashboardModel(BaseModel):
    total_students: int
    total_books: int
    open_issues: int
    overdue_issues: int
    recent_activity: List[ActivityModel]


class StudentDashboardModel(BaseModel):
    profile: ProfileModel
    open_issues: List[LoanModel]
    overdue_count: int


class MessageCreateModel(BaseModel):
    text: str | None = None


class MessageReplyModel(BaseModel):
    reply: str | None = None


class MessageModel(BaseModel):
    id: str
    student_id: str
    text: str
    status: str
    admin_reply: str | None = None
    created_at: str | None = None


# --- Dependencies ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_current_profile(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    library: Library = Depends(get_library),
) -> Profile:
    if credentials is None:
        raise AuthenticationError("Authentication required.")
    return library.authenticate(credentials.credentials)


def require_admin(profile: Profile = Depends(get_current_profile)) -> Profile:
    if profile.role != Role.ADMIN:
        raise AuthorizationError("Access denied. Admin credentials required.")
    return profile


def require_student(profile: Profile = Depends(get_current_profile)) -> Profile:
    if profile.role != Role.STUDENT:
        raise AuthorizationError("Access denied. Student credentials required.")
    return profile


# --- Routes ---
router = APIRouter()


@router.get("/")
def index(request: Request):
    config: Settings = request.app.state.settings
    return {
        "ok": True,
        "service": config.app_name,
        "version": config.app_version,
        "routes": ["/api/health", "/api/students", "/api/books", "/api/circulation", "/api/dashboard", "/api/messages"],
    }


@router.get("/api/health")
def health():
    return {"status": "ok"}


@router.post("/api/auth/login", response_model=LoginResponse)
def login(payload: LoginModel, library: Library = Depends(get_library)):
    session, profile = library.login(payload.email, payload.password, payload.portal)
    return LoginResponse(access_token=session.access_token, user=ProfileModel(**profile.to_dict()))


@router.post("/api/auth/logout")
def logout(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    library: Library = Depends(get_library),
):
    if credentials is None:
        raise AuthenticationError("Authentication required.")
    library.logout(credentials.credentials)
    return {"success": True}


@router.get("/api/auth/me", response_model=ProfileModel)
def me(profile: Profile = Depends(get_current_profile)):
    return ProfileModel(**profile.to_dict())


@router.get("/api/students", response_model=StudentListResponse)
def list_students(_: Profile = Depends(require_admin), library: Library = Depends(get_library)):
    students = library.list_students()
    return StudentListResponse(
        count=len(students),
        data=[StudentModel(**student.to_dict()) for student in students],
    )


@router.post("/api/students", status_code=201)
def create_student(
    payload: StudentCreateModel,
    _: Profile = Depends(require_admin),
    library: Library = Depends(get_library),
):
    result = library.create_student(
        payload.name,
        email=payload.email,
        grade=payload.grade,
        password=payload.password,
        age=payload.age,
        parent_name=payload.parent_name,
        contact_number=payload.contact_number,
        address=payload.address,
    )
    profile = result.profile
    body: Dict[str, Any] = {
        "success": True,
        "data": {
            "id": profile.id,
            "full_name": profile.full_name,
            "email": profile.email,
            "grade": profile.grade,
            "role": profile.role.value,
            **result.details,
        },
    }
    if result.generated_password:
        body["temporary_password"] = result.generated_password
    return body


@router.get("/api/books", response_model=List[BookModel])
def list_books(
    search: Optional[str] = Query(default=None, description="Case-insensitive title match"),
    max_class: Optional[int] = Query(default=None, ge=0),
    available_only: bool = True,
    only_my_grade: bool = True,
    sort: Optional[str] = Query(default=None, description="title_asc | title_desc"),
    profile: Profile = Depends(get_current_profile),
    library: Library = Depends(get_library),
):
    if max_class is None and only_my_grade and profile.role == Role.STUDENT:
        max_class = profile.grade
    books = library.browse_books(search=search, max_class=max_class, available_only=available_only, sort=sort)
    return [BookModel(**book.to_dict()) for book in books]


@router.post("/api/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, _: Profile = Depends(require_admin),
                library: Library = Depends(get_library)):
    book = library.add_book(payload.title, payload.author, payload.class_suitable, payload.total_count)
    return BookModel(**book.to_dict())


@router.get("/api/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, _: Profile = Depends(get_current_profile), library: Library = Depends(get_library)):
    return BookModel(**library.get_book(book_id).to_dict())


@router.post("/api/circulation/issue", response_model=IssuedBookModel, status_code=201)
def issue_book(payload: IssueCreateModel, admin: Profile = Depends(require_admin),
               library: Library = Depends(get_library)):
    issue = library.issue_book(payload.student_id, payload.book_id, issued_by=admin.id, due_date=payload.due_date)
    return IssuedBookModel(**issue.to_dict())


@router.post("/api/circulation/return", response_model=IssuedBookModel)
def return_book(payload: ReturnModel, _: Profile = Depends(require_admin),
                library: Library = Depends(get_library)):
    issue = library.return_book(payload.student_id, payload.book_id)
    return IssuedBookModel(**issue.to_dict())


@router.get("/api/circulation/open", response_model=List[LoanModel])
def open_issues(student_id: str, _: Profile = Depends(require_admin), library: Library = Depends(get_library)):
    return [LoanModel(**loan) for loan in library.student_loans(student_id)]


@router.get("/api/circulation/borrowers", response_model=List[StudentModel])
def borrowers(_: Profile = Depends(require_admin), library: Library = Depends(get_library)):
    return [StudentModel(**student.to_dict()) for student in library.students_with_open_issues()]


@router.get("/api/dashboard/admin", response_model=AdminDashboardModel)
def admin_dashboard(_: Profile = Depends(require_admin), library: Library = Depends(get_library)):
    return AdminDashboardModel(**library.admin_dashboard())


@router.get("/api/dashboard/student", response_model=StudentDashboardModel)
def student_dashboard(student: Profile = Depends(require_student), library: Library = Depends(get_library)):
    return StudentDashboardModel(**library.student_dashboard(student))


@router.get("/api/messages", response_model=List[MessageModel])
def list_messages(
    status: Optional[str] = Query(default=None, description="pending | replied"),
    profile: Profile = Depends(get_current_profile),
    library: Library = Depends(get_library),
):
    student_id = None if profile.role == Role.ADMIN else profile.id
    return [MessageModel(**message.to_dict()) for message in library.list_messages(student_id, status)]


@router.post("/api/messages", response_model=MessageModel, status_code=201)
def send_message(payload: MessageCreateModel, student: Profile = Depends(require_student),
                 library: Library = Depends(get_library)):
    return MessageModel(**library.send_message(student.id, payload.text).to_dict())


@router.post("/api/messages/{message_id}/reply", response_model=MessageModel)
def reply_to_message(message_id: str, payload: MessageReplyModel, _: Profile = Depends(require_admin),
                     library: Library = Depends(get_library)):
    return MessageModel(**library.reply_to_message(message_id, payload.reply).to_dict())


# --- Error handling ---
def _status_for(exc: LibraryError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return 500


async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    config: Settings = request.app.state.settings
    status_code = _status_for(exc)
    body: Dict[str, Any] = {"success": False, "error": exc.error, "message": exc.message}
    if isinstance(exc, ValidationError):
        body["fields"] = exc.fields
    # Store codes and hints stay server-side in production
    if exc.details and not config.is_production:
        body["details"] = exc.details
    if status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
    return JSONResponse(status_code=status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        if location:
            fields.append(".".join(location))
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": ValidationError.error,
            "message": "Missing or invalid fields: " + ", ".join(fields) if fields else "Invalid request",
            "fields": fields,
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# --- Application ---
def create_app(config: Optional[Settings] = None, store: Optional[Store] = None) -> FastAPI:
    """Build the application; the store is opened at startup and closed at shutdown."""
    config = config or settings
    logging.basicConfig(level=config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_store = store or create_store(config)
        app.state.library = Library(app_store, config)
        logger.info("%s started with the %s store", config.app_name, type(app_store).__name__)
        try:
            yield
        finally:
            app_store.close()

    app = FastAPI(title="School Library API", version=config.app_version, lifespan=lifespan)
    app.state.settings = config

    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()
