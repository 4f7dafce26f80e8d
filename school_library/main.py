import os
import subprocess
import sys
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console

from school_library.config import settings
from school_library.errors import LibraryError
from school_library.library import Library
from school_library.store import create_store
from school_library.ui_helpers import print_books, print_stats, print_students, set_output_mode

console = Console()


class LibraryManager:
    """Process-wide Library bound to the configured store."""
    _instance: Optional[Library] = None

    @classmethod
    def get_instance(cls) -> Library:
        if cls._instance is None:
            cls._instance = Library(create_store(settings), settings)
        return cls._instance

    @classmethod
    def use(cls, library: Optional[Library]) -> None:
        """Swap the shared instance, e.g. for a per-test database."""
        if cls._instance is not None and cls._instance is not library:
            cls._instance.store.close()
        cls._instance = library


def _fail(e: LibraryError) -> None:
    print(f"Error: {e.message}")
    raise typer.Exit(code=1)


# --- Typer CLI Application ---
app = typer.Typer(help="School library CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the store schema (SQLite) or check the hosted configuration."""
    lib = LibraryManager.get_instance()
    if settings.store_backend == "sqlite":
        print(f"Database ready: {settings.library_db_file}")
    else:
        print(f"Using {settings.store_backend} store ({type(lib.store).__name__})")


@app.command("create-admin")
def cli_create_admin(
    name: str,
    email: str,
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create an administrator account."""
    lib = LibraryManager.get_instance()
    try:
        profile = lib.create_admin(name, email, password)
    except LibraryError as e:
        _fail(e)
    print(f"Created admin {profile.email} (id {profile.id})")


@app.command("add-student")
def cli_add_student(
    name: str,
    email: Optional[str] = typer.Option(None, "--email", help="Derived from the name when omitted"),
    grade: Optional[int] = typer.Option(None, "--grade"),
    password: Optional[str] = typer.Option(None, "--password", help="Generated when omitted"),
):
    """Onboard a student (identity plus profile)."""
    lib = LibraryManager.get_instance()
    try:
        result = lib.create_student(name, email=email, grade=grade, password=password)
    except LibraryError as e:
        _fail(e)
    print(f"Created student {result.profile.email} (id {result.profile.id})")
    if result.generated_password:
        print(f"Temporary password: {result.generated_password}")


@app.command("students")
def cli_students():
    """List students, newest first."""
    print_students(LibraryManager.get_instance().list_students())


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    class_suitable: int = typer.Option(..., "--class", help="Highest grade the book suits"),
    copies: int = typer.Option(1, "--copies"),
):
    """Add a title to the catalog with all copies on the shelf."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.add_book(title, author, class_suitable, copies)
    except LibraryError as e:
        _fail(e)
    print(f"Added: {book.title} by {book.author} ({book.total_count} copies, id {book.id})")


@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    max_class: Optional[int] = typer.Option(None, "--max-class"),
    include_unavailable: bool = typer.Option(False, "--all", help="Include titles with no copies left"),
):
    """Browse the catalog."""
    lib = LibraryManager.get_instance()
    try:
        books = lib.browse_books(search=search, max_class=max_class, available_only=not include_unavailable)
    except LibraryError as e:
        _fail(e)
    print_books(books)


@app.command("issue")
def cli_issue(
    student_id: str,
    book_id: str,
    issued_by: str = typer.Option(..., "--by", help="Admin profile id"),
    due: Optional[datetime] = typer.Option(None, "--due", formats=["%Y-%m-%d"]),
):
    """Issue one copy of a book to a student."""
    lib = LibraryManager.get_instance()
    try:
        issue = lib.issue_book(student_id, book_id, issued_by=issued_by, due_date=due)
    except LibraryError as e:
        _fail(e)
    print(f"Issued {book_id} to {student_id}, due {issue.due_date[:10]}")


@app.command("return")
def cli_return(student_id: str, book_id: str):
    """Return the oldest open copy a student holds of a book."""
    lib = LibraryManager.get_instance()
    try:
        issue = lib.return_book(student_id, book_id)
    except LibraryError as e:
        _fail(e)
    message = f"Returned {book_id} from {student_id}"
    if issue.fine_amount:
        message += f" (fine {issue.fine_amount:g})"
    print(message)


@app.command("stats")
def cli_stats():
    """Show the admin dashboard counters."""
    print_stats(LibraryManager.get_instance().admin_dashboard())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the HTTP API with Uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "school_library.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False, env=os.environ.copy())
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/]")


if __name__ == "__main__":
    app()
