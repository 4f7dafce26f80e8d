import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _grade(value: Any) -> str:
    return "-" if value is None else str(value)


def print_students(students: List[Any]) -> None:
    """Print student profiles in the current output mode.
    - plain: 'email - Full Name (grade N)' lines, or 'No students yet.'
    - json: array of id, full_name, email, grade
    - rich: table
    """
    mode = get_output_mode()

    if not students:
        print("No students yet.")
        return

    if mode == "json":
        payload = [
            {"id": s.id, "full_name": s.full_name, "email": s.email, "grade": s.grade}
            for s in students
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Students", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Email", style="white")
        table.add_column("Grade", justify="right")
        for s in students:
            table.add_row(s.id, s.full_name, s.email, _grade(s.grade))
        _console.print(table)
    else:
        for s in students:
            print(f"{s.email} - {s.full_name} (grade {_grade(s.grade)})")


def print_books(books: List[Any]) -> None:
    """Print catalog entries with their availability."""
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Class", justify="right")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.id, b.title, b.author, str(b.class_suitable), f"{b.available_count}/{b.total_count}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available_count}/{b.total_count} available]")


def print_stats(stats: Dict[str, Any]) -> None:
    """Print the admin dashboard counters.
    - plain: one 'Label: value' line per counter
    - json: JSON object without the activity feed
    - rich: panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    counters = {
        "total_students": stats.get("total_students", 0),
        "total_books": stats.get("total_books", 0),
        "open_issues": stats.get("open_issues", 0),
        "overdue_issues": stats.get("overdue_issues", 0),
    }

    if mode == "json":
        print(json.dumps(counters, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key.replace('_', ' ').title()}:[/] {value}" for key, value in counters.items())
        _console.print(Panel.fit(content, title="Library Stats", border_style="blue"))
    else:
        for key, value in counters.items():
            print(f"{key.replace('_', ' ').title()}: {value}")
