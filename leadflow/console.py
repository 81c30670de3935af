#!/usr/bin/env python3
"""
Operator console for the lead import pipeline.
Lists jobs, shows a job's progress, recovers stalled jobs and creates admins.
"""

import argparse
import getpass
import sys
from typing import List, Optional

from fastapi import HTTPException
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from leadflow.core.config import settings
from leadflow.core.logging_config import configure_logging
from leadflow.core.security import create_user
from leadflow.db.session import get_session_local, init_db
from leadflow.domain.imports import service
from leadflow.domain.imports.errors import ImportPipelineError

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
    "ready": "cyan",
    "parsing": "blue",
    "validating": "blue",
    "importing": "blue",
    "queued": "magenta",
}


class ImportConsole:
    """Rich-formatted views over import jobs."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def _status_text(self, status: str) -> str:
        style = STATUS_STYLES.get(status, "white")
        return f"[{style}]{status}[/{style}]"

    def show_jobs(self, status: Optional[str] = None, limit: int = 20) -> None:
        jobs, total = service.list_import_jobs(status=status, limit=limit)
        if not jobs:
            self.console.print("[yellow]No import jobs found.[/yellow]")
            return

        table = Table(title=f"Import jobs ({len(jobs)} of {total})")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("File", style="white")
        table.add_column("Status", style="white")
        table.add_column("Rows", justify="right")
        table.add_column("Valid", justify="right")
        table.add_column("Imported", justify="right")
        table.add_column("Updated", style="dim")

        for job in jobs:
            table.add_row(
                job["id"],
                job["file_name"],
                self._status_text(job["status"]),
                str(job["total_rows"]),
                str(job["valid_rows"]),
                str(job["imported_rows"]),
                job["updated_at"].strftime("%Y-%m-%d %H:%M") if job["updated_at"] else "",
            )
        self.console.print(table)

    def show_status(self, job_id: str) -> None:
        snapshot = service.poll_status(job_id)
        totals = snapshot["totals"]
        cursor = snapshot["cursor"]

        lines = [
            f"Status: {self._status_text(snapshot['status'])}  Phase: {snapshot['phase'] or '-'}",
            f"Progress: {snapshot['percent']}%",
            f"Chunks: {cursor['current_chunk']}/{cursor['total_chunks']}  Batch: {cursor['current_batch']}",
            "",
            f"Total rows: {totals['total_rows']}",
            f"Valid / invalid: {totals['valid_rows']} / {totals['invalid_rows']}",
            f"Imported / skipped: {totals['imported_rows']} / {totals['skipped_rows']}",
            f"Duplicates (file / store): {totals['file_duplicate_rows']} / {totals['db_duplicate_rows']}",
        ]
        if snapshot["error"]:
            lines += ["", f"[red]Error: {snapshot['error']['message']}[/red]"]

        border = STATUS_STYLES.get(snapshot["status"], "blue")
        self.console.print(Panel("\n".join(lines), title=f"Import job {job_id}", border_style=border))

    def recover(self, stale_minutes: Optional[int] = None) -> List[str]:
        with self.console.status("[bold green]Looking for stalled jobs...", spinner="dots"):
            recovered = service.recover_interrupted_jobs(stale_minutes)
        if recovered:
            self.console.print(f"[green]Re-enqueued {len(recovered)} job(s):[/green] {', '.join(recovered)}")
        else:
            self.console.print("[dim]No stalled jobs.[/dim]")
        return recovered

    def create_admin(self, email: str, password: str, full_name: Optional[str] = None) -> None:
        SessionLocal = get_session_local()
        with SessionLocal() as db:
            user = create_user(db, email=email, password=password, full_name=full_name, role="admin")
            self.console.print(f"[green]Created admin user {user.email} (id {user.id})[/green]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Lead import console - inspect and recover import jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s jobs --status failed
  %(prog)s status 3f1c0b6e-...
  %(prog)s recover --stale-minutes 5
  %(prog)s create-admin admin@example.com --full-name "Ops Admin"
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    jobs_parser = subparsers.add_parser("jobs", help="List recent import jobs")
    jobs_parser.add_argument("--status", help="Only show jobs in this status")
    jobs_parser.add_argument("--limit", type=int, default=20)

    status_parser = subparsers.add_parser("status", help="Show the progress of one job")
    status_parser.add_argument("job_id")

    recover_parser = subparsers.add_parser("recover", help="Re-enqueue stalled jobs")
    recover_parser.add_argument(
        "--stale-minutes",
        type=int,
        default=None,
        help=f"Idle time before a job counts as stalled (default: {settings.import_stale_job_minutes})",
    )

    admin_parser = subparsers.add_parser("create-admin", help="Create an admin user")
    admin_parser.add_argument("email")
    admin_parser.add_argument("--full-name", default=None)
    admin_parser.add_argument("--password", default=None, help="Prompted for when omitted")

    return parser


def main(argv: Optional[List[str]] = None, console: Optional[Console] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)
    init_db()

    import_console = ImportConsole(console)
    try:
        if args.command == "jobs":
            import_console.show_jobs(status=args.status, limit=args.limit)
        elif args.command == "status":
            import_console.show_status(args.job_id)
        elif args.command == "recover":
            import_console.recover(args.stale_minutes)
        elif args.command == "create-admin":
            password = args.password or getpass.getpass("Password: ")
            import_console.create_admin(args.email, password, args.full_name)
    except ImportPipelineError as e:
        import_console.console.print(f"[red]❌ {e.message}[/red]")
        return 1
    except HTTPException as e:
        import_console.console.print(f"[red]❌ {e.detail}[/red]")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
