from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from pathlib import Path

import typer
import uvicorn
from sqlalchemy.exc import IntegrityError

from applyflow.api.app import create_app
from applyflow.config import get_settings
from applyflow.core.worker import QueueWorker
from applyflow.db.init import init_database
from applyflow.db.models import QueueItem
from applyflow.db.repositories import Repository
from applyflow.db.session import SessionLocal
from applyflow.logging_config import configure_logging

app = typer.Typer(help="ApplyFlow CLI")
cv_app = typer.Typer(help="Seed parsed CVs")
jobs_app = typer.Typer(help="Job registry commands")
queue_app = typer.Typer(help="Application queue commands")
workflow_app = typer.Typer(help="Workflow status and cancellation")
worker_app = typer.Typer(help="Queue worker")

app.add_typer(cv_app, name="cv")
app.add_typer(jobs_app, name="jobs")
app.add_typer(queue_app, name="queue")
app.add_typer(workflow_app, name="workflow")
app.add_typer(worker_app, name="worker")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _queue_item_dict(item: QueueItem) -> dict:
    return {
        "id": item.id,
        "workflow_id": item.workflow_id,
        "user_id": item.user_id,
        "job_external_id": item.job_external_id,
        "status": item.status,
        "priority": item.priority,
        "attempts": item.attempts,
        "next_run_at": item.next_run_at.isoformat(),
        "last_error": item.last_error,
    }


@app.command("init")
def init_cmd() -> None:
    """Initialize the database and data directory."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@cv_app.command("add")
def cv_add(
    user_id: str = typer.Option(..., "--user-id"),
    file: Path = typer.Option(..., "--file", exists=True, readable=True),
    title: str = typer.Option("", "--title"),
) -> None:
    """Store a parsed CV (JSON file) for a user."""
    configure_logging()
    ensure_initialized()
    parsed = json.loads(file.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise typer.BadParameter("CV file must contain a JSON object")

    with SessionLocal() as db:
        cv = Repository(db).create_cv(user_id=user_id, title=title or file.stem, parsed_data=parsed)
        _echo({"id": cv.id, "user_id": cv.user_id, "title": cv.title})


@jobs_app.command("add")
def jobs_add(file: Path = typer.Option(..., "--file", exists=True, readable=True)) -> None:
    """Register one job or a list of jobs from a JSON file."""
    configure_logging()
    ensure_initialized()
    payload = json.loads(file.read_text(encoding="utf-8"))
    entries = payload if isinstance(payload, list) else [payload]

    with SessionLocal() as db:
        repo = Repository(db)
        created = []
        for entry in entries:
            try:
                job = repo.create_job(
                    external_id=str(entry["external_id"]),
                    title=entry.get("title", ""),
                    company=entry.get("company", ""),
                    description=entry.get("description", ""),
                    url=entry.get("url", ""),
                    search_context=entry.get("search_context"),
                )
            except IntegrityError as exc:
                db.rollback()
                raise typer.BadParameter(f"job {entry['external_id']} is already registered") from exc
            created.append({"id": job.id, "external_id": job.external_id, "title": job.title})
        _echo({"created": created})


@jobs_app.command("list")
def jobs_list(limit: int = typer.Option(20, "--limit")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        jobs = Repository(db).list_jobs(limit=limit)
        _echo(
            [
                {
                    "id": job.id,
                    "external_id": job.external_id,
                    "title": job.title,
                    "company": job.company,
                    "url": job.url,
                    "created_at": job.created_at.isoformat() if job.created_at else None,
                }
                for job in jobs
            ]
        )


@queue_app.command("add")
def queue_add(
    user_id: str = typer.Option(..., "--user-id"),
    cv_id: int = typer.Option(..., "--cv-id"),
    job_ids: list[int] = typer.Option(..., "--job-id"),
    priority: int = typer.Option(0, "--priority"),
) -> None:
    """Queue applications for one or more jobs as a new workflow."""
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            result = Repository(db).enqueue_jobs(
                user_id=user_id,
                cv_id=cv_id,
                job_ids=list(dict.fromkeys(job_ids)),
                priority=priority,
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        _echo(result.model_dump())


@queue_app.command("list")
def queue_list(
    user_id: str | None = typer.Option(None, "--user-id"),
    workflow_id: str | None = typer.Option(None, "--workflow-id"),
    status: str | None = typer.Option(None, "--status"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        rows = Repository(db).list_queue(user_id=user_id, workflow_id=workflow_id, status=status)
        _echo([_queue_item_dict(row) for row in rows])


@queue_app.command("remove")
def queue_remove(item_id: int = typer.Argument(...)) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            removed = Repository(db).remove_from_queue(item_id)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _echo({"id": item_id, "removed": removed})
    if not removed:
        raise typer.Exit(code=1)


@workflow_app.command("status")
def workflow_status(workflow_id: str = typer.Argument(...)) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            _echo(Repository(db).workflow_status(workflow_id))
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc


@workflow_app.command("cancel")
def workflow_cancel(
    workflow_id: str = typer.Argument(...),
    user_id: str | None = typer.Option(None, "--user-id"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            cancelled = Repository(db).cancel_workflow(workflow_id, user_id=user_id)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _echo({"workflow_id": workflow_id, "cancelled_count": cancelled})


@worker_app.command("run")
def worker_run(once: bool = typer.Option(False, "--once", help="Process a single batch and exit")) -> None:
    """Run the queue worker until SIGINT/SIGTERM."""
    configure_logging()
    ensure_initialized()
    worker = QueueWorker()

    async def main() -> int:
        try:
            if once:
                return await worker.run_once()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(sig, worker.stop)
            await worker.run_forever()
            return 0
        finally:
            await worker.aclose()

    processed = asyncio.run(main())
    if once:
        _echo({"processed": processed})


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)


if __name__ == "__main__":
    app()
