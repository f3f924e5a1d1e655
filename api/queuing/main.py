import logging
import os
import time
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .config import MATCHING_ENABLED
from .database import SessionLocal
from .deps import get_queue_manager, get_scheduler
from .errors import TransientStoreError
from .routes import include_modular_routers
from .services.queue_manager import QueueManager

logger = logging.getLogger(__name__)

app = FastAPI(title="Queue Matching API")
include_modular_routers(app)


def run_migrations() -> None:
    env_dir = os.getenv("MIGRATIONS_DIR", "").strip()
    docker_dir = Path("/app/migrations")
    local_dir = Path(__file__).resolve().parents[1] / "migrations"

    if env_dir:
        migrations_dir = Path(env_dir)
    elif docker_dir.exists():
        migrations_dir = docker_dir
    else:
        migrations_dir = local_dir

    if not migrations_dir.exists() or not migrations_dir.is_dir():
        raise FileNotFoundError(
            "Migrations directory not found. Checked: "
            f"MIGRATIONS_DIR={env_dir or '<unset>'}, {docker_dir}, {local_dir}"
        )

    files = sorted([f.name for f in migrations_dir.iterdir() if f.is_file() and f.suffix == ".sql"])
    with SessionLocal() as db:
        for fname in files:
            db.execute(text((migrations_dir / fname).read_text(encoding="utf-8")))
        db.commit()
    logger.info("[STARTUP] applied %s migration files from %s", len(files), migrations_dir)


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@app.on_event("startup")
def on_startup() -> None:
    wait_for_db()
    run_migrations()
    if MATCHING_ENABLED:
        get_scheduler().start()
    else:
        logger.info("[STARTUP] matching scheduler disabled")


@app.on_event("shutdown")
def on_shutdown() -> None:
    if MATCHING_ENABLED:
        get_scheduler().shutdown(wait=False)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/ready")
def ready(manager: QueueManager = Depends(get_queue_manager)) -> dict:
    try:
        waiting = manager.index.count()
    except TransientStoreError:
        raise HTTPException(status_code=503, detail="Waiting index unavailable")
    return {"status": "ok", "waiting": waiting}
