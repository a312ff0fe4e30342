import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from starlette.concurrency import run_in_threadpool

from . import database, models  # noqa: F401
from .config import ALLOWED_ORIGINS, EXPIRY_SWEEP_INTERVAL_SECONDS, LOG_LEVEL
from .http_helpers import error_body
from .routes import include_modular_routers
from .services.errors import ChatError
from .services.presence import PresenceRegistry
from .services.realtime import ConnectionHub
from .services.scheduler import start_expiry_scheduler

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Match Chat API")
app.state.presence = PresenceRegistry()
app.state.hub = ConnectionHub(app.state.presence)
app.state.expiry_task = None
include_modular_routers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,  # Required for cookie-based auth
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("[api] %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def run_migrations() -> None:
    database.Base.metadata.create_all(bind=database.engine)


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with database.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


@app.on_event("startup")
async def on_startup() -> None:
    await run_in_threadpool(wait_for_db)
    await run_in_threadpool(run_migrations)
    app.state.expiry_task = start_expiry_scheduler(EXPIRY_SWEEP_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    task = app.state.expiry_task
    if task is not None:
        task.cancel()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
