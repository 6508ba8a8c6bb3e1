"""Budget Tracker – FastAPI application."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import Base, engine
# Import models so Base.metadata has all tables before create_all (schema source of truth)
from app.models import User  # noqa: F401
from app.routers import auth, mpesa, realtime
from app.services.activation import ActivationWorkflow
from app.services.daraja import DarajaClient
from app.services.pending_store import InMemoryPendingStore, PendingActivationStore
from app.services.realtime import ConnectionManager

log = logging.getLogger("uvicorn.error")


def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Bad request bodies are client input errors: 400 with a readable detail, like the other input checks."""
    problems = []
    for e in exc.errors():
        loc = ".".join(str(x) for x in (e.get("loc") or ()) if x != "body")
        problems.append(f"{loc}: {e.get('msg', 'Invalid value')}" if loc else e.get("msg", "Invalid value"))
    return JSONResponse(status_code=400, content={"detail": "Invalid request. " + "; ".join(problems)})


def create_app(
    daraja_client: DarajaClient | None = None,
    pending_store: PendingActivationStore | None = None,
) -> FastAPI:
    """Build the app with one Daraja client, pending store and notifier per process."""
    settings = get_settings()
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.client_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    notifier = ConnectionManager()
    app.state.notifier = notifier
    app.state.activation = ActivationWorkflow(
        client=daraja_client if daraja_client is not None else DarajaClient(settings),
        store=(
            pending_store
            if pending_store is not None
            else InMemoryPendingStore(ttl_seconds=settings.pending_activation_ttl_seconds)
        ),
        notifier=notifier,
    )

    app.add_exception_handler(RequestValidationError, _validation_error_handler)

    app.include_router(auth.router)
    app.include_router(mpesa.router)
    app.include_router(realtime.router)

    @app.on_event("startup")
    def startup():
        if settings.mpesa_configured:
            log.info("[M-Pesa] Using %s, callback=%s", settings.mpesa_base_url, settings.mpesa_callback_url)
        else:
            log.warning(
                "[M-Pesa] Not configured - STK push will fail; set MPESA_CONSUMER_KEY, MPESA_CONSUMER_SECRET, "
                "MPESA_SHORTCODE, MPESA_PASSKEY and MPESA_CALLBACK_URL in .env and restart"
            )
        if not settings.callback_allowed_ips:
            log.warning("[M-Pesa] MPESA_CALLBACK_ALLOWED_IPS is empty - callbacks are accepted from any address")
        try:
            Base.metadata.create_all(bind=engine)
        except Exception as e:
            log.warning("Database startup failed (tables skipped). Check DATABASE_URL and network. Error: %s", e)

    @app.get("/")
    def root():
        return {"app": settings.app_name, "status": "ok"}

    @app.get("/api/health")
    def health():
        return {"ok": True}

    return app


app = create_app()
