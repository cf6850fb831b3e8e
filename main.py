from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from zurihealth.config import Settings, settings as default_settings
from zurihealth.database import PersistenceContext
from zurihealth.errors import ZuriHealthError
from zurihealth.logging_setup import get_logger, setup_logging
from zurihealth.migrations.engine import MigrationEngine
from zurihealth.utils.clock import hospital_now

logger = get_logger("zurihealth.api")

STATUS_CODES = {
    "validation_error": 422,
    "uniqueness_violation": 409,
    "referential_integrity_error": 409,
    "invalid_state_transition": 409,
    "not_found": 404,
    "migration_conflict": 503,
    "migration_error": 500,
    "migration_dependency_error": 500,
}


def error_response(exc: ZuriHealthError) -> JSONResponse:
    return JSONResponse(status_code=STATUS_CODES.get(exc.kind, 500), content={"ok": False, "error": exc.to_dict()})


def get_context(request: Request) -> PersistenceContext:
    return request.app.state.context


router = APIRouter(prefix="/api/v1")


@router.get("/schema/status")
def schema_status(request: Request):
    migrations = MigrationEngine(get_context(request).engine)
    steps = migrations.status()
    return {
        "ok": True,
        "data": {
            "migrations": steps,
            "pending": [step["key"] for step in steps if step["status"] == "pending"],
            "drift": migrations.drift(),
        },
    }


def create_app(settings: Optional[Settings] = None, context: Optional[PersistenceContext] = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR or None)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        persistence = context or PersistenceContext(settings.DATABASE_URL, settings.DB_ECHO)
        persistence.open()
        app.state.context = persistence
        try:
            if settings.VERIFY_SCHEMA_ON_STARTUP:
                MigrationEngine(persistence.engine).verify()
            yield
        finally:
            persistence.close()

    app = FastAPI(title="ZuriHealth Records API", version="1.0.0", lifespan=lifespan)

    @app.exception_handler(ZuriHealthError)
    async def handle_domain_error(request: Request, exc: ZuriHealthError):
        if STATUS_CODES.get(exc.kind, 500) >= 500:
            logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
        return error_response(exc)

    @app.get("/", include_in_schema=False)
    def read_root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    def health():
        return {"ok": True, "status": "up", "time": hospital_now().isoformat()}

    app.include_router(router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app()
