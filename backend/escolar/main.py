import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import init_db
from .errors import EngineError
from .seed import ensure_default_admin
from .routers import auth, enrollments, english, exam_periods, groups, payments


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    ensure_default_admin(force_password_reset=settings.is_production)
    logger.info("%s iniciado (entorno=%s)", settings.app_name, settings.environment)
    yield


app = FastAPI(title="Control Escolar API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.info("Operación rechazada en %s: %s (%s)", request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.as_dict()))


app.include_router(auth.router)
app.include_router(enrollments.router)
app.include_router(english.router)
app.include_router(exam_periods.router)
app.include_router(payments.router)
app.include_router(groups.router)


@app.get("/")
def root():
    return {"status": "ok", "service": "Control Escolar API"}
