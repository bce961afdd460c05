import logging
import time
from typing import Callable, Generator, TypeVar

from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, create_engine, Session

from .config import settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE de fallas de serialización / deadlock (PostgreSQL)
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def build_engine(url: str, echo: bool = False):
    # Configurar engine con soporte para SQLite en tests (hilos)
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(url, echo=echo, pool_pre_ping=True)


engine = build_engine(settings.database_url, echo=settings.debug)


def init_db(target_engine=None):
    # Importar modelos para asegurar que todas las tablas estén registradas en el metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(target_engine or engine)


def get_session() -> Generator[Session, None, None]:
    session = Session(engine)
    try:
        yield session
    finally:
        session.close()


def is_retryable_conflict(exc: OperationalError) -> bool:
    """Distinguish transient lock/serialization conflicts from real failures."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


def run_atomic(session: Session, operation: Callable[..., T], *args, **kwargs) -> T:
    """Run ``operation`` inside one transaction and commit it.

    Any exception rolls the whole unit back. Only lock/serialization conflicts
    are retried, with bounded exponential backoff; business rule errors raised
    by the services propagate on the first attempt.
    """

    attempts = max(settings.tx_max_retries, 0) + 1
    delay = settings.tx_retry_backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            result = operation(*args, **kwargs)
            session.commit()
            return result
        except OperationalError as exc:
            session.rollback()
            if attempt >= attempts or not is_retryable_conflict(exc):
                raise
            logger.warning(
                "Conflicto transaccional en %s (intento %s/%s), reintentando",
                getattr(operation, "__qualname__", operation),
                attempt,
                attempts,
            )
            time.sleep(delay)
            delay *= 2
        except Exception:
            session.rollback()
            raise
    raise RuntimeError("unreachable")  # pragma: no cover
