from __future__ import annotations

import logging

import typer
from sqlmodel import Session

from . import db as db_module
from .config import settings
from .errors import EngineError
from .seed import ensure_demo_data
from .services.enrollments import recompute_student_average
from .services.english import EnglishProgress, EnglishProgressionEngine


app = typer.Typer(add_completion=False, help="Herramientas de administración del motor de inscripciones.")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Mostrar mensajes de depuración.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _print_progress(progress: EnglishProgress) -> None:
    typer.echo(f"Estudiante: {progress.student_id}")
    niveles = ", ".join(f"{nivel}={calificacion:g}" for nivel, calificacion in sorted(progress.niveles.items()))
    typer.echo(f"Niveles acreditados: {niveles or 'ninguno'}")
    typer.echo(f"Niveles pendientes: {', '.join(str(n) for n in progress.niveles_pendientes) or 'ninguno'}")
    typer.echo(f"Avance: {progress.progreso}%")
    typer.echo(f"Promedio: {progress.promedio if progress.promedio is not None else 'N/A'}")
    if progress.cumple_requisito:
        typer.secho("Requisito de inglés: CUMPLIDO", fg=typer.colors.GREEN)
    else:
        typer.secho(f"Requisito de inglés: PENDIENTE ({progress.razon_no_cumple})", fg=typer.colors.YELLOW)


def _fail(exc: EngineError) -> None:
    typer.secho(f"{exc.kind}: {exc.message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command() -> None:
    """Crear las tablas en la base configurada."""
    db_module.init_db()
    typer.echo(f"Base de datos inicializada en {db_module.engine.url}")


@app.command("seed-demo")
def seed_demo() -> None:
    """Cargar docentes, estudiantes y grupos de demostración."""
    db_module.init_db()
    with Session(db_module.engine) as session:
        summary = ensure_demo_data(session)
    typer.echo(
        f"Datos de demostración listos: {summary['teachers']} docentes, "
        f"{summary['students']} estudiantes, {summary['groups']} grupos"
    )


@app.command("english-status")
def english_status(student_id: int = typer.Argument(..., help="ID del estudiante")) -> None:
    """Mostrar el avance de inglés de un estudiante."""
    with Session(db_module.engine) as session:
        try:
            status = EnglishProgressionEngine(session).english_status(student_id)
        except EngineError as exc:
            _fail(exc)
        _print_progress(status["progress"])


@app.command("recompute-english")
def recompute_english(student_id: int = typer.Argument(..., help="ID del estudiante")) -> None:
    """Recalcular promedio y requisito de inglés a partir de los niveles registrados."""
    with Session(db_module.engine) as session:
        engine = EnglishProgressionEngine(session)
        try:
            progress = db_module.run_atomic(session, engine.recompute_progress, student_id)
        except EngineError as exc:
            _fail(exc)
        _print_progress(progress)


@app.command("recompute-average")
def recompute_average(student_id: int = typer.Argument(..., help="ID del estudiante")) -> None:
    """Recalcular el promedio general (materias distintas de inglés)."""
    with Session(db_module.engine) as session:
        try:
            promedio = db_module.run_atomic(session, recompute_student_average, session, student_id)
        except EngineError as exc:
            _fail(exc)
        typer.echo(f"Promedio general: {promedio if promedio is not None else 'N/A'}")


if __name__ == "__main__":
    app()
