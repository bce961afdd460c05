from datetime import UTC, datetime, timedelta

import pytest
from sqlmodel import func, select

from escolar.db import run_atomic
from escolar.errors import (
    ExamPeriodClosed,
    ExamPeriodFull,
    ImmutableState,
    InvalidPeriodDates,
    InvalidTransition,
    ValidationError,
)
from escolar.models import DiagnosticExam, ExamPeriod, ExamPeriodStatusEnum, PaymentStatusEnum
from escolar.services.english import EnglishProgressionEngine
from escolar.services.exam_periods import REGISTRATION_CLOSED_MESSAGE, ExamPeriodService


NOW = datetime.now(UTC)
DAY = timedelta(days=1)


def _window(start_offset: int = -1):
    """Registration window around ``NOW + start_offset days``; exams start after it closes."""
    inscripcion_inicio = NOW + start_offset * DAY
    return {
        "fecha_inscripcion_inicio": inscripcion_inicio,
        "fecha_inscripcion_fin": inscripcion_inicio + 2 * DAY,
        "fecha_inicio": inscripcion_inicio + 3 * DAY,
        "fecha_fin": inscripcion_inicio + 4 * DAY,
    }


@pytest.fixture()
def periods(session):
    return ExamPeriodService(session)


@pytest.fixture()
def english(session):
    return EnglishProgressionEngine(session)


@pytest.fixture()
def open_period(session, periods):
    def _make(nombre: str = "Diagnóstico agosto", start_offset: int = -1, **kwargs):
        period = run_atomic(session, periods.create, nombre, **_window(start_offset), **kwargs)
        return run_atomic(session, periods.open, period)

    return _make


def _cupo(session, period_id):
    return session.get(ExamPeriod, period_id, populate_existing=True).cupo_actual


def _exam_count(session):
    return session.exec(select(func.count()).select_from(DiagnosticExam)).one()


@pytest.mark.parametrize(
    "changes,message",
    [
        (
            {"fecha_inscripcion_fin": NOW - 2 * DAY},
            "La fecha de inicio de inscripciones debe ser anterior a la fecha de fin",
        ),
        (
            {"fecha_fin": NOW + DAY},
            "La fecha de inicio del período debe ser anterior a la fecha de fin",
        ),
        (
            {"fecha_inscripcion_fin": NOW + 5 * DAY, "fecha_fin": NOW + 10 * DAY},
            "Las inscripciones deben cerrar antes o el mismo día que inician los exámenes",
        ),
    ],
)
def test_create_validates_date_order(session, periods, changes, message):
    fechas = _window()
    fechas.update(changes)
    with pytest.raises(InvalidPeriodDates) as exc:
        run_atomic(session, periods.create, "Período inválido", **fechas)
    assert exc.value.message == message
    assert session.exec(select(ExamPeriod)).all() == []


def test_registration_may_close_the_day_exams_start(session, periods):
    fechas = _window()
    fechas["fecha_inscripcion_fin"] = fechas["fecha_inicio"]
    period = run_atomic(session, periods.create, "Mismo día", **fechas)
    assert period.estatus == ExamPeriodStatusEnum.planeado
    assert period.cupo_maximo == 100 and period.cupo_actual == 0


@pytest.mark.parametrize("cupo", [0, -3, True])
def test_create_requires_positive_capacity(session, periods, cupo):
    with pytest.raises(ValidationError):
        run_atomic(session, periods.create, "Sin cupo", cupo_maximo=cupo, **_window())


def test_open_and_close_follow_the_period_lifecycle(session, periods):
    period = run_atomic(session, periods.create, "Ciclo", **_window())
    with pytest.raises(InvalidTransition):
        run_atomic(session, periods.close, period)

    run_atomic(session, periods.open, period)
    assert period.estatus == ExamPeriodStatusEnum.abierto
    run_atomic(session, periods.close, period)
    assert period.estatus == ExamPeriodStatusEnum.cerrado

    # Un período cerrado puede reabrirse; uno finalizado no
    run_atomic(session, periods.open, period)
    period.estatus = ExamPeriodStatusEnum.finalizado
    session.add(period)
    session.commit()
    with pytest.raises(InvalidTransition):
        run_atomic(session, periods.open, period)


def test_exam_request_takes_a_period_seat(session, english, open_period, make_student):
    period = open_period(cupo_maximo=2)
    exam = run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=period.id)

    assert exam.period_id == period.id
    assert _cupo(session, period.id) == 1

    run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=period.id)
    assert _cupo(session, period.id) == 2


def test_full_period_rejects_without_writing(session, english, open_period, make_student):
    period = open_period(cupo_maximo=1)
    run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=period.id)
    before = _exam_count(session)

    with pytest.raises(ExamPeriodFull) as exc:
        run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=period.id)
    assert exc.value.context == {"period_id": period.id, "cupo_maximo": 1}
    assert _cupo(session, period.id) == 1
    assert _exam_count(session) == before


def test_planned_or_closed_period_rejects_requests(session, english, periods, make_student):
    student = make_student()
    period = run_atomic(session, periods.create, "Planeado", **_window())
    with pytest.raises(ExamPeriodClosed):
        run_atomic(session, english.request_diagnostic_exam, student.id, period_id=period.id)

    run_atomic(session, periods.open, period)
    run_atomic(session, periods.close, period)
    with pytest.raises(ExamPeriodClosed):
        run_atomic(session, english.request_diagnostic_exam, student.id, period_id=period.id)
    assert _cupo(session, period.id) == 0
    assert _exam_count(session) == 0


@pytest.mark.parametrize("start_offset", [-10, 5])
def test_requests_outside_registration_window_are_rejected(session, english, open_period, make_student, start_offset):
    period = open_period(start_offset=start_offset)
    with pytest.raises(ExamPeriodClosed) as exc:
        run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=period.id)
    assert exc.value.message == REGISTRATION_CLOSED_MESSAGE
    assert _cupo(session, period.id) == 0


def test_exam_inherits_payment_terms_from_period(session, english, open_period, make_student):
    period = open_period(requiere_pago=True, monto_pago=250)
    exam = run_atomic(
        session, english.request_diagnostic_exam, make_student().id, period_id=period.id, requiere_pago=False
    )
    assert exam.requiere_pago is True
    assert exam.monto_pago == 250
    assert exam.estado_pago == PaymentStatusEnum.pendiente_pago


def test_cancelling_an_exam_frees_its_period_seat(session, english, open_period, make_student):
    period = open_period(cupo_maximo=1)
    student = make_student()
    exam = run_atomic(session, english.request_diagnostic_exam, student.id, period_id=period.id)

    run_atomic(session, english.cancel_exam, exam)
    assert _cupo(session, period.id) == 0
    with pytest.raises(ImmutableState):
        run_atomic(session, english.cancel_exam, exam)

    # El lugar liberado queda disponible para otro estudiante
    run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=period.id)
    assert _cupo(session, period.id) == 1


def test_available_lists_open_periods_inside_their_window(session, periods, open_period, make_student, english):
    current = open_period(nombre="Vigente", cupo_maximo=1)
    open_period(nombre="Pasado", start_offset=-10)
    run_atomic(session, periods.create, "Planeado", **_window())

    available = periods.available()
    assert [p.nombre for p in available] == ["Vigente"]
    assert available[0].cupos_disponibles == 1
    assert available[0].esta_disponible is True

    run_atomic(session, english.request_diagnostic_exam, make_student().id, period_id=current.id)
    snapshot = periods.availability(periods.get(current.id))
    assert snapshot.cupos_disponibles == 0
    assert snapshot.esta_disponible is False


def test_exam_periods_over_http(client, admin_token, auth_header, api_data):
    admin = auth_header(admin_token)
    _, token = api_data.student(with_login=True)
    body = {k: v.isoformat() for k, v in _window().items()}
    body.update({"nombre": "Diagnóstico HTTP", "cupo_maximo": 1})

    bad = dict(body, fecha_fin=body["fecha_inicio"])
    res = client.post("/exam-periods/", json=bad, headers=admin)
    assert res.status_code == 422
    assert res.json()["error"] == "InvalidPeriodDates"

    assert client.post("/exam-periods/", json=body, headers=auth_header(token)).status_code == 403
    res = client.post("/exam-periods/", json=body, headers=admin)
    assert res.status_code == 200, res.text
    period = res.json()
    assert period["estatus"] == "PLANEADO"

    listed = client.get("/exam-periods/available", headers=auth_header(token)).json()
    assert period["id"] not in [p["id"] for p in listed]

    res = client.post(f"/exam-periods/{period['id']}/open", headers=admin)
    assert res.status_code == 200, res.text
    listed = client.get("/exam-periods/available", headers=auth_header(token)).json()
    assert period["id"] in [p["id"] for p in listed]

    res = client.post("/english/diagnostic-exams", json={"period_id": period["id"]}, headers=auth_header(token))
    assert res.status_code == 200, res.text
    exam = res.json()
    assert exam["period_id"] == period["id"]

    detail = client.get(f"/exam-periods/{period['id']}", headers=admin).json()
    assert detail["cupo_actual"] == 1
    assert detail["esta_disponible"] is False

    _, other_token = api_data.student(with_login=True)
    res = client.post("/english/diagnostic-exams", json={"period_id": period["id"]}, headers=auth_header(other_token))
    assert res.status_code == 409
    assert res.json()["error"] == "ExamPeriodFull"

    res = client.post(f"/english/diagnostic-exams/{exam['id']}/cancel", headers=auth_header(other_token))
    assert res.status_code == 403
    res = client.post(f"/english/diagnostic-exams/{exam['id']}/cancel", headers=auth_header(token))
    assert res.status_code == 200, res.text
    assert res.json()["estatus"] == "CANCELADO"
    res = client.post("/english/diagnostic-exams", json={"period_id": period["id"]}, headers=auth_header(other_token))
    assert res.status_code == 200, res.text

    assert client.post(f"/exam-periods/{period['id']}/close", headers=admin).status_code == 200
    res = client.post(f"/exam-periods/{period['id']}/close", headers=admin)
    assert res.status_code == 409
    assert res.json()["error"] == "InvalidTransition"
