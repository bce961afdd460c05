from datetime import date

import pytest

from escolar.errors import InvalidAttendance, InvalidGrade
from escolar.models import Enrollment
from escolar.services.grades import GradeAggregator


def _enrollment(**kwargs) -> Enrollment:
    return Enrollment(student_id=1, group_id=1, **kwargs)


def test_final_is_mean_of_recorded_partials_and_approves():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment()
    aggregator.apply_grades(enrollment, partials=[80, 60])

    assert enrollment.calificacion_final == 70.0
    assert enrollment.aprobado is True
    assert enrollment.fecha_aprobacion == date.today()


def test_failing_final_clears_approval_date():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment(aprobado=True, fecha_aprobacion=date(2024, 6, 1))
    aggregator.apply_grades(enrollment, partials=[50, 60, 40])

    assert enrollment.calificacion_final == 50.0
    assert enrollment.aprobado is False
    assert enrollment.fecha_aprobacion is None


def test_existing_approval_date_is_kept():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment(fecha_aprobacion=date(2024, 6, 1))
    aggregator.apply_grades(enrollment, partials=[90, 95, 100])
    assert enrollment.fecha_aprobacion == date(2024, 6, 1)


def test_zero_and_missing_partials_are_not_recorded():
    assert GradeAggregator.recompute_final([None, 0, 88.5]) == 88.5
    assert GradeAggregator.recompute_final([None, None, None]) is None
    assert GradeAggregator.recompute_final([0, 0, 0]) is None
    assert GradeAggregator.recompute_final([70, 71, 71]) == 70.67


def test_undefined_final_is_not_approved():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment(aprobado=True, fecha_aprobacion=date(2024, 6, 1))
    aggregator.apply_grades(enrollment, partials=[0, None])

    assert enrollment.calificacion_final is None
    assert enrollment.aprobado is False
    assert enrollment.fecha_aprobacion is None


def test_manual_final_overrides_mean_and_reapplies_rule():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment()
    aggregator.apply_grades(enrollment, partials=[90, 90], final=65)

    assert enrollment.calificacion_parcial1 == 90
    assert enrollment.calificacion_final == 65
    assert enrollment.aprobado is False


def test_extra_grade_is_stored_without_changing_final():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment()
    aggregator.apply_grades(enrollment, partials=[60, 60], extra=95)

    assert enrollment.calificacion_extra == 95
    assert enrollment.calificacion_final == 60
    assert enrollment.aprobado is False


@pytest.mark.parametrize("value", [-1, 100.01, 85.123, "abc", float("nan"), True])
def test_invalid_grades_are_rejected(value):
    with pytest.raises(InvalidGrade):
        GradeAggregator.validate_grade(value, "calificacion_parcial1")


def test_invalid_grade_leaves_enrollment_untouched():
    aggregator = GradeAggregator(passing_grade=70)
    enrollment = _enrollment(calificacion_parcial1=80.0)
    with pytest.raises(InvalidGrade):
        aggregator.apply_grades(enrollment, partials=[90, 101])
    assert enrollment.calificacion_parcial1 == 80.0
    assert enrollment.calificacion_final is None


def test_attendance_percentage():
    assert GradeAggregator.recompute_attendance(18, 2) == 90.0
    assert GradeAggregator.recompute_attendance(2, 1) == 66.67
    assert GradeAggregator.recompute_attendance(0, 0) is None


@pytest.mark.parametrize("asistencias,faltas", [(-1, 2), (3, -2)])
def test_negative_attendance_is_rejected(asistencias, faltas):
    with pytest.raises(InvalidAttendance):
        GradeAggregator.recompute_attendance(asistencias, faltas)


def test_apply_attendance_keeps_unsent_counters():
    aggregator = GradeAggregator()
    enrollment = _enrollment(asistencias=10, faltas=0, retardos=1)
    aggregator.apply_attendance(enrollment, faltas=10)

    assert enrollment.asistencias == 10
    assert enrollment.retardos == 1
    assert enrollment.porcentaje_asistencia == 50.0

    with pytest.raises(InvalidAttendance):
        aggregator.apply_attendance(enrollment, retardos=-1)
