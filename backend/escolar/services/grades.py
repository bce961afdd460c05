from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence

from ..config import settings
from ..errors import InvalidAttendance, InvalidGrade
from ..models import Enrollment


PARTIAL_FIELDS = ("calificacion_parcial1", "calificacion_parcial2", "calificacion_parcial3")


class GradeAggregator:
    """Final grade, approval flag and attendance percentage of an enrollment."""

    def __init__(self, passing_grade: Optional[float] = None):
        self.passing_grade = settings.passing_grade if passing_grade is None else passing_grade

    @staticmethod
    def validate_grade(value: Optional[float], field: str = "calificacion") -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool):
            raise InvalidGrade(field, value)
        try:
            dec = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidGrade(field, value)
        if not dec.is_finite() or dec < 0 or dec > 100:
            raise InvalidGrade(field, value)
        if dec != dec.quantize(Decimal("0.01")):
            raise InvalidGrade(field, value)
        return float(dec)

    @staticmethod
    def recompute_final(partials: Iterable[Optional[float]]) -> Optional[float]:
        # Un parcial en 0 o vacío se considera no capturado
        recorded = [p for p in partials if p is not None and p > 0]
        if not recorded:
            return None
        return round(sum(recorded) / len(recorded), 2)

    def is_passing(self, grade: Optional[float]) -> bool:
        return grade is not None and grade >= self.passing_grade

    def apply_approval(self, enrollment: Enrollment, today: Optional[date] = None) -> None:
        if self.is_passing(enrollment.calificacion_final):
            enrollment.aprobado = True
            if enrollment.fecha_aprobacion is None:
                enrollment.fecha_aprobacion = today or date.today()
        else:
            enrollment.aprobado = False
            enrollment.fecha_aprobacion = None

    @staticmethod
    def recompute_attendance(asistencias: int, faltas: int) -> Optional[float]:
        GradeAggregator._validate_counter("asistencias", asistencias)
        GradeAggregator._validate_counter("faltas", faltas)
        total = asistencias + faltas
        if total == 0:
            return None
        return round(asistencias / total * 100, 2)

    @staticmethod
    def _validate_counter(field: str, value) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidAttendance(field, value)
        return value

    def apply_grades(
        self,
        enrollment: Enrollment,
        partials: Optional[Sequence[Optional[float]]] = None,
        final: Optional[float] = None,
        extra: Optional[float] = None,
    ) -> Enrollment:
        """Write grades onto ``enrollment``.

        ``partials`` replaces the three partial grades positionally (a shorter
        sequence leaves the remaining ones untouched). A manual ``final`` wins
        over the computed mean. The extra grade is stored as captured.
        """

        partials = list(partials or [])
        if len(partials) > len(PARTIAL_FIELDS):
            raise InvalidGrade("parciales", partials)
        validated = [self.validate_grade(v, PARTIAL_FIELDS[i]) for i, v in enumerate(partials)]
        manual_final = self.validate_grade(final, "calificacion_final")
        validated_extra = self.validate_grade(extra, "calificacion_extra")

        for field, value in zip(PARTIAL_FIELDS, validated):
            setattr(enrollment, field, value)
        if validated_extra is not None:
            enrollment.calificacion_extra = validated_extra

        if manual_final is not None:
            enrollment.calificacion_final = manual_final
        elif validated:
            enrollment.calificacion_final = self.recompute_final(
                getattr(enrollment, field) for field in PARTIAL_FIELDS
            )
        self.apply_approval(enrollment)
        return enrollment

    def apply_attendance(
        self,
        enrollment: Enrollment,
        asistencias: Optional[int] = None,
        faltas: Optional[int] = None,
        retardos: Optional[int] = None,
    ) -> Enrollment:
        asistencias = enrollment.asistencias if asistencias is None else asistencias
        faltas = enrollment.faltas if faltas is None else faltas
        retardos = enrollment.retardos if retardos is None else retardos
        self._validate_counter("retardos", retardos)
        porcentaje = self.recompute_attendance(asistencias, faltas)

        enrollment.asistencias = asistencias
        enrollment.faltas = faltas
        enrollment.retardos = retardos
        enrollment.porcentaje_asistencia = porcentaje
        return enrollment
