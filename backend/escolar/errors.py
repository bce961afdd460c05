"""Domain errors raised by the enrollment and progression services.

Every rejection carries a stable ``kind`` (the violated rule), a ``category``
(the family of the rule) and a Spanish, user-facing message. The HTTP layer
renders them as-is, so a caller always learns which rule stopped the
operation instead of a generic failure.

Hierarchy:
- ValidationError: malformed or out-of-range input
- StateError: operation not allowed in the current lifecycle state
- CapacityError: seat accounting rejections (groups and exam periods)
- EligibilityError: the student may not take the requested action
- PaymentError: payment gating rejections
- EntityNotFound: referenced entity does not exist
"""

from typing import Any, Dict


class EngineError(Exception):
    """Base class for every business-rule rejection."""

    category = "EngineError"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "category": self.category,
            "detail": self.message,
            "context": self.context,
        }


class EntityNotFound(EngineError):
    category = "NotFoundError"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} no encontrado", entity=entity, id=entity_id)


# Validación


class ValidationError(EngineError):
    category = "ValidationError"
    status_code = 422


class InvalidGrade(ValidationError):
    def __init__(self, field: str, value: Any):
        super().__init__(
            f"{field} debe estar entre 0 y 100 con máximo 2 decimales",
            field=field,
            value=value,
        )


class InvalidAttendance(ValidationError):
    def __init__(self, field: str, value: Any):
        super().__init__(f"{field} debe ser un entero mayor o igual a 0", field=field, value=value)


class InvalidLevel(ValidationError):
    def __init__(self, value: Any, minimum: int = 1, maximum: int = 6):
        super().__init__(
            f"El nivel de inglés debe estar entre {minimum} y {maximum}",
            value=value,
            minimum=minimum,
            maximum=maximum,
        )


class MissingLevelGrade(ValidationError):
    def __init__(self, level: int):
        self.level = level
        super().__init__(
            f"Falta la calificación del nivel {level} para acreditarlo por examen de diagnóstico",
            level=level,
        )


class MissingPlacementLevel(ValidationError):
    def __init__(self, resultado: float):
        super().__init__(
            "Con un resultado menor a 70 se debe indicar el nivel de inglés asignado (1-6)",
            resultado=resultado,
        )


class GroupLevelMismatch(ValidationError):
    def __init__(self, group_id: int, group_level: int, requested_level: int):
        super().__init__(
            f"El grupo corresponde al nivel {group_level}, no al nivel {requested_level}",
            group_id=group_id,
            group_level=group_level,
            requested_level=requested_level,
        )


class NotEnglishCourse(ValidationError):
    def __init__(self, enrollment_id: int):
        super().__init__(
            "Esta inscripción no es un curso de inglés",
            enrollment_id=enrollment_id,
        )


class InvalidPeriodDates(ValidationError):
    def __init__(self, message: str, **fechas: Any):
        super().__init__(message, **fechas)


# Estado


class StateError(EngineError):
    category = "StateError"
    status_code = 409


class InvalidTransition(StateError):
    def __init__(self, current: str, target: str):
        super().__init__(
            f"Transición inválida: no se puede cambiar de {current} a {target}",
            current=current,
            target=target,
        )


class ImmutableState(StateError):
    def __init__(self, status: str, fields: list[str]):
        super().__init__(
            f"Solo se pueden editar observaciones cuando el estatus es {status}",
            status=status,
            fields=sorted(fields),
        )


class GroupChangeNotAllowed(StateError):
    def __init__(self, status: str):
        super().__init__(
            "Solo se puede cambiar de grupo si el estatus es INSCRITO o EN_CURSO",
            status=status,
        )


class PaymentPending(StateError):
    def __init__(self, item: str, item_id: Any, estado_pago: Any):
        super().__init__(
            "La operación requiere que el pago esté aprobado",
            item=item,
            id=item_id,
            estado_pago=estado_pago,
        )


class StatusGradeMismatch(StateError):
    def __init__(self, target: str, calificacion_final: float, passing_grade: float):
        super().__init__(
            f"La calificación final ({calificacion_final:g}) no corresponde al estatus {target} "
            f"(aprobatoria ≥ {passing_grade:g})",
            target=target,
            calificacion_final=calificacion_final,
            passing_grade=passing_grade,
        )


# Cupo


class CapacityError(EngineError):
    category = "CapacityError"
    status_code = 409


class GroupFull(CapacityError):
    def __init__(self, group_id: int, cupo_maximo: int):
        super().__init__(
            "Grupo lleno. No hay cupos disponibles",
            group_id=group_id,
            cupo_maximo=cupo_maximo,
        )


class GroupUnavailable(CapacityError):
    def __init__(self, group_id: int, status: str):
        super().__init__(
            f"No se puede inscribir en un grupo con estatus {status}",
            group_id=group_id,
            status=status,
        )


class ExamPeriodFull(CapacityError):
    def __init__(self, period_id: int, cupo_maximo: int):
        super().__init__(
            "El período de exámenes está lleno",
            period_id=period_id,
            cupo_maximo=cupo_maximo,
        )


class ExamPeriodClosed(CapacityError):
    def __init__(self, period_id: int, status: str, reason: str = "El período de exámenes no está abierto para inscripciones"):
        super().__init__(reason, period_id=period_id, status=status)


# Elegibilidad


class EligibilityError(EngineError):
    category = "EligibilityError"
    status_code = 409


class StudentNotEligible(EligibilityError):
    status_code = 403

    def __init__(self, student_id: int, status: str):
        super().__init__(
            f"No se puede inscribir un estudiante con estatus {status}",
            student_id=student_id,
            status=status,
        )


class DuplicateEnrollment(EligibilityError):
    def __init__(self, student_id: int, group_id: int):
        super().__init__(
            "El estudiante ya está inscrito en este grupo",
            student_id=student_id,
            group_id=group_id,
        )


class RequirementAlreadySatisfied(EligibilityError):
    def __init__(self, student_id: int):
        super().__init__(
            "El estudiante ya cumple el requisito de inglés (niveles 1-6 con promedio aprobatorio)",
            student_id=student_id,
        )


class ExamAlreadyRequested(EligibilityError):
    def __init__(self, student_id: int, exam_id: int, status: str):
        super().__init__(
            "Ya existe un examen de diagnóstico activo. No puedes inscribirte nuevamente",
            student_id=student_id,
            exam_id=exam_id,
            status=status,
        )


class LevelAlreadyCompleted(EligibilityError):
    def __init__(self, student_id: int, level: int):
        super().__init__(
            f"Ya has completado el nivel {level} de inglés",
            student_id=student_id,
            level=level,
        )


class DiagnosticRequired(EligibilityError):
    def __init__(self, student_id: int):
        super().__init__(
            "Debes presentar el examen de diagnóstico antes de inscribirte a un curso de inglés",
            student_id=student_id,
        )


class CourseAlreadyRequested(EligibilityError):
    def __init__(self, student_id: int, level: int, enrollment_id: int):
        super().__init__(
            f"Ya tienes una solicitud activa para el nivel {level} de inglés",
            student_id=student_id,
            level=level,
            enrollment_id=enrollment_id,
        )


class LevelBelowPlacement(EligibilityError):
    def __init__(self, student_id: int, level: int, placement: int):
        super().__init__(
            f"No puedes inscribirte a un nivel inferior ({level}) a tu nivel actual ({placement})",
            student_id=student_id,
            level=level,
            placement=placement,
        )


# Pagos


class PaymentError(EngineError):
    category = "PaymentError"
    status_code = 422


class InvalidAmount(PaymentError):
    def __init__(self, monto_pago: Any):
        super().__init__("El monto del pago debe ser mayor a 0", monto_pago=monto_pago)


class MissingReason(PaymentError):
    def __init__(self):
        super().__init__("El motivo del rechazo es obligatorio")


class PaymentNotRequired(PaymentError):
    status_code = 409

    def __init__(self, item: str, item_id: Any):
        super().__init__("Este registro no requiere pago", item=item, id=item_id)


class PaymentNotPending(PaymentError):
    status_code = 409

    def __init__(self, item: str, item_id: Any, estado_pago: Any):
        super().__init__(
            "Este registro no está pendiente de pago",
            item=item,
            id=item_id,
            estado_pago=estado_pago,
        )
