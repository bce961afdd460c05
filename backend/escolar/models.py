from datetime import datetime, date, UTC
from typing import Optional
from enum import Enum
from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class Timestamped(SQLModel):
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


# Enums del dominio escolar
class StudentStatusEnum(str, Enum):
    activo = "ACTIVO"
    inactivo = "INACTIVO"
    egresado = "EGRESADO"


class GroupStatusEnum(str, Enum):
    abierto = "ABIERTO"
    en_curso = "EN_CURSO"
    cerrado = "CERRADO"
    cancelado = "CANCELADO"
    finalizado = "FINALIZADO"


class EnrollmentTypeEnum(str, Enum):
    normal = "NORMAL"
    especial = "ESPECIAL"
    repeticion = "REPETICION"
    equivalencia = "EQUIVALENCIA"
    curso_ingles = "CURSO_INGLES"


class EnrollmentStatusEnum(str, Enum):
    inscrito = "INSCRITO"
    en_curso = "EN_CURSO"
    baja = "BAJA"
    aprobado = "APROBADO"
    reprobado = "REPROBADO"
    cancelado = "CANCELADO"


class PaymentStatusEnum(str, Enum):
    pendiente_pago = "PENDIENTE_PAGO"
    pago_pendiente_aprobacion = "PAGO_PENDIENTE_APROBACION"
    pago_aprobado = "PAGO_APROBADO"


class ExamTypeEnum(str, Enum):
    diagnostico = "DIAGNOSTICO"
    admision = "ADMISION"
    certificacion = "CERTIFICACION"


class ExamStatusEnum(str, Enum):
    inscrito = "INSCRITO"
    aprobado = "APROBADO"
    evaluado = "EVALUADO"  # diagnóstico con resultado < 70
    reprobado = "REPROBADO"
    cancelado = "CANCELADO"


class ExamPeriodStatusEnum(str, Enum):
    planeado = "PLANEADO"
    abierto = "ABIERTO"
    cerrado = "CERRADO"
    en_proceso = "EN_PROCESO"
    finalizado = "FINALIZADO"


class LevelSourceEnum(str, Enum):
    course = "COURSE"
    diagnostic_skip = "DIAGNOSTIC_SKIP"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    full_name: str
    hashed_password: str
    role: str = Field(index=True)  # valores permitidos: admin, teacher, student
    is_active: bool = Field(default=True)
    must_change_password: bool = Field(default=False, nullable=False)


class Student(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    matricula: str = Field(index=True, unique=True)
    nombre: str
    apellido_paterno: Optional[str] = None
    apellido_materno: Optional[str] = None
    carrera: Optional[str] = None
    semestre: Optional[int] = None
    estatus: StudentStatusEnum = Field(default=StudentStatusEnum.activo, index=True)
    promedio_general: Optional[float] = None
    # Progreso de inglés (derivado de EnglishLevelRecord)
    nivel_ingles_actual: Optional[int] = Field(default=None, description="Nivel asignado tras el diagnóstico")
    nivel_ingles_certificado: Optional[int] = Field(default=None, description="Nivel más alto acreditado")
    porcentaje_ingles: Optional[float] = Field(default=None, description="Resultado del último diagnóstico")
    promedio_ingles: Optional[float] = None
    cumple_requisito_ingles: bool = Field(default=False)
    fecha_examen_diagnostico: Optional[datetime] = None


class Teacher(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    nombre: str
    departamento: Optional[str] = None


class Group(SQLModel, table=True):
    __tablename__ = "grupo"
    __table_args__ = (
        CheckConstraint("cupo_actual >= 0", name="ck_grupo_cupo_actual_no_negativo"),
        CheckConstraint("cupo_actual <= cupo_maximo", name="ck_grupo_cupo_actual_maximo"),
        CheckConstraint("cupo_minimo <= cupo_maximo", name="ck_grupo_cupo_minimo_maximo"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    nombre: str
    periodo: Optional[str] = Field(default=None, index=True)  # por ejemplo 2025-2
    teacher_id: Optional[int] = Field(default=None, foreign_key="teacher.id", index=True)
    nivel_ingles: Optional[int] = Field(default=None, description="Nivel de inglés que imparte el grupo (1-6)")
    cupo_actual: int = Field(default=0)
    cupo_maximo: int
    cupo_minimo: int = Field(default=0)
    estatus: GroupStatusEnum = Field(default=GroupStatusEnum.abierto, index=True)


class PaymentFields(SQLModel):
    requiere_pago: bool = Field(default=False)
    monto_pago: Optional[float] = Field(default=None, sa_column_kwargs={"nullable": True})
    pago_aprobado: Optional[bool] = Field(default=None, sa_column_kwargs={"nullable": True})
    estado_pago: Optional[PaymentStatusEnum] = Field(default=None, index=True, sa_column_kwargs={"nullable": True})
    comprobante_pago: Optional[str] = Field(default=None, sa_column_kwargs={"nullable": True})
    fecha_pago_aprobado: Optional[datetime] = Field(default=None, sa_column_kwargs={"nullable": True})
    motivo_rechazo: Optional[str] = Field(default=None, sa_column_kwargs={"nullable": True})


class Enrollment(PaymentFields, Timestamped, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    codigo: Optional[str] = Field(default=None, index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    group_id: int = Field(foreign_key="grupo.id", index=True)
    tipo_inscripcion: EnrollmentTypeEnum = Field(default=EnrollmentTypeEnum.normal)
    estatus: EnrollmentStatusEnum = Field(default=EnrollmentStatusEnum.inscrito, index=True)
    fecha_inscripcion: datetime = Field(default_factory=utcnow)
    fecha_baja: Optional[datetime] = None
    nivel_ingles: Optional[int] = None
    calificacion_parcial1: Optional[float] = None
    calificacion_parcial2: Optional[float] = None
    calificacion_parcial3: Optional[float] = None
    calificacion_final: Optional[float] = None
    calificacion_extra: Optional[float] = None
    asistencias: int = Field(default=0)
    faltas: int = Field(default=0)
    retardos: int = Field(default=0)
    porcentaje_asistencia: Optional[float] = None
    aprobado: bool = Field(default=False)
    fecha_aprobacion: Optional[date] = None
    observaciones: Optional[str] = None


class ExamPeriod(Timestamped, table=True):
    """Ventana de aplicación de exámenes con su propio cupo."""

    __table_args__ = (
        CheckConstraint("cupo_actual >= 0", name="ck_examperiod_cupo_actual_no_negativo"),
        CheckConstraint("cupo_actual <= cupo_maximo", name="ck_examperiod_cupo_actual_maximo"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    nombre: str = Field(index=True)
    descripcion: Optional[str] = None
    fecha_inicio: datetime
    fecha_fin: datetime
    fecha_inscripcion_inicio: datetime
    fecha_inscripcion_fin: datetime
    cupo_maximo: int = Field(default=100)
    cupo_actual: int = Field(default=0)
    estatus: ExamPeriodStatusEnum = Field(default=ExamPeriodStatusEnum.planeado, index=True)
    requiere_pago: bool = Field(default=False)
    monto_pago: Optional[float] = Field(default=None, sa_column_kwargs={"nullable": True})
    observaciones: Optional[str] = None


class DiagnosticExam(PaymentFields, Timestamped, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    codigo: Optional[str] = Field(default=None, index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    group_id: Optional[int] = Field(default=None, foreign_key="grupo.id", index=True)
    period_id: Optional[int] = Field(default=None, foreign_key="examperiod.id", index=True, sa_column_kwargs={"nullable": True})
    exam_type: ExamTypeEnum = Field(default=ExamTypeEnum.diagnostico, index=True)
    estatus: ExamStatusEnum = Field(default=ExamStatusEnum.inscrito, index=True)
    fecha_inscripcion: datetime = Field(default_factory=utcnow)
    resultado: Optional[float] = None
    nivel_ingles: Optional[int] = Field(default=None, description="0 = sin nivel asignado, puede cursar nivel 6")
    fecha_resultado: Optional[datetime] = None
    observaciones: Optional[str] = None


class EnglishLevelRecord(Timestamped, table=True):
    __table_args__ = (
        UniqueConstraint("student_id", "nivel", name="uq_english_level_student_nivel"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    nivel: int
    calificacion: float
    source: LevelSourceEnum
    enrollment_id: Optional[int] = Field(default=None, foreign_key="enrollment.id", sa_column_kwargs={"nullable": True})
    exam_id: Optional[int] = Field(default=None, foreign_key="diagnosticexam.id", sa_column_kwargs={"nullable": True})


class ActivityHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    enrollment_id: Optional[int] = Field(default=None, foreign_key="enrollment.id", index=True, sa_column_kwargs={"nullable": True})
    exam_id: Optional[int] = Field(default=None, foreign_key="diagnosticexam.id", index=True, sa_column_kwargs={"nullable": True})
    accion: str = Field(index=True)  # CREATED, STATUS_CHANGED, GROUP_CHANGED, PAYMENT_APPROVED, ...
    campo: Optional[str] = None
    valor_anterior: Optional[str] = None
    valor_nuevo: Optional[str] = None
    descripcion: Optional[str] = None
    realizado_por: Optional[int] = Field(default=None, foreign_key="user.id", sa_column_kwargs={"nullable": True})
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
