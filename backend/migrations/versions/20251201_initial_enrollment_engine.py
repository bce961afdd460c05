"""initial schema for enrollments, english progression and payments

Revision ID: 20251201_initial_enrollment_engine
Revises:
Create Date: 2025-12-01 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20251201_initial_enrollment_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


student_status = sa.Enum("activo", "inactivo", "egresado", name="studentstatusenum")
group_status = sa.Enum("abierto", "en_curso", "cerrado", "cancelado", "finalizado", name="groupstatusenum")
enrollment_type = sa.Enum(
    "normal", "especial", "repeticion", "equivalencia", "curso_ingles", name="enrollmenttypeenum"
)
enrollment_status = sa.Enum(
    "inscrito", "en_curso", "baja", "aprobado", "reprobado", "cancelado", name="enrollmentstatusenum"
)
payment_status = sa.Enum("pendiente_pago", "pago_pendiente_aprobacion", "pago_aprobado", name="paymentstatusenum")
exam_type = sa.Enum("diagnostico", "admision", "certificacion", name="examtypeenum")
exam_status = sa.Enum("inscrito", "aprobado", "evaluado", "reprobado", "cancelado", name="examstatusenum")
exam_period_status = sa.Enum(
    "planeado", "abierto", "cerrado", "en_proceso", "finalizado", name="examperiodstatusenum"
)
level_source = sa.Enum("course", "diagnostic_skip", name="levelsourceenum")


def _payment_columns():
    return [
        sa.Column("requiere_pago", sa.Boolean(), nullable=False),
        sa.Column("monto_pago", sa.Float(), nullable=True),
        sa.Column("pago_aprobado", sa.Boolean(), nullable=True),
        sa.Column("estado_pago", payment_status, nullable=True),
        sa.Column("comprobante_pago", sa.String(), nullable=True),
        sa.Column("fecha_pago_aprobado", sa.DateTime(), nullable=True),
        sa.Column("motivo_rechazo", sa.String(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False),
        sa.Column("hashed_password", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("must_change_password", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_user_email", "user", ["email"], unique=True)
    op.create_index("ix_user_role", "user", ["role"])

    op.create_table(
        "student",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("matricula", sa.String(), nullable=False),
        sa.Column("nombre", sa.String(), nullable=False),
        sa.Column("apellido_paterno", sa.String(), nullable=True),
        sa.Column("apellido_materno", sa.String(), nullable=True),
        sa.Column("carrera", sa.String(), nullable=True),
        sa.Column("semestre", sa.Integer(), nullable=True),
        sa.Column("estatus", student_status, nullable=False),
        sa.Column("promedio_general", sa.Float(), nullable=True),
        sa.Column("nivel_ingles_actual", sa.Integer(), nullable=True),
        sa.Column("nivel_ingles_certificado", sa.Integer(), nullable=True),
        sa.Column("porcentaje_ingles", sa.Float(), nullable=True),
        sa.Column("promedio_ingles", sa.Float(), nullable=True),
        sa.Column("cumple_requisito_ingles", sa.Boolean(), nullable=False),
        sa.Column("fecha_examen_diagnostico", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_student_user_id", "student", ["user_id"])
    op.create_index("ix_student_matricula", "student", ["matricula"], unique=True)
    op.create_index("ix_student_estatus", "student", ["estatus"])

    op.create_table(
        "teacher",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("nombre", sa.String(), nullable=False),
        sa.Column("departamento", sa.String(), nullable=True),
    )
    op.create_index("ix_teacher_user_id", "teacher", ["user_id"])

    op.create_table(
        "grupo",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("nombre", sa.String(), nullable=False),
        sa.Column("periodo", sa.String(), nullable=True),
        sa.Column("teacher_id", sa.Integer(), sa.ForeignKey("teacher.id"), nullable=True),
        sa.Column("nivel_ingles", sa.Integer(), nullable=True),
        sa.Column("cupo_actual", sa.Integer(), nullable=False),
        sa.Column("cupo_maximo", sa.Integer(), nullable=False),
        sa.Column("cupo_minimo", sa.Integer(), nullable=False),
        sa.Column("estatus", group_status, nullable=False),
        sa.CheckConstraint("cupo_actual >= 0", name="ck_grupo_cupo_actual_no_negativo"),
        sa.CheckConstraint("cupo_actual <= cupo_maximo", name="ck_grupo_cupo_actual_maximo"),
        sa.CheckConstraint("cupo_minimo <= cupo_maximo", name="ck_grupo_cupo_minimo_maximo"),
    )
    op.create_index("ix_grupo_periodo", "grupo", ["periodo"])
    op.create_index("ix_grupo_teacher_id", "grupo", ["teacher_id"])
    op.create_index("ix_grupo_estatus", "grupo", ["estatus"])

    op.create_table(
        "enrollment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("codigo", sa.String(), nullable=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("student.id"), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("grupo.id"), nullable=False),
        sa.Column("tipo_inscripcion", enrollment_type, nullable=False),
        sa.Column("estatus", enrollment_status, nullable=False),
        sa.Column("fecha_inscripcion", sa.DateTime(), nullable=False),
        sa.Column("fecha_baja", sa.DateTime(), nullable=True),
        sa.Column("nivel_ingles", sa.Integer(), nullable=True),
        sa.Column("calificacion_parcial1", sa.Float(), nullable=True),
        sa.Column("calificacion_parcial2", sa.Float(), nullable=True),
        sa.Column("calificacion_parcial3", sa.Float(), nullable=True),
        sa.Column("calificacion_final", sa.Float(), nullable=True),
        sa.Column("calificacion_extra", sa.Float(), nullable=True),
        sa.Column("asistencias", sa.Integer(), nullable=False),
        sa.Column("faltas", sa.Integer(), nullable=False),
        sa.Column("retardos", sa.Integer(), nullable=False),
        sa.Column("porcentaje_asistencia", sa.Float(), nullable=True),
        sa.Column("aprobado", sa.Boolean(), nullable=False),
        sa.Column("fecha_aprobacion", sa.Date(), nullable=True),
        sa.Column("observaciones", sa.String(), nullable=True),
        *_payment_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_enrollment_codigo", "enrollment", ["codigo"])
    op.create_index("ix_enrollment_student_id", "enrollment", ["student_id"])
    op.create_index("ix_enrollment_group_id", "enrollment", ["group_id"])
    op.create_index("ix_enrollment_estatus", "enrollment", ["estatus"])
    op.create_index("ix_enrollment_estado_pago", "enrollment", ["estado_pago"])

    op.create_table(
        "examperiod",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("nombre", sa.String(), nullable=False),
        sa.Column("descripcion", sa.String(), nullable=True),
        sa.Column("fecha_inicio", sa.DateTime(), nullable=False),
        sa.Column("fecha_fin", sa.DateTime(), nullable=False),
        sa.Column("fecha_inscripcion_inicio", sa.DateTime(), nullable=False),
        sa.Column("fecha_inscripcion_fin", sa.DateTime(), nullable=False),
        sa.Column("cupo_maximo", sa.Integer(), nullable=False),
        sa.Column("cupo_actual", sa.Integer(), nullable=False),
        sa.Column("estatus", exam_period_status, nullable=False),
        sa.Column("requiere_pago", sa.Boolean(), nullable=False),
        sa.Column("monto_pago", sa.Float(), nullable=True),
        sa.Column("observaciones", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("cupo_actual >= 0", name="ck_examperiod_cupo_actual_no_negativo"),
        sa.CheckConstraint("cupo_actual <= cupo_maximo", name="ck_examperiod_cupo_actual_maximo"),
    )
    op.create_index("ix_examperiod_nombre", "examperiod", ["nombre"])
    op.create_index("ix_examperiod_estatus", "examperiod", ["estatus"])

    op.create_table(
        "diagnosticexam",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("codigo", sa.String(), nullable=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("student.id"), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("grupo.id"), nullable=True),
        sa.Column("period_id", sa.Integer(), sa.ForeignKey("examperiod.id"), nullable=True),
        sa.Column("exam_type", exam_type, nullable=False),
        sa.Column("estatus", exam_status, nullable=False),
        sa.Column("fecha_inscripcion", sa.DateTime(), nullable=False),
        sa.Column("resultado", sa.Float(), nullable=True),
        sa.Column("nivel_ingles", sa.Integer(), nullable=True),
        sa.Column("fecha_resultado", sa.DateTime(), nullable=True),
        sa.Column("observaciones", sa.String(), nullable=True),
        *_payment_columns(),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_diagnosticexam_codigo", "diagnosticexam", ["codigo"])
    op.create_index("ix_diagnosticexam_student_id", "diagnosticexam", ["student_id"])
    op.create_index("ix_diagnosticexam_group_id", "diagnosticexam", ["group_id"])
    op.create_index("ix_diagnosticexam_period_id", "diagnosticexam", ["period_id"])
    op.create_index("ix_diagnosticexam_exam_type", "diagnosticexam", ["exam_type"])
    op.create_index("ix_diagnosticexam_estatus", "diagnosticexam", ["estatus"])
    op.create_index("ix_diagnosticexam_estado_pago", "diagnosticexam", ["estado_pago"])

    op.create_table(
        "englishlevelrecord",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("student.id"), nullable=False),
        sa.Column("nivel", sa.Integer(), nullable=False),
        sa.Column("calificacion", sa.Float(), nullable=False),
        sa.Column("source", level_source, nullable=False),
        sa.Column("enrollment_id", sa.Integer(), sa.ForeignKey("enrollment.id"), nullable=True),
        sa.Column("exam_id", sa.Integer(), sa.ForeignKey("diagnosticexam.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("student_id", "nivel", name="uq_english_level_student_nivel"),
    )
    op.create_index("ix_englishlevelrecord_student_id", "englishlevelrecord", ["student_id"])

    op.create_table(
        "activityhistory",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("enrollment_id", sa.Integer(), sa.ForeignKey("enrollment.id"), nullable=True),
        sa.Column("exam_id", sa.Integer(), sa.ForeignKey("diagnosticexam.id"), nullable=True),
        sa.Column("accion", sa.String(), nullable=False),
        sa.Column("campo", sa.String(), nullable=True),
        sa.Column("valor_anterior", sa.String(), nullable=True),
        sa.Column("valor_nuevo", sa.String(), nullable=True),
        sa.Column("descripcion", sa.String(), nullable=True),
        sa.Column("realizado_por", sa.Integer(), sa.ForeignKey("user.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_activityhistory_enrollment_id", "activityhistory", ["enrollment_id"])
    op.create_index("ix_activityhistory_exam_id", "activityhistory", ["exam_id"])
    op.create_index("ix_activityhistory_accion", "activityhistory", ["accion"])


def downgrade() -> None:
    op.drop_table("activityhistory")
    op.drop_table("englishlevelrecord")
    op.drop_table("diagnosticexam")
    op.drop_table("examperiod")
    op.drop_table("enrollment")
    op.drop_table("grupo")
    op.drop_table("teacher")
    op.drop_table("student")
    op.drop_table("user")

    bind = op.get_bind()
    for enum in (
        level_source,
        exam_period_status,
        exam_status,
        exam_type,
        payment_status,
        enrollment_status,
        enrollment_type,
        group_status,
        student_status,
    ):
        enum.drop(bind, checkfirst=True)
