from __future__ import annotations

from typing import Dict, Optional

from sqlmodel import Session, select

from .db import engine
from .models import Group, GroupStatusEnum, Student, StudentStatusEnum, Teacher, User
from .security import check_password, hash_password


DEFAULT_ADMIN_EMAIL = "admin@escolar.dev"
DEFAULT_ADMIN_PASSWORD = "admin123"
DEFAULT_ADMIN_NAME = "Administrador Demo"

DEMO_PERIOD = "2025-2"


def ensure_default_admin(session: Optional[Session] = None, force_password_reset: bool = False) -> User:
    """Create a default admin user for local development if none exists."""
    owns_session = session is None
    session = session or Session(engine)
    try:
        existing = session.exec(select(User).where(User.email == DEFAULT_ADMIN_EMAIL)).first()
        if existing:
            updated = False
            if not force_password_reset and not check_password(DEFAULT_ADMIN_PASSWORD, existing.hashed_password):
                existing.hashed_password = hash_password(DEFAULT_ADMIN_PASSWORD)
                updated = True
            if existing.role != "admin":
                existing.role = "admin"
                updated = True
            if not existing.is_active:
                existing.is_active = True
                updated = True
            if updated:
                session.add(existing)
                session.commit()
                session.refresh(existing)
            return existing
        user = User(
            email=DEFAULT_ADMIN_EMAIL,
            full_name=DEFAULT_ADMIN_NAME,
            hashed_password=hash_password(DEFAULT_ADMIN_PASSWORD),
            role="admin",
            is_active=True,
            must_change_password=force_password_reset,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    finally:
        if owns_session:
            session.close()


def ensure_demo_data(session: Optional[Session] = None) -> Dict[str, int]:
    """Populate teachers, students and groups with deterministic demo data."""
    owns_session = session is None
    session = session or Session(engine)
    try:
        ensure_default_admin(session)
        teacher_map = _ensure_teachers(session)
        student_map = _ensure_students(session)
        group_map = _ensure_groups(session, teacher_map)
        return {
            "teachers": len(teacher_map),
            "students": len(student_map),
            "groups": len(group_map),
        }
    finally:
        if owns_session:
            session.close()


def _get_or_create_user(session: Session, *, email: str, full_name: str, role: str, password: str) -> User:
    user = session.exec(select(User).where(User.email == email)).first()
    if user:
        if user.full_name != full_name or user.role != role:
            user.full_name = full_name
            user.role = role
            session.add(user)
            session.commit()
        return user

    user = User(
        email=email,
        full_name=full_name,
        hashed_password=hash_password(password),
        role=role,
        is_active=True,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def _ensure_teachers(session: Session) -> Dict[str, Teacher]:
    data = [
        {"email": "docente.ingles@escolar.dev", "full_name": "Laura Jiménez", "departamento": "Idiomas"},
        {"email": "docente.sistemas@escolar.dev", "full_name": "Ricardo Paredes", "departamento": "Sistemas"},
    ]
    result: Dict[str, Teacher] = {}
    for item in data:
        user = _get_or_create_user(
            session, email=item["email"], full_name=item["full_name"], role="teacher", password="teacher123"
        )
        teacher = session.exec(select(Teacher).where(Teacher.user_id == user.id)).first()
        if not teacher:
            teacher = Teacher(user_id=user.id, nombre=item["full_name"], departamento=item["departamento"])
            session.add(teacher)
            session.commit()
            session.refresh(teacher)
        result[item["email"]] = teacher
    return result


def _ensure_students(session: Session) -> Dict[str, Student]:
    data = [
        {"email": "estudiante1@escolar.dev", "nombre": "Carlos", "apellido_paterno": "Méndez", "matricula": "2023-001", "carrera": "Ingeniería en Sistemas", "semestre": 5},
        {"email": "estudiante2@escolar.dev", "nombre": "María", "apellido_paterno": "González", "matricula": "2022-014", "carrera": "Administración", "semestre": 7},
        {"email": "estudiante3@escolar.dev", "nombre": "Lucía", "apellido_paterno": "Andrade", "matricula": "2024-018", "carrera": "Ingeniería en Sistemas", "semestre": 3},
        {"email": "estudiante4@escolar.dev", "nombre": "Jorge", "apellido_paterno": "Morales", "matricula": "2021-022", "carrera": "Administración", "semestre": 9, "estatus": StudentStatusEnum.egresado},
    ]
    result: Dict[str, Student] = {}
    for item in data:
        user = _get_or_create_user(
            session,
            email=item["email"],
            full_name=f"{item['nombre']} {item['apellido_paterno']}",
            role="student",
            password="student123",
        )
        student = session.exec(select(Student).where(Student.matricula == item["matricula"])).first()
        if not student:
            student = Student(
                user_id=user.id,
                matricula=item["matricula"],
                nombre=item["nombre"],
                apellido_paterno=item["apellido_paterno"],
                carrera=item["carrera"],
                semestre=item["semestre"],
                estatus=item.get("estatus", StudentStatusEnum.activo),
            )
            session.add(student)
            session.commit()
            session.refresh(student)
        result[item["matricula"]] = student
    return result


def _ensure_groups(session: Session, teacher_map: Dict[str, Teacher]) -> Dict[str, Group]:
    english_teacher = teacher_map["docente.ingles@escolar.dev"]
    systems_teacher = teacher_map["docente.sistemas@escolar.dev"]
    data = [
        {"nombre": "BD-501", "teacher": systems_teacher, "cupo_maximo": 30, "cupo_minimo": 10},
        {"nombre": "PROG-301", "teacher": systems_teacher, "cupo_maximo": 25, "cupo_minimo": 8},
        {"nombre": "EXAMEN-DIAG", "teacher": english_teacher, "cupo_maximo": 40, "cupo_minimo": 0},
    ]
    data.extend(
        {
            "nombre": f"ING-N{level}",
            "teacher": english_teacher,
            "cupo_maximo": 20,
            "cupo_minimo": 5,
            "nivel_ingles": level,
        }
        for level in range(1, 7)
    )
    result: Dict[str, Group] = {}
    for item in data:
        group = session.exec(
            select(Group).where(Group.nombre == item["nombre"], Group.periodo == DEMO_PERIOD)
        ).first()
        if not group:
            group = Group(
                nombre=item["nombre"],
                periodo=DEMO_PERIOD,
                teacher_id=item["teacher"].id,
                nivel_ingles=item.get("nivel_ingles"),
                cupo_maximo=item["cupo_maximo"],
                cupo_minimo=item["cupo_minimo"],
                estatus=GroupStatusEnum.abierto,
            )
            session.add(group)
            session.commit()
            session.refresh(group)
        result[item["nombre"]] = group
    return result
