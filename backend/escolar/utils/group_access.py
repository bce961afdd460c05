from fastapi import HTTPException, status
from sqlmodel import select

from ..errors import EntityNotFound
from ..models import Enrollment, Group, Student, Teacher


def require_teacher(session, user) -> Teacher:
    teacher = session.exec(select(Teacher).where(Teacher.user_id == user.id)).first()
    if not teacher:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Se requiere un perfil docente asignado.")
    return teacher


def require_student(session, user) -> Student:
    student = session.exec(select(Student).where(Student.user_id == user.id)).first()
    if not student:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Se requiere un perfil de estudiante asignado.")
    return student


def ensure_group_access(session, user, group_id: int) -> Group:
    """Admins see every group; teachers only the groups they teach."""
    group = session.get(Group, group_id)
    if not group:
        raise EntityNotFound("Grupo", group_id)
    if user.role == "admin":
        return group
    if user.role == "teacher":
        teacher = require_teacher(session, user)
        if group.teacher_id != teacher.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No estás asignado a este grupo")
        return group
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Rol sin permisos para acceder al grupo")


def ensure_enrollment_access(session, user, enrollment_id: int, write: bool = False) -> Enrollment:
    enrollment = session.get(Enrollment, enrollment_id)
    if not enrollment:
        raise EntityNotFound("Inscripción", enrollment_id)

    if user.role == "admin":
        return enrollment

    if user.role == "teacher":
        ensure_group_access(session, user, enrollment.group_id)
        return enrollment

    if user.role == "student" and not write:
        student = require_student(session, user)
        if enrollment.student_id != student.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="La inscripción pertenece a otro estudiante")
        return enrollment

    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permisos insuficientes")


def ensure_student_self(session, user, student_id: int) -> None:
    """Students may only act on their own record; admins on any."""
    if user.role == "admin":
        return
    if user.role == "student":
        student = require_student(session, user)
        if student.id == student_id:
            return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Solo puedes realizar esta acción sobre tu propio registro")
