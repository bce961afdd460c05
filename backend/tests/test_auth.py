from fastapi.testclient import TestClient
from sqlmodel import Session, select

import escolar.db as db
from escolar.models import User
from escolar.security import hash_password
from escolar.seed import DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD, ensure_default_admin


def _token(client: TestClient, email: str, password: str):
    return client.post(
        "/auth/token",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_signup_and_login_flow(client: TestClient):
    email = "user1@test.com"
    r = client.post("/auth/signup", json={
        "email": email,
        "full_name": "User One",
        "password": "pass1234",
        "role": "student"
    })
    assert r.status_code == 200
    assert r.json()["access_token"]
    assert r.json()["role"] == "student"
    assert r.json()["must_change_password"] is False

    r2 = _token(client, email, "pass1234")
    assert r2.status_code == 200
    token = r2.json()["access_token"]

    me = client.get("/auth/me", headers=_bearer(token))
    assert me.status_code == 200
    assert me.json()["email"] == email
    assert me.json()["full_name"] == "User One"


def test_signup_defaults_to_student(client: TestClient):
    r = client.post("/auth/signup", json={"email": "default@test.com", "full_name": "Default", "password": "pass1234"})
    assert r.status_code == 200
    assert r.json()["role"] == "student"


def test_privileged_roles_need_an_admin_session(client: TestClient, admin_token):
    for role in ("admin", "teacher"):
        payload = {"email": f"anon-{role}@test.com", "full_name": "Anon", "password": "pass1234", "role": role}
        r = client.post("/auth/signup", json=payload)
        assert r.status_code == 403
        with Session(db.engine) as session:
            assert session.exec(select(User).where(User.email == payload["email"])).first() is None

    student_token = client.post(
        "/auth/signup",
        json={"email": "escalate@test.com", "full_name": "Escalate", "password": "pass1234", "role": "student"},
    ).json()["access_token"]
    r = client.post(
        "/auth/signup",
        json={"email": "escalated@test.com", "full_name": "Escalated", "password": "pass1234", "role": "admin"},
        headers=_bearer(student_token),
    )
    assert r.status_code == 403

    r = client.post(
        "/auth/signup",
        json={"email": "new-admin@test.com", "full_name": "New Admin", "password": "pass1234", "role": "admin"},
        headers=_bearer(admin_token),
    )
    assert r.status_code == 200
    assert r.json()["role"] == "admin"


def test_signup_rejects_unknown_role_and_duplicates(client: TestClient, admin_token):
    payload = {"email": "coord@test.com", "full_name": "Coord", "password": "pass1234", "role": "coordinator"}
    r = client.post("/auth/signup", json=payload, headers=_bearer(admin_token))
    assert r.status_code == 400
    assert r.json()["detail"] == "Rol inválido"

    payload["role"] = "teacher"
    assert client.post("/auth/signup", json=payload, headers=_bearer(admin_token)).status_code == 200
    r = client.post("/auth/signup", json=payload, headers=_bearer(admin_token))
    assert r.status_code == 400
    assert r.json()["detail"] == "Usuario ya existe"


def test_login_rejects_bad_password_and_bad_token(client: TestClient):
    client.post("/auth/signup", json={
        "email": "wrong@test.com",
        "full_name": "Wrong",
        "password": "right123",
        "role": "student",
    })
    assert _token(client, "wrong@test.com", "nope1234").status_code == 400
    assert client.get("/auth/me", headers=_bearer("no-es-un-token")).status_code == 401
    # Un token inválido no se trata como registro anónimo
    r = client.post(
        "/auth/signup",
        json={"email": "ghost@test.com", "full_name": "Ghost", "password": "pass1234"},
        headers=_bearer("no-es-un-token"),
    )
    assert r.status_code == 401


def test_default_admin_can_log_in(client: TestClient):
    admin = ensure_default_admin()
    assert admin.role == "admin"

    with Session(db.engine) as session:
        stored = session.exec(select(User).where(User.email == DEFAULT_ADMIN_EMAIL)).one()
        assert stored.is_active is True

    r = _token(client, DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD)
    assert r.status_code == 200
    assert r.json()["role"] == "admin"


def test_inactive_user_cannot_log_in(client: TestClient, admin_token):
    client.post("/auth/signup", json={
        "email": "inactive@test.com",
        "full_name": "Inactive",
        "password": "pass1234",
        "role": "teacher",
    }, headers=_bearer(admin_token))
    with Session(db.engine) as session:
        user = session.exec(select(User).where(User.email == "inactive@test.com")).one()
        user.is_active = False
        session.add(user)
        session.commit()

    r = _token(client, "inactive@test.com", "pass1234")
    assert r.status_code == 400
    assert r.json()["detail"] == "Usuario inactivo"


def test_forced_password_change_gates_role_endpoints(client: TestClient):
    with Session(db.engine) as session:
        session.add(User(
            email="reset@test.com",
            full_name="Reset Admin",
            hashed_password=hash_password("temporal1"),
            role="admin",
            must_change_password=True,
        ))
        session.commit()

    r = _token(client, "reset@test.com", "temporal1")
    assert r.status_code == 200
    assert r.json()["must_change_password"] is True
    token = r.json()["access_token"]

    r = client.get("/payments/pending", headers=_bearer(token))
    assert r.status_code == 403
    assert r.json()["detail"] == "Debe cambiar su contraseña"
    assert client.get("/auth/me", headers=_bearer(token)).json()["must_change_password"] is True

    r = client.post(
        "/auth/change-password",
        json={"current_password": "equivocada", "new_password": "definitiva1"},
        headers=_bearer(token),
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Contraseña actual incorrecta"

    r = client.post(
        "/auth/change-password",
        json={"current_password": "temporal1", "new_password": "temporal1"},
        headers=_bearer(token),
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "La nueva contraseña debe ser diferente"

    r = client.post(
        "/auth/change-password",
        json={"current_password": "temporal1", "new_password": "definitiva1"},
        headers=_bearer(token),
    )
    assert r.status_code == 200
    assert r.json()["must_change_password"] is False
    new_token = r.json()["access_token"]

    assert client.get("/payments/pending", headers=_bearer(new_token)).status_code == 200
    assert _token(client, "reset@test.com", "temporal1").status_code == 400
    assert _token(client, "reset@test.com", "definitiva1").status_code == 200
