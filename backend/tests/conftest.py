import itertools
import os
import uuid

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

# Configurar SQLite de pruebas antes de importar la app
TEST_DB_PATH = os.path.abspath("test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["APP_ENV"] = "test"
os.environ.setdefault("TX_RETRY_BACKOFF_SECONDS", "0.01")
try:
    os.remove(TEST_DB_PATH)
except FileNotFoundError:
    pass

from escolar.models import Group, Student, Teacher, User  # noqa: E402


@pytest.fixture(scope="session")
def client():
    import escolar.db as db
    import escolar.main as main

    assert TEST_DB_PATH in str(db.engine.url), f"Engine apunta a {db.engine.url}"
    db.init_db()

    def override_get_session():
        session = Session(db.engine)
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[db.get_session] = override_get_session

    client = TestClient(main.app)

    # Forzar timeout por petición (httpx permite timeout por llamada)
    import httpx

    original_request = client.request

    def _request_with_timeout(*args, **kwargs):
        kwargs.setdefault("timeout", httpx.Timeout(20.0))
        return original_request(*args, **kwargs)

    client.request = _request_with_timeout  # type: ignore[assignment]
    yield client
    client.close()
    main.app.dependency_overrides.clear()


def _login(client: TestClient, email: str, password: str) -> str:
    res = client.post(
        "/auth/token",
        data={"username": email, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert res.status_code == 200, res.text
    return res.json()["access_token"]


def _admin_login(client: TestClient) -> str:
    from escolar.seed import DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD, ensure_default_admin

    ensure_default_admin()
    return _login(client, DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD)


def _signup(client: TestClient, role: str, password: str = "secret123") -> tuple:
    """Register a user; roles other than student are created by the default admin."""
    email = f"{role}-{uuid.uuid4().hex[:8]}@test.com"
    headers = {} if role == "student" else {"Authorization": f"Bearer {_admin_login(client)}"}
    res = client.post("/auth/signup", json={
        "email": email,
        "full_name": f"{role.title()} Test",
        "password": password,
        "role": role,
    }, headers=headers)
    assert res.status_code == 200, res.text
    return email, _login(client, email, password)


def _user_id(email: str) -> int:
    import escolar.db as db
    from sqlmodel import select

    with Session(db.engine) as session:
        return session.exec(select(User).where(User.email == email)).one().id


@pytest.fixture()
def admin_token(client: TestClient):
    return _admin_login(client)


@pytest.fixture()
def auth_header():
    def _header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return _header


@pytest.fixture()
def api_data(client: TestClient):
    """Create rows straight in the API database and log in linked users."""
    import escolar.db as db

    class _ApiData:
        def student(self, with_login: bool = False, **overrides):
            token = None
            if with_login:
                email, token = _signup(client, "student")
                overrides.setdefault("user_id", _user_id(email))
            data = {"matricula": f"API-{uuid.uuid4().hex[:10]}", "nombre": "Estudiante API"}
            data.update(overrides)
            with Session(db.engine) as session:
                student = Student(**data)
                session.add(student)
                session.commit()
                session.refresh(student)
            return (student, token) if with_login else student

        def teacher(self):
            email, token = _signup(client, "teacher")
            with Session(db.engine) as session:
                teacher = Teacher(user_id=_user_id(email), nombre="Docente API")
                session.add(teacher)
                session.commit()
                session.refresh(teacher)
            return teacher, token

        def group(self, **overrides):
            data = {"nombre": f"G-{uuid.uuid4().hex[:6]}", "periodo": "2025-2", "cupo_maximo": 10}
            data.update(overrides)
            with Session(db.engine) as session:
                group = Group(**data)
                session.add(group)
                session.commit()
                session.refresh(group)
            return group

        def get(self, model, obj_id):
            with Session(db.engine) as session:
                return session.get(model, obj_id)

    return _ApiData()


@pytest.fixture()
def engine(tmp_path):
    from escolar.db import build_engine, init_db

    test_engine = build_engine(f"sqlite:///{tmp_path / 'engine.db'}")
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def make_student(session):
    counter = itertools.count(1)

    def _make(**overrides) -> Student:
        n = next(counter)
        data = {"matricula": f"T-{n:04d}", "nombre": f"Estudiante {n}"}
        data.update(overrides)
        student = Student(**data)
        session.add(student)
        session.commit()
        session.refresh(student)
        return student

    return _make


@pytest.fixture()
def make_group(session):
    counter = itertools.count(1)

    def _make(**overrides) -> Group:
        n = next(counter)
        data = {"nombre": f"GRUPO-{n}", "periodo": "2025-2", "cupo_maximo": 30}
        data.update(overrides)
        group = Group(**data)
        session.add(group)
        session.commit()
        session.refresh(group)
        return group

    return _make
