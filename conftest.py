"""
Shared fixtures: SQLite database, in-memory Redis and an API client that keeps CSRF tokens current
"""
import asyncio
import itertools
import os
import tempfile

_tmp_dir = tempfile.mkdtemp(prefix="lessonpulse-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmp_dir, 'test.db')}"
os.environ["LOG_DIR"] = os.path.join(_tmp_dir, "logs")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ALLOWED_HOSTS"] = "testserver,localhost"
os.environ["ENVIRONMENT"] = "test"
os.environ["PLATFORM_ADMIN_EMAIL"] = "ops@lessonpulse.test"
os.environ["PLATFORM_ADMIN_PASSWORD"] = "Platform2024"

import fakeredis
import pytest
from fastapi.testclient import TestClient

from lessonpulse.cache import set_cache
from lessonpulse.database import reset_schema

SCHOOL = "Vilnius Gymnasium"
PASSWORD = "Kaunas2024"
PLATFORM_ADMIN = ("ops@lessonpulse.test", "Platform2024")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def cache(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    set_cache(client)
    yield client
    set_cache(None)


@pytest.fixture
def redis_sync(redis_server):
    """Synchronous view of the same fake Redis, for inspecting keys from test code"""
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def database():
    asyncio.run(reset_schema())


@pytest.fixture
def client(database, cache):
    from lessonpulse.main import app

    with TestClient(app) as test_client:
        yield test_client


class ApiUser:
    """Logged-in API user: sends the bearer token and rotates the CSRF token"""

    def __init__(self, client, auth):
        self.client = client
        self.token = auth["access_token"]
        self.csrf = auth["csrf_token"]
        self.user = auth["user"]

    @property
    def id(self):
        return self.user["id"]

    def request(self, method, url, csrf=True, **kwargs):
        headers = {"Authorization": f"Bearer {self.token}", **kwargs.pop("headers", {})}
        if method != "GET" and csrf and self.csrf:
            headers.setdefault("X-CSRF-Token", self.csrf)
        response = self.client.request(method, url, headers=headers, **kwargs)

        rotated = response.headers.get("X-CSRF-Token")
        if rotated:
            self.csrf = rotated
        elif method != "GET" and response.status_code not in (401,):
            # Error responses do not carry the replacement token
            self.refresh_csrf()
        return response

    def refresh_csrf(self):
        response = self.client.get("/api/auth/csrf-token", headers={"Authorization": f"Bearer {self.token}"})
        if response.status_code == 200:
            self.csrf = response.json()["csrf_token"]

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url, **kwargs):
        return self.request("DELETE", url, **kwargs)


class Api:
    """Account helpers; every anonymous call comes from a new client IP"""

    def __init__(self, client):
        self.client = client
        self._ips = itertools.count(1)

    def ip_headers(self):
        n = next(self._ips)
        return {"X-Forwarded-For": f"10.0.{n // 250}.{n % 250 + 1}"}

    def _auth(self, url, payload, expected=(200, 201), headers=None):
        response = self.client.post(url, json=payload, headers={**self.ip_headers(), **(headers or {})})
        assert response.status_code in expected, response.text
        return ApiUser(self.client, response.json())

    def signup_student(self, full_name="Ona Petraitė", grade="9", school=SCHOOL, password=PASSWORD):
        return self._auth("/api/auth/students/signup", {
            "full_name": full_name, "school": school, "grade": grade, "password": password,
        })

    def login_student(self, full_name="Ona Petraitė", grade="9", school=SCHOOL, password=PASSWORD, headers=None):
        return self._auth("/api/auth/students/login", {
            "full_name": full_name, "school": school, "grade": grade, "password": password,
        }, headers=headers)

    def signup_teacher(self, name="Jonas Kazlauskas", email="jonas@school.lt", role="teacher",
                       school=SCHOOL, password=PASSWORD):
        return self._auth("/api/auth/teachers/signup", {
            "name": name, "email": email, "school": school, "password": password, "role": role,
        })

    def login_teacher(self, email, password=PASSWORD):
        return self._auth("/api/auth/teachers/login", {"email": email, "password": password})

    def login_platform_admin(self):
        email, password = PLATFORM_ADMIN
        return self._auth("/api/auth/platform/login", {"email": email, "password": password})

    def create_doctor(self, admin, name="Rasa Jankauskienė", email="rasa@school.lt", available=True):
        """Invite, accept and log in a school doctor"""
        response = admin.post("/api/invitations", json={
            "email": email, "role": "doctor", "specialization": "School psychologist",
        })
        assert response.status_code == 201, response.text
        accepted = self.client.post("/api/invitations/accept", json={
            "token": response.json()["invite_token"], "name": name, "password": PASSWORD,
        }, headers=self.ip_headers())
        assert accepted.status_code == 201, accepted.text
        doctor = self.login_teacher(email)
        if available:
            assert doctor.put("/api/chat/availability", json={"is_available": True}).status_code == 200
        return doctor


@pytest.fixture
def api(client):
    return Api(client)
