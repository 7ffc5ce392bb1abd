import pytest
import resend
from fastapi.testclient import TestClient

from config import Settings
from errors import DependencyFailure
from mailer import Mailer
from main import create_app

JWT_SECRET = "mailer-secret-0123456789abcdef0123456789"
SDK_ERROR = "api.resend.com 401 key re_live_abc invalid"


def resend_settings(environment="production", api_key="re_test_key"):
    return Settings(
        _env_file=None,
        JWT_SECRET=JWT_SECRET,
        BCRYPT_ROUNDS=4,
        RESEND_API_KEY=api_key,
        ENVIRONMENT=environment,
    )


def failing_send(params):
    raise RuntimeError(SDK_ERROR)


@pytest.fixture
def seeded_user(db):
    db["user"].insert_one(
        {"name": "Jane Doe", "email": "jane@example.com", "password_hash": "x", "role": "customer", "token_version": 0}
    )


@pytest.mark.parametrize("environment", ["production", "staging"])
def test_mail_failure_hides_provider_error(db, clock, seeded_user, monkeypatch, environment):
    monkeypatch.setattr(resend.Emails, "send", failing_send)
    settings = resend_settings(environment)
    with TestClient(create_app(settings, db=db, mailer=Mailer(settings), clock=clock)) as client:
        response = client.post("/api/v1/user/forget-password", json={"email": "jane@example.com"})

    assert response.status_code == 502
    assert response.json() == {"message": "Failed to send email"}
    assert SDK_ERROR not in response.text


def test_mail_failure_shows_provider_error_in_development(db, clock, seeded_user, monkeypatch):
    monkeypatch.setattr(resend.Emails, "send", failing_send)
    settings = resend_settings("development")
    with TestClient(create_app(settings, db=db, mailer=Mailer(settings), clock=clock)) as client:
        response = client.post("/api/v1/user/forget-password", json={"email": "jane@example.com"})

    assert response.status_code == 502
    assert response.json() == {"message": "Failed to send email", "error": SDK_ERROR}


def test_send_passes_message_to_resend(monkeypatch):
    calls = []

    def fake_send(params):
        calls.append(params)
        return {"id": "email_123"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    settings = resend_settings()
    assert Mailer(settings).send("jane@example.com", "Hi", text="hello") == "email_123"
    assert calls == [{"from": settings.MAIL_FROM, "to": ["jane@example.com"], "subject": "Hi", "text": "hello"}]


def test_send_without_message_id_fails(monkeypatch):
    monkeypatch.setattr(resend.Emails, "send", lambda params: {})
    with pytest.raises(DependencyFailure) as excinfo:
        Mailer(resend_settings()).send("jane@example.com", "Hi", html="<p>hello</p>")
    assert excinfo.value.message == "Failed to send email"


def test_send_requires_api_key():
    with pytest.raises(DependencyFailure) as excinfo:
        Mailer(resend_settings(api_key="")).send("jane@example.com", "Hi", text="hello")
    assert excinfo.value.message == "Email service is not configured"
