"""
Shared fixtures: application on TestingConfig, client, captured OTP deliveries.
"""
import pytest

from app import create_app
from config import TestingConfig
from models import db as _db
from utils.ratelimit import limiter


@pytest.fixture
def app():
    limiter.clear()
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        _db.session.remove()
        _db.drop_all()
    limiter.clear()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sent_otps(monkeypatch):
    """Capture (phone, otp) pairs instead of calling the alimtalk gateway."""
    sent = []

    def fake_send(phone, otp):
        sent.append((phone, otp))

    monkeypatch.setattr("routes.auth.send_otp_message", fake_send)
    return sent


@pytest.fixture
def login(client):
    """Log a user into the test client session."""
    def _login(user):
        with client.session_transaction() as sess:
            sess["_user_id"] = str(user.id)
            sess["_fresh"] = True
    return _login
