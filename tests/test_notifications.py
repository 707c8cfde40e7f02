"""
Tests for OTP delivery and the password change notice.
"""
import io
import json
import urllib.error
import urllib.request

import pytest

from models.user import User
from utils.mail import mail, send_password_changed_email
from utils.messaging import OTPDeliveryError, send_otp_message


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


@pytest.fixture
def gateway(app, monkeypatch):
    """Point delivery at a fake gateway and capture outgoing requests."""
    app.config["ALIMTALK_API_URL"] = "https://alimtalk.test/v1/send"
    app.config["ALIMTALK_API_KEY"] = "key-123"
    requests = []
    reply = {"body": {"success": True}}

    def fake_urlopen(req, timeout=None):
        requests.append(req)
        if isinstance(reply["body"], Exception):
            raise reply["body"]
        return FakeResponse(json.dumps(reply["body"]).encode("utf-8"))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    return requests, reply


class TestSendOTPMessage:

    def test_skipped_without_gateway_in_testing(self, app):
        send_otp_message("+821012345678", "123456")

    def test_unconfigured_gateway_fails_outside_testing(self, app):
        app.config["TESTING"] = False
        with pytest.raises(OTPDeliveryError):
            send_otp_message("+821012345678", "123456")

    def test_posts_template_payload(self, gateway):
        requests, _ = gateway
        send_otp_message("+821012345678", "654321")

        req = requests[0]
        payload = json.loads(req.data.decode("utf-8"))
        assert req.get_method() == "POST"
        assert req.get_header("Authorization") == "Bearer key-123"
        assert payload["recipient"] == "+821012345678"
        assert payload["variables"] == {"code": "654321", "minutes": "5"}

    def test_gateway_rejection(self, gateway):
        _, reply = gateway
        reply["body"] = {"success": False, "message": "unknown template"}
        with pytest.raises(OTPDeliveryError, match="unknown template"):
            send_otp_message("+821012345678", "654321")

    def test_network_error(self, gateway):
        _, reply = gateway
        reply["body"] = urllib.error.URLError("connection refused")
        with pytest.raises(OTPDeliveryError):
            send_otp_message("+821012345678", "654321")


class TestPasswordChangedEmail:

    def test_sends_notice(self, app):
        user = User(id=1, email="jane@example.com", full_name="Jane")
        with mail.record_messages() as outbox:
            assert send_password_changed_email(user) is True
        assert len(outbox) == 1
        assert outbox[0].recipients == ["jane@example.com"]
        assert "Jane" in outbox[0].body

    def test_skips_phone_only_accounts(self, app):
        user = User(id=2, email="821012345678@phone.local")
        with mail.record_messages() as outbox:
            assert send_password_changed_email(user) is False
        assert outbox == []

    def test_skips_when_mail_not_configured(self, app):
        app.config["MAIL_SERVER"] = None
        user = User(id=3, email="jane@example.com")
        assert send_password_changed_email(user) is False
