"""
OTP delivery through the KakaoTalk alimtalk HTTP gateway.
"""
import json
import urllib.error
import urllib.request

from flask import current_app

from utils.otp_helper import OTP_EXPIRY_MINUTES

DELIVERY_TIMEOUT_SECONDS = 10
OTP_DELIVERY_FAIL_MSG = "Failed to deliver the verification code. Please try again later."


class OTPDeliveryError(Exception):
    """The notification gateway did not accept the message."""


def _build_payload(e164_phone, otp):
    config = current_app.config
    return {
        "senderKey": config.get("ALIMTALK_SENDER_KEY"),
        "templateCode": config.get("ALIMTALK_TEMPLATE_CODE"),
        "recipient": e164_phone,
        "variables": {
            "code": otp,
            "minutes": str(OTP_EXPIRY_MINUTES),
        },
    }


def send_otp_message(e164_phone, otp):
    """
    Deliver otp to e164_phone. Raises OTPDeliveryError on any failure.

    Without a configured gateway the message is only accepted in debug or
    testing mode, where nothing leaves the process.
    """
    config = current_app.config
    api_url = config.get("ALIMTALK_API_URL")

    if config.get("OTP_LOG_PLAINTEXT"):
        current_app.logger.info("[DEV] OTP for %s: %s", e164_phone, otp)

    if not api_url:
        if current_app.debug or current_app.testing:
            current_app.logger.info("Alimtalk gateway not configured; skipping delivery to %s", e164_phone)
            return
        raise OTPDeliveryError("Alimtalk gateway is not configured.")

    data = json.dumps(_build_payload(e164_phone, otp)).encode("utf-8")
    req = urllib.request.Request(api_url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    req.add_header("Authorization", f"Bearer {config.get('ALIMTALK_API_KEY') or ''}")
    try:
        with urllib.request.urlopen(req, timeout=DELIVERY_TIMEOUT_SECONDS) as r:
            body = r.read().decode("utf-8") or "{}"
            out = json.loads(body)
    except (urllib.error.URLError, ValueError, OSError) as e:
        current_app.logger.error("Alimtalk request failed for %s: %s", e164_phone, e)
        raise OTPDeliveryError(str(e)) from e

    if out.get("success") is False:
        current_app.logger.error("Alimtalk rejected message for %s: %s", e164_phone, out.get("message"))
        raise OTPDeliveryError(out.get("message") or "rejected")
