"""
PortOne payment gateway: payment lookup and webhook signature checks.

Paid amounts and payment status always come from the provider record,
never from the browser.
"""
import base64
import binascii
import hashlib
import hmac
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from utils.clock import to_naive_utc

GATEWAY_TIMEOUT_SECONDS = 10
WEBHOOK_TOLERANCE_SECONDS = 5 * 60

STATUS_PAID = 'PAID'
STATUS_VIRTUAL_ACCOUNT_ISSUED = 'VIRTUAL_ACCOUNT_ISSUED'

METHOD_CARD = 'CARD'
METHOD_TRANSFER = 'TRANSFER'
METHOD_VIRTUAL_ACCOUNT = 'VIRTUAL_ACCOUNT'


class PaymentGatewayError(Exception):
    """The provider could not be reached or refused the lookup."""


class WebhookVerificationError(Exception):
    """Webhook signature, timestamp or secret is invalid."""


@dataclass
class ProviderPayment:
    payment_id: str
    status: str
    amount_total: int
    transaction_id: Optional[str] = None
    method_type: Optional[str] = None
    virtual_account_bank: Optional[str] = None
    virtual_account_number: Optional[str] = None
    virtual_account_holder: Optional[str] = None
    virtual_account_due_date: Optional[datetime] = None

    @property
    def is_paid(self):
        return self.status == STATUS_PAID

    @property
    def is_virtual_account_issued(self):
        return self.status == STATUS_VIRTUAL_ACCOUNT_ISSUED

    @property
    def payment_method(self):
        if self.is_virtual_account_issued or (self.method_type or '').endswith('VirtualAccount'):
            return METHOD_VIRTUAL_ACCOUNT
        if (self.method_type or '').endswith('Transfer'):
            return METHOD_TRANSFER
        return METHOD_CARD

    @classmethod
    def from_response(cls, payment_id, data):
        method = data.get('method') or {}
        amount = data.get('amount') or {}
        return cls(
            payment_id=data.get('id') or payment_id,
            status=data.get('status') or '',
            amount_total=int(amount.get('total') or 0),
            transaction_id=data.get('transactionId'),
            method_type=method.get('type'),
            virtual_account_bank=method.get('bank'),
            virtual_account_number=method.get('accountNumber'),
            virtual_account_holder=method.get('remitterName'),
            virtual_account_due_date=_parse_timestamp(method.get('expiredAt')),
        )


def _parse_timestamp(value):
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except (TypeError, ValueError):
        current_app.logger.warning("Unparseable provider timestamp: %s", value)
        return None


def fetch_payment(payment_id) -> ProviderPayment:
    """Look a payment up at the provider. Raises PaymentGatewayError."""
    config = current_app.config
    secret = config.get('PORTONE_API_SECRET')
    if not secret:
        raise PaymentGatewayError("Payment provider is not configured.")

    url = f"{config.get('PORTONE_API_URL').rstrip('/')}/payments/{urllib.parse.quote(str(payment_id), safe='')}"
    req = urllib.request.Request(url, method='GET')
    req.add_header('Authorization', f"PortOne {secret}")
    try:
        with urllib.request.urlopen(req, timeout=GATEWAY_TIMEOUT_SECONDS) as r:
            data = json.loads(r.read().decode('utf-8') or '{}')
    except urllib.error.HTTPError as e:
        current_app.logger.error("Payment lookup for %s rejected: HTTP %s", payment_id, e.code)
        raise PaymentGatewayError(f"Payment lookup failed (HTTP {e.code}).") from e
    except (urllib.error.URLError, ValueError, OSError) as e:
        current_app.logger.error("Payment lookup for %s failed: %s", payment_id, e)
        raise PaymentGatewayError("Payment provider is unreachable.") from e

    return ProviderPayment.from_response(str(payment_id), data)


def _webhook_key(secret):
    if secret.startswith('whsec_'):
        secret = secret[len('whsec_'):]
    try:
        return base64.b64decode(secret)
    except (binascii.Error, ValueError) as e:
        raise WebhookVerificationError("Webhook secret is malformed.") from e


def verify_webhook(secret, body, webhook_id, webhook_timestamp, webhook_signature, now=None):
    """
    Check a Standard Webhooks signature: base64 HMAC-SHA256 of "id.timestamp.body",
    sent as space separated "v1,<signature>" entries.
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured.")
    if not webhook_id or not webhook_timestamp or not webhook_signature:
        raise WebhookVerificationError("Missing webhook headers.")
    try:
        timestamp = int(webhook_timestamp)
    except (TypeError, ValueError) as e:
        raise WebhookVerificationError("Invalid webhook timestamp.") from e
    now = time.time() if now is None else now
    if abs(now - timestamp) > WEBHOOK_TOLERANCE_SECONDS:
        raise WebhookVerificationError("Webhook timestamp is outside the tolerance window.")

    expected = _signature(secret, body, webhook_id, webhook_timestamp)

    for entry in webhook_signature.split(' '):
        version, _, signature = entry.partition(',')
        if version == 'v1' and hmac.compare_digest(signature, expected):
            return
    raise WebhookVerificationError("Webhook signature does not match.")


def _signature(secret, body, webhook_id, webhook_timestamp):
    if isinstance(body, bytes):
        body = body.decode('utf-8')
    signed = f"{webhook_id}.{webhook_timestamp}.{body}".encode('utf-8')
    digest = hmac.new(_webhook_key(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def sign_webhook(secret, body, webhook_id, webhook_timestamp):
    """Signature header value for body, as the provider sends it."""
    return f"v1,{_signature(secret, body, webhook_id, webhook_timestamp)}"
