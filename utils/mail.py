"""
Email utility functions
"""
from flask_mail import Mail, Message
from flask import current_app

mail = Mail()


def send_email(subject, recipients, body, html=None):
    """
    Send an email

    Args:
        subject: Email subject
        recipients: List of recipient email addresses
        body: Plain text body
        html: HTML body (optional)
    """
    msg = Message(
        subject=subject,
        recipients=recipients,
        body=body,
        html=html
    )
    mail.send(msg)


def _mail_configured():
    return bool(current_app.config.get('MAIL_SERVER') and current_app.config.get('MAIL_USERNAME'))


def send_password_changed_email(user):
    """
    Tell the account owner their password was reset via phone verification.
    Phone-only accounts (placeholder address) are skipped. Returns True when sent.
    """
    if not user.email or user.email.endswith('@phone.local'):
        return False
    if not _mail_configured():
        current_app.logger.warning("Mail not configured; password change notice for user %s not sent", user.id)
        return False

    name = user.full_name or user.email
    subject = "Your password was changed"
    body = f"""
Hello {name},

The password for your account was just reset after phone verification.

If you did not make this change, please contact customer support immediately.
"""
    html = _password_changed_email_html(name)
    try:
        send_email(subject, [user.email], body, html)
    except Exception as e:
        current_app.logger.error(f"SMTP error sending password change notice to {user.email}: {str(e)}", exc_info=True)
        raise
    return True


def _password_changed_email_html(name: str) -> str:
    """Clean HTML template for the password change notice."""
    return f"""
    <!DOCTYPE html>
    <html>
    <head><meta charset="utf-8"><title>Password Changed</title></head>
    <body style="font-family: system-ui, sans-serif; max-width: 480px; margin: 0 auto; padding: 24px;">
        <h2 style="color: #1a1a2e;">Password Changed</h2>
        <p>Hello {name},</p>
        <p>The password for your account was just reset after phone verification.</p>
        <hr style="border: none; border-top: 1px solid #eee; margin: 24px 0;">
        <p style="font-size: 12px; color: #999;">If you did not make this change, please contact customer support immediately.</p>
    </body>
    </html>
    """
