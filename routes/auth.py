"""
Authentication API: phone OTP send/verify, find id, password reset, email checks
"""
from flask import request, Blueprint, jsonify, current_app
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import func

from models import db
from models.user import User
from models.phone_otp import PhoneOTP
from models.points import UserPoints, PointHistory
from models.coupon import UserCoupon
from models.order import Order
from utils.auth_utils import hash_password, verify_password, random_password
from utils.clock import utcnow
from utils.messaging import send_otp_message, OTPDeliveryError, OTP_DELIVERY_FAIL_MSG
from utils.otp_helper import create_otp, validate_otp, remaining_seconds, MAX_OTP_ATTEMPTS, OTP_EXCEEDED_MSG
from utils.phone import validate_and_format_phone, mask_email, mask_phone
from utils.ratelimit import (
    limiter, get_client_ip,
    OTP_SEND_PER_PHONE, OTP_SEND_PER_IP, OTP_VERIFY_PER_PHONE, EMAIL_CHECK_PER_IP, LOGIN_PER_IP,
)
from utils.validators import validate_email, validate_password

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

VERIFY_FLOWS = ('login', 'signup', 'find-id', 'reset-password')

GENERIC_ERROR = "Something went wrong. Please try again later."
OTP_SEND_SUCCESS_MSG = "Verification code sent."
OTP_SAVE_FAIL_MSG = "Unable to issue a verification code. Please try again later."
OTP_NOT_FOUND_MSG = "No valid verification code. Please request a new one."
OTP_INPUT_REQUIRED_MSG = "Please enter your phone number and verification code."
PHONE_VERIFIED_MSG = "Phone number verified."
PHONE_ALREADY_REGISTERED_MSG = "This phone number is already registered. Please log in or use another number."
VERIFICATION_REQUIRED_MSG = "Phone verification is required."
VERIFICATION_EXPIRED_MSG = "Verification has expired. Please try again."
MISSING_FIELDS_MSG = "Required information is missing."
EMAIL_INVALID_MSG = "Please provide a valid email address."
LOOKUP_SENT_MSG = "If an account exists for that email, a verification code has been sent to its phone."
INVALID_CREDENTIALS_MSG = "Invalid email or password."


def _json_error(message, status, **extra):
    payload = {"success": False, "message": message}
    payload.update(extra)
    return jsonify(payload), status


def _rate_limited(result):
    return _json_error(
        result.error,
        429,
        reset_at=result.reset_at,
        retry_after_seconds=result.retry_after,
    )


def _request_data():
    return request.get_json(silent=True) or request.form


def _normalized_email(value):
    return (value or "").strip().lower() if isinstance(value, str) else ""


def _send_new_otp(e164_phone):
    """
    Persist and deliver a new OTP, superseding older unverified codes.
    Returns (expires_at, None) or (None, error response).
    """
    generated = create_otp()
    try:
        PhoneOTP.supersede_unverified(e164_phone)
        db.session.add(PhoneOTP(
            phone=e164_phone,
            otp_hash=generated.otp_hash,
            attempts=0,
            verified=False,
            expires_at=generated.expires_at,
        ))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to save OTP for {mask_phone(e164_phone)}: {str(e)}", exc_info=True)
        return None, _json_error(OTP_SAVE_FAIL_MSG, 500)

    try:
        send_otp_message(e164_phone, generated.otp)
    except OTPDeliveryError as e:
        current_app.logger.error(f"OTP delivery failed for {mask_phone(e164_phone)}: {str(e)}")
        try:
            PhoneOTP.supersede_unverified(e164_phone)
            db.session.commit()
        except Exception:
            db.session.rollback()
            current_app.logger.error("Failed to discard undelivered OTP", exc_info=True)
        return None, _json_error(OTP_DELIVERY_FAIL_MSG, 500)

    return generated.expires_at, None


def _issue_otp(e164_phone, extra=None):
    """
    Rate-limit (per phone, then per client IP), persist and deliver a new OTP.
    Returns a Flask response tuple.
    """
    phone_limit = limiter.check(e164_phone, OTP_SEND_PER_PHONE)
    if not phone_limit.allowed:
        return _rate_limited(phone_limit)

    ip_limit = limiter.check(get_client_ip(request.headers), OTP_SEND_PER_IP)
    if not ip_limit.allowed:
        return _rate_limited(ip_limit)

    expires_at, error = _send_new_otp(e164_phone)
    if error:
        return error

    payload = {
        "success": True,
        "message": OTP_SEND_SUCCESS_MSG,
        "expires_in": remaining_seconds(expires_at),
    }
    payload.update(extra or {})
    return jsonify(payload), 200


def _load_proof(verification_id, e164_phone):
    """Verified OTP record still inside its grace period, or an error response."""
    proof = PhoneOTP.find_proof(verification_id, e164_phone)
    if not proof:
        return None, _json_error(VERIFICATION_REQUIRED_MSG, 400)
    if not proof.is_usable_proof():
        return None, _json_error(VERIFICATION_EXPIRED_MSG, 400)
    return proof, None


@auth_bp.route('/phone/send-otp', methods=['POST'])
def send_phone_otp():
    """Send a verification code to a phone number. Input: phone."""
    try:
        data = _request_data()
        phone_check = validate_and_format_phone(data.get("phone"))
        if not phone_check.valid:
            return _json_error(phone_check.error, 400)
        return _issue_otp(phone_check.e164)
    except Exception as e:
        current_app.logger.error(f"Unexpected error in send_phone_otp: {str(e)}", exc_info=True)
        db.session.rollback()
        return _json_error(GENERIC_ERROR, 500)


@auth_bp.route('/phone/verify-otp', methods=['POST'])
def verify_phone_otp():
    """
    Verify a code against the latest unverified record for the phone.
    Input: phone, otp, flow (login | signup | find-id | reset-password).
    """
    try:
        data = _request_data()
        phone = data.get("phone")
        otp = data.get("otp")
        flow = data.get("flow")
        if flow not in VERIFY_FLOWS:
            flow = 'login'
        if isinstance(otp, str):
            otp = otp.strip()

        if not phone or not otp:
            return _json_error(OTP_INPUT_REQUIRED_MSG, 400)

        phone_check = validate_and_format_phone(phone)
        if not phone_check.valid:
            return _json_error(phone_check.error, 400)
        e164_phone = phone_check.e164

        verify_limit = limiter.check(e164_phone, OTP_VERIFY_PER_PHONE)
        if not verify_limit.allowed:
            return _rate_limited(verify_limit)

        record = PhoneOTP.latest_unverified(e164_phone)
        if not record:
            return _json_error(OTP_NOT_FOUND_MSG, 400)

        result = validate_otp(otp, record.otp_hash, record.expires_at, record.attempts or 0)
        if not result.success:
            if result.reason != 'format':
                try:
                    # Atomic increment; concurrent failures each count
                    PhoneOTP.query.filter_by(id=record.id).update(
                        {PhoneOTP.attempts: func.coalesce(PhoneOTP.attempts, 0) + 1},
                        synchronize_session=False,
                    )
                    db.session.commit()
                except Exception:
                    db.session.rollback()
                    current_app.logger.error("Failed to record OTP attempt", exc_info=True)
                    return _json_error(GENERIC_ERROR, 500)
            extra = {}
            if result.remaining_attempts is not None:
                extra["remaining_attempts"] = result.remaining_attempts
            return _json_error(result.error, 400, **extra)

        # Accept only while no concurrent failure has used up the attempts
        accepted = PhoneOTP.query.filter(
            PhoneOTP.id == record.id,
            PhoneOTP.verified.is_(False),
            func.coalesce(PhoneOTP.attempts, 0) < MAX_OTP_ATTEMPTS,
        ).update({PhoneOTP.verified: True}, synchronize_session=False)
        db.session.commit()
        if not accepted:
            return _json_error(OTP_EXCEEDED_MSG, 400, remaining_attempts=0)

        existing = User.query.filter_by(phone=e164_phone, phone_verified=True).first()

        if flow == 'signup' and existing:
            return _json_error(PHONE_ALREADY_REGISTERED_MSG, 400)

        if flow in ('signup', 'find-id', 'reset-password'):
            return jsonify({
                "success": True,
                "flow": flow,
                "verification_id": record.id,
                "phone": e164_phone,
                "expires_at": record.expires_at.isoformat(),
                "message": PHONE_VERIFIED_MSG,
            })

        return _login_with_phone(e164_phone, existing)
    except Exception as e:
        current_app.logger.error(f"Error verifying OTP: {str(e)}", exc_info=True)
        db.session.rollback()
        return _json_error(GENERIC_ERROR, 500)


def _login_with_phone(e164_phone, user):
    """Log in the owner of a verified phone, creating the account on first use."""
    is_new_user = user is None
    now = utcnow()
    if is_new_user:
        placeholder = User.placeholder_email(e164_phone)
        user = User.query.filter_by(email=placeholder).first()
        if user is None:
            user = User(
                email=placeholder,
                password_hash=hash_password(random_password()),
            )
            db.session.add(user)
        user.phone = e164_phone
        user.phone_verified = True
        user.phone_verified_at = now
        db.session.flush()
        if db.session.get(UserPoints, user.id) is None:
            db.session.add(UserPoints(user_id=user.id, points=0, total_earned=0, total_used=0))
    else:
        user.phone_verified_at = now

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to create account for {mask_phone(e164_phone)}: {str(e)}", exc_info=True)
        return _json_error("Sign up failed. Please try again.", 500)

    login_user(user, remember=True)
    return jsonify({
        "success": True,
        "flow": "login",
        "is_new_user": is_new_user,
        "user": user.to_dict(),
        "message": "Account created." if is_new_user else "Logged in.",
    })


@auth_bp.route('/signup', methods=['POST'])
def signup():
    """Create an email account backed by a verified phone. Input: email, password, phone, verification_id, full_name."""
    try:
        data = _request_data()
        email = _normalized_email(data.get("email"))
        password = data.get("password")
        full_name = (data.get("full_name") or "").strip() or None

        if not email or not password or not data.get("phone") or not data.get("verification_id"):
            return _json_error(MISSING_FIELDS_MSG, 400)
        if not validate_email(email):
            return _json_error(EMAIL_INVALID_MSG, 400)

        is_valid, pwd_error = validate_password(password)
        if not is_valid:
            return _json_error(pwd_error, 400)

        phone_check = validate_and_format_phone(data.get("phone"))
        if not phone_check.valid:
            return _json_error(phone_check.error, 400)
        e164_phone = phone_check.e164

        proof, error = _load_proof(data.get("verification_id"), e164_phone)
        if error:
            return error

        if User.query.filter(func.lower(User.email) == email).first():
            return _json_error("This email is already registered.", 400)
        if User.query.filter_by(phone=e164_phone, phone_verified=True).first():
            return _json_error(PHONE_ALREADY_REGISTERED_MSG, 400)

        user = User(
            email=email,
            full_name=full_name,
            phone=e164_phone,
            phone_verified=True,
            phone_verified_at=utcnow(),
            password_hash=hash_password(password),
        )
        try:
            db.session.add(user)
            db.session.flush()
            db.session.add(UserPoints(user_id=user.id, points=0, total_earned=0, total_used=0))
            db.session.delete(proof)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Error creating account for {email}: {str(e)}", exc_info=True)
            return _json_error("Sign up failed. Please try again.", 500)

        login_user(user, remember=True)
        current_app.logger.info("New account %s registered", user.id)
        return jsonify({"success": True, "user": user.to_dict(), "message": "Account created."}), 201
    except Exception as e:
        current_app.logger.error(f"Signup error: {str(e)}", exc_info=True)
        db.session.rollback()
        return _json_error(GENERIC_ERROR, 500)


@auth_bp.route('/login', methods=['POST'])
def login():
    """Email and password login. Input: email, password."""
    try:
        ip_limit = limiter.check(get_client_ip(request.headers), LOGIN_PER_IP)
        if not ip_limit.allowed:
            return _rate_limited(ip_limit)

        data = _request_data()
        email = _normalized_email(data.get("email"))
        password = data.get("password") or ""
        if not email or not password:
            return _json_error("Please enter your email and password.", 400)

        user = User.query.filter(func.lower(User.email) == email).first()
        if not user or not verify_password(user.password_hash, password):
            return _json_error(INVALID_CREDENTIALS_MSG, 401)
        if not user.is_active:
            return _json_error("Your account is inactive. Please contact support.", 403)

        login_user(user, remember=True)
        return jsonify({"success": True, "user": user.to_dict(), "message": "Logged in."})
    except Exception as e:
        current_app.logger.error(f"Login error: {str(e)}", exc_info=True)
        return _json_error(GENERIC_ERROR, 500)


@auth_bp.route('/find-id', methods=['POST'])
def find_id():
    """List accounts registered to a verified phone. Input: phone, verification_id."""
    try:
        data = _request_data()
        phone_check = validate_and_format_phone(data.get("phone"))
        if not phone_check.valid:
            return _json_error(phone_check.error, 400)
        e164_phone = phone_check.e164

        _, error = _load_proof(data.get("verification_id"), e164_phone)
        if error:
            return error

        users = (
            User.query.filter_by(phone=e164_phone, phone_verified=True)
            .order_by(User.created_at.desc())
            .all()
        )
        if not users:
            return jsonify({
                "success": True,
                "email": None,
                "message": "No account is registered with this phone number.",
            })
        if len(users) > 1:
            return jsonify({
                "success": True,
                "accounts": [
                    {"email": mask_email(u.email), "created_at": u.created_at.isoformat() if u.created_at else None}
                    for u in users
                ],
                "message": f"{len(users)} accounts found.",
            })
        user = users[0]
        return jsonify({
            "success": True,
            "email": mask_email(user.email),
            "created_at": user.created_at.isoformat() if user.created_at else None,
        })
    except Exception as e:
        current_app.logger.error(f"Find ID error: {str(e)}", exc_info=True)
        return _json_error(GENERIC_ERROR, 500)


@auth_bp.route('/reset-password', methods=['POST'])
def reset_password():
    """Reset password after phone verification. Input: email, phone, verification_id, new_password."""
    try:
        data = _request_data()
        email = _normalized_email(data.get("email"))
        phone = data.get("phone")
        verification_id = data.get("verification_id")
        new_password = data.get("new_password")

        if not email or not phone or not verification_id or not new_password:
            return _json_error(MISSING_FIELDS_MSG, 400)

        is_valid, pwd_error = validate_password(new_password)
        if not is_valid:
            return _json_error(pwd_error, 400)

        phone_check = validate_and_format_phone(phone)
        if not phone_check.valid:
            return _json_error(phone_check.error, 400)
        e164_phone = phone_check.e164

        proof, error = _load_proof(verification_id, e164_phone)
        if error:
            return error

        user = User.query.filter(func.lower(User.email) == email).first()
        if not user:
            return _json_error("No account is registered with this email.", 400)
        if user.phone != e164_phone:
            return _json_error("The verified phone number does not match this account.", 400)

        try:
            user.password_hash = hash_password(new_password)
            db.session.delete(proof)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Error resetting password: {str(e)}", exc_info=True)
            return _json_error("Failed to reset password. Please try again.", 500)

        try:
            from utils.mail import send_password_changed_email
            send_password_changed_email(user)
        except Exception as e:
            current_app.logger.error(f"Failed to send password change notice: {str(e)}", exc_info=True)
            # Don't fail the reset if the notice fails

        return jsonify({"success": True, "message": "Your password has been reset successfully."})
    except Exception as e:
        current_app.logger.error(f"Reset password error: {str(e)}", exc_info=True)
        db.session.rollback()
        return _json_error(GENERIC_ERROR, 500)


@auth_bp.route('/check-email', methods=['POST'])
def check_email():
    """Signup helper: is this email already taken? Input: email."""
    try:
        ip_limit = limiter.check(get_client_ip(request.headers), EMAIL_CHECK_PER_IP)
        if not ip_limit.allowed:
            return _rate_limited(ip_limit)

        email = _normalized_email(_request_data().get("email"))
        if not validate_email(email):
            return _json_error(EMAIL_INVALID_MSG, 400)

        exists = User.query.filter(func.lower(User.email) == email).first() is not None
        return jsonify({
            "success": True,
            "exists": exists,
            "message": "This email is already registered." if exists else "This email is available.",
        })
    except Exception as e:
        current_app.logger.error(f"Check email error: {str(e)}", exc_info=True)
        return _json_error(GENERIC_ERROR, 500)


@auth_bp.route('/lookup-by-email', methods=['POST'])
def lookup_by_email():
    """
    Send an OTP to the phone registered for an email (password reset entry point).
    With CONCEAL_ACCOUNT_EXISTENCE on, unknown emails get the same response as known ones.
    """
    try:
        email = _normalized_email(_request_data().get("email"))
        if not validate_email(email):
            return _json_error(EMAIL_INVALID_MSG, 400)

        conceal = current_app.config.get("CONCEAL_ACCOUNT_EXISTENCE", True)
        if conceal:
            # Checked before the lookup; known and unknown emails share the limit
            ip_limit = limiter.check(get_client_ip(request.headers), OTP_SEND_PER_IP)
            if not ip_limit.allowed:
                return _rate_limited(ip_limit)

        user = User.query.filter(func.lower(User.email) == email).first()

        if conceal:
            if user and user.phone:
                _send_lookup_otp(user.phone)
            return jsonify({"success": True, "message": LOOKUP_SENT_MSG})

        if not user or not user.phone:
            if not user:
                return _json_error("No account is registered with this email.", 404)
            return _json_error("No phone number is registered for this account. Please contact support.", 400)

        return _issue_otp(user.phone, extra={"message": LOOKUP_SENT_MSG, "phone": user.phone})
    except Exception as e:
        current_app.logger.error(f"Lookup by email error: {str(e)}", exc_info=True)
        db.session.rollback()
        return _json_error(GENERIC_ERROR, 500)


def _send_lookup_otp(e164_phone):
    """OTP for a concealed email lookup. Limit and delivery failures are logged, never returned."""
    phone_limit = limiter.check(e164_phone, OTP_SEND_PER_PHONE)
    if not phone_limit.allowed:
        current_app.logger.warning(f"OTP send limit reached for {mask_phone(e164_phone)} during email lookup")
        return
    _send_new_otp(e164_phone)


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({"success": True, "message": "You have been logged out."})


@auth_bp.route('/delete-account', methods=['DELETE'])
@login_required
def delete_account():
    """Delete the logged-in user's account and personal data. Orders are kept, detached."""
    user_id = current_user.id
    try:
        PointHistory.query.filter_by(user_id=user_id).delete()
        UserPoints.query.filter_by(user_id=user_id).delete()
        Order.query.filter_by(user_id=user_id).update({Order.user_id: None, Order.user_coupon_id: None})
        UserCoupon.query.filter_by(user_id=user_id).delete()
        if current_user.phone:
            PhoneOTP.query.filter_by(phone=current_user.phone).delete()
        user = db.session.get(User, user_id)
        logout_user()
        db.session.delete(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to delete account {user_id}: {str(e)}", exc_info=True)
        return _json_error("Failed to delete account. Please try again.", 500)
    return jsonify({"success": True, "message": "Your account has been deleted."})
