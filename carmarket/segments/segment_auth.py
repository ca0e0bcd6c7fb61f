from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from carmarket.extensions import db
from carmarket.models import RefreshToken, SmsVerification, User, UserToken
from carmarket.services.notification_service import get_settings, send_email, send_sms
from carmarket.utils.auth import current_user
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, json_body, unauthorized
from carmarket.utils.jwt_utils import ACCESS_TOKEN_TTL_SECONDS, create_access_token
from carmarket.utils.phone import is_valid_kenyan_phone, to_international
from carmarket.utils.rate_limit import check_limit, client_ip, limited_response


auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/auth")

REFRESH_TOKEN_TTL_DAYS = 30
EMAIL_VERIFY_TTL_HOURS = 24
PASSWORD_RESET_TTL_MINUTES = 60
SMS_CODE_TTL_MINUTES = 10
SMS_RESEND_SECONDS = 60
SMS_MAX_ATTEMPTS = 5
MIN_PASSWORD_LENGTH = 8
SELF_SERVICE_ROLES = ("buyer", "seller", "rental_company")


def _hash_token(value: str) -> str:
    secret = (current_app.config.get("SECRET_KEY") or os.getenv("SECRET_KEY") or "carmarket").encode("utf-8")
    return hmac.new(secret, value.encode("utf-8"), hashlib.sha256).hexdigest()


def _iso_utc(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat() + "Z"


def _issue_access_token(user: User) -> tuple[str, datetime]:
    expires_at = datetime.utcnow() + timedelta(seconds=ACCESS_TOKEN_TTL_SECONDS)
    token = create_access_token(int(user.id), ttl_seconds=ACCESS_TOKEN_TTL_SECONDS, role=user.role)
    return token, expires_at


def _issue_refresh_token_record(*, user_id: int, device_id: str | None = None) -> tuple[RefreshToken, str]:
    now = datetime.utcnow()
    refresh_token = secrets.token_urlsafe(48)
    rec = RefreshToken(
        user_id=int(user_id),
        token_hash=_hash_token(refresh_token),
        created_at=now,
        expires_at=now + timedelta(days=REFRESH_TOKEN_TTL_DAYS),
        revoked_at=None,
        device_id=(device_id or "").strip() or None,
    )
    db.session.add(rec)
    return rec, refresh_token


def _session_payload(user: User) -> dict:
    access_token, access_expires_at = _issue_access_token(user)
    _rec, refresh_token = _issue_refresh_token_record(user_id=int(user.id), device_id=request.headers.get("X-Device-Id"))
    return {
        "user": user.to_dict(),
        "token": access_token,
        "refresh_token": refresh_token,
        "expires_at": _iso_utc(access_expires_at),
    }


def _app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:3000").strip().rstrip("/")


def _issue_user_token(user: User, purpose: str, ttl: timedelta) -> str:
    now = datetime.utcnow()
    UserToken.query.filter(
        UserToken.user_id == int(user.id), UserToken.purpose == purpose, UserToken.used_at.is_(None)
    ).update({"used_at": now}, synchronize_session=False)
    token = secrets.token_urlsafe(32)
    db.session.add(
        UserToken(user_id=int(user.id), purpose=purpose, token_hash=_hash_token(token), created_at=now, expires_at=now + ttl)
    )
    return token


def _send_verification_email(user: User) -> dict:
    token = _issue_user_token(user, "email_verify", timedelta(hours=EMAIL_VERIFY_TTL_HOURS))
    link = f"{_app_url()}/auth/verify-email?token={token}"
    result = send_email(
        user.email,
        "Verify your email",
        f"Hi {user.name or 'there'},\n\nVerify your email by clicking:\n{link}\n\nIf you did not request this, ignore this email.",
    )
    current_app.logger.info("email_verify_issued user_id=%s delivery=%s", user.id, result.get("delivery"))
    return result


def _auth_rate_limited(action: str, *, limit: int, window_seconds: int, subject: str = ""):
    if bool(current_app.config.get("TESTING")) and (os.getenv("RATE_LIMIT_IN_TESTS") or "").strip().lower() not in ("1", "true", "yes", "on"):
        return None
    ip = client_ip()
    ok, retry_after = check_limit(f"{action}:ip:{ip}:{subject}", limit=limit, window_seconds=window_seconds)
    if ok:
        return None
    return limited_response(retry_after)


@auth_bp.post("/register")
def register():
    data = json_body()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    phone = (data.get("phone") or "").strip() or None
    role = (data.get("role") or "buyer").strip().lower()

    if not name or not email or not password:
        return error_response("Name, email and password are required", 400)
    if "@" not in email or "." not in email.split("@")[-1]:
        return error_response("Invalid email address", 400)
    if len(password) < MIN_PASSWORD_LENGTH:
        return error_response(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)
    if role not in SELF_SERVICE_ROLES:
        return error_response("Invalid role", 400)
    if phone:
        if not is_valid_kenyan_phone(phone):
            return error_response("Invalid Kenyan phone number", 400)
        phone = to_international(phone)

    if User.query.filter_by(email=email).first():
        return error_response("Email already in use", 409)
    if phone and User.query.filter_by(phone=phone).first():
        return error_response("Phone already in use", 409)

    user = User(name=name, email=email, phone=phone, role=role)
    user.set_password(password)
    try:
        db.session.add(user)
        db.session.flush()
        get_settings(user.id)
        _send_verification_email(user)
        payload = _session_payload(user)
        log_event("user_registered", actor_user_id=user.id, subject_type="user", subject_id=user.id, metadata={"role": role})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return error_response("Email or phone already in use", 409)
    current_app.logger.info("user_registered user_id=%s role=%s", user.id, role)
    return jsonify(payload), 201


def _authenticate(data: dict):
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return None, error_response("Email and password are required", 400)
    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return None, error_response("Invalid credentials", 401)
    if not bool(user.is_active):
        return None, error_response("Account is deactivated", 403)
    return user, None


@auth_bp.post("/login")
def login():
    data = json_body()
    rl = _auth_rate_limited("login", limit=30, window_seconds=300, subject=(data.get("email") or "").strip().lower())
    if rl is not None:
        return rl
    user, err = _authenticate(data)
    if err is not None:
        return err
    user.last_login_at = datetime.utcnow()
    payload = _session_payload(user)
    db.session.commit()
    return jsonify(payload), 200


@auth_bp.post("/mobile-token")
def mobile_token():
    user, err = _authenticate(json_body())
    if err is not None:
        return err
    user.last_login_at = datetime.utcnow()
    payload = _session_payload(user)
    db.session.commit()
    payload["profile"] = {
        "id": int(user.id),
        "name": user.name or "",
        "email": user.email,
        "phone": user.phone or "",
        "image_url": user.image_url or "",
        "role": user.role or "buyer",
        "is_verified": bool(user.is_verified),
    }
    return jsonify(payload), 200


@auth_bp.get("/me")
def me():
    user = current_user()
    if not user:
        return unauthorized()
    return jsonify(user.to_dict()), 200


@auth_bp.post("/refresh")
def refresh():
    data = json_body()
    refresh_token = (data.get("refresh_token") or "").strip()
    if not refresh_token:
        return error_response("refresh_token is required", 400)

    now = datetime.utcnow()
    rec = RefreshToken.query.filter_by(token_hash=_hash_token(refresh_token)).first()
    if not rec:
        return error_response("Invalid refresh token", 401)
    reason = rec.rejection_reason(now)
    if reason:
        return error_response(reason, 401)

    user = db.session.get(User, int(rec.user_id))
    if not user or not bool(user.is_active):
        return error_response("Invalid refresh token", 401)

    rec.revoke(now)
    payload = _session_payload(user)
    db.session.commit()
    return jsonify(payload), 200


@auth_bp.post("/logout")
def logout():
    user = current_user()
    if not user:
        return unauthorized()
    refresh_token = (json_body().get("refresh_token") or "").strip()
    now = datetime.utcnow()
    if refresh_token:
        rec = RefreshToken.query.filter_by(token_hash=_hash_token(refresh_token), user_id=int(user.id)).first()
        revoked = 1 if rec and rec.revoke(now) else 0
    else:
        revoked = RefreshToken.revoke_all_for_user(int(user.id), when=now)
    db.session.commit()
    return jsonify({"ok": True, "revoked_refresh_tokens": int(revoked)}), 200


@auth_bp.post("/verify-email")
def verify_email():
    token = (json_body().get("token") or request.args.get("token") or "").strip()
    if not token:
        return error_response("token is required", 400)
    rec = UserToken.query.filter_by(token_hash=_hash_token(token), purpose="email_verify").first()
    if not rec or not rec.is_usable():
        return error_response("Invalid or expired token", 400)
    user = db.session.get(User, int(rec.user_id))
    if not user:
        return error_response("Invalid or expired token", 400)
    now = datetime.utcnow()
    rec.used_at = now
    user.is_verified = True
    user.updated_at = now
    log_event("email_verified", actor_user_id=user.id, subject_type="user", subject_id=user.id)
    db.session.commit()
    return jsonify({"ok": True, "message": "Email verified", "user": user.to_dict()}), 200


@auth_bp.post("/send-verification")
def send_verification():
    user = current_user()
    if not user:
        return unauthorized()
    if bool(user.is_verified):
        return jsonify({"ok": True, "message": "Email already verified"}), 200
    rl = _auth_rate_limited("send_verification", limit=5, window_seconds=3600, subject=str(user.id))
    if rl is not None:
        return rl
    result = _send_verification_email(user)
    db.session.commit()
    if not result.get("ok"):
        return error_response("Failed to send verification email", 502, error="EMAIL_SEND_FAILED")
    return jsonify({"ok": True, "message": "Verification email sent"}), 200


@auth_bp.post("/forgot-password")
def forgot_password():
    email = (json_body().get("email") or "").strip().lower()
    generic = {"ok": True, "message": "If an account exists, we sent a reset email."}
    if not email:
        return jsonify(generic), 200
    user = User.query.filter_by(email=email).first()
    if not user or not bool(user.is_active):
        return jsonify(generic), 200
    token = _issue_user_token(user, "password_reset", timedelta(minutes=PASSWORD_RESET_TTL_MINUTES))
    link = f"{_app_url()}/auth/reset-password?token={token}"
    send_email(
        user.email,
        "Reset your password",
        f"Reset your password by clicking:\n{link}\n\nThe link expires in {PASSWORD_RESET_TTL_MINUTES} minutes.",
    )
    db.session.commit()
    current_app.logger.info("password_reset_requested user_id=%s", user.id)
    return jsonify(generic), 200


@auth_bp.post("/reset-password")
def reset_password():
    data = json_body()
    token = (data.get("token") or "").strip()
    new_password = data.get("password") or data.get("new_password") or ""
    if not token:
        return error_response("token is required", 400)
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return error_response(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400)

    rec = UserToken.query.filter_by(token_hash=_hash_token(token), purpose="password_reset").first()
    if not rec or not rec.is_usable():
        return error_response("Invalid or expired token", 400)
    user = db.session.get(User, int(rec.user_id))
    if not user:
        return error_response("Invalid or expired token", 400)

    now = datetime.utcnow()
    user.set_password(new_password)
    user.updated_at = now
    rec.used_at = now
    RefreshToken.revoke_all_for_user(int(user.id), when=now)
    log_event("password_reset_completed", actor_user_id=user.id, subject_type="user", subject_id=user.id, severity="WARN")
    db.session.commit()
    current_app.logger.info("password_reset_completed user_id=%s", user.id)
    return jsonify({"ok": True, "message": "Password updated"}), 200


@auth_bp.post("/send-sms-verification")
def send_sms_verification():
    user = current_user()
    phone_raw = (json_body().get("phone") or "").strip()
    if not phone_raw:
        return error_response("phone is required", 400)
    if not is_valid_kenyan_phone(phone_raw):
        return error_response("Invalid Kenyan phone number", 400)
    phone = to_international(phone_raw)

    now = datetime.utcnow()
    latest = SmsVerification.query.filter_by(phone=phone).order_by(SmsVerification.created_at.desc()).first()
    if latest and latest.created_at and (now - latest.created_at).total_seconds() < SMS_RESEND_SECONDS:
        wait = int(SMS_RESEND_SECONDS - (now - latest.created_at).total_seconds())
        return error_response("Please wait before requesting another code", 429, error="RATE_LIMITED", retry_after=max(1, wait))

    code = f"{secrets.randbelow(1000000):06d}"
    row = SmsVerification(
        user_id=int(user.id) if user else None,
        phone=phone,
        code_hash=_hash_token(f"{phone}:{code}"),
        attempts=0,
        created_at=now,
        expires_at=now + timedelta(minutes=SMS_CODE_TTL_MINUTES),
    )
    db.session.add(row)
    db.session.flush()
    result = send_sms(phone, f"Your verification code is {code}. It expires in {SMS_CODE_TTL_MINUTES} minutes.", reference=f"sms_verify:{row.id}")
    if not result.ok and result.code not in ("INTEGRATION_DISABLED",):
        db.session.rollback()
        return error_response("Failed to send verification code", 502, error=result.code or "SMS_SEND_FAILED")
    db.session.commit()
    return jsonify({"ok": True, "message": "Verification code sent", "expires_in": SMS_CODE_TTL_MINUTES * 60}), 200


@auth_bp.post("/verify-sms")
def verify_sms():
    data = json_body()
    phone_raw = (data.get("phone") or "").strip()
    code = (str(data.get("code") or "")).strip()
    if not phone_raw or not code:
        return error_response("phone and code are required", 400)
    if not is_valid_kenyan_phone(phone_raw):
        return error_response("Invalid Kenyan phone number", 400)
    phone = to_international(phone_raw)

    now = datetime.utcnow()
    row = (
        SmsVerification.query.filter(SmsVerification.phone == phone, SmsVerification.verified_at.is_(None))
        .order_by(SmsVerification.created_at.desc())
        .first()
    )
    if not row or row.expires_at <= now:
        return error_response("Verification code expired or not found", 400)
    if int(row.attempts or 0) >= SMS_MAX_ATTEMPTS:
        return error_response("Too many attempts. Request a new code.", 429, error="TOO_MANY_ATTEMPTS")

    row.attempts = int(row.attempts or 0) + 1
    if not hmac.compare_digest(row.code_hash, _hash_token(f"{phone}:{code}")):
        db.session.commit()
        remaining = max(0, SMS_MAX_ATTEMPTS - int(row.attempts))
        return error_response("Invalid verification code", 400, attempts_remaining=remaining)

    row.verified_at = now
    user = current_user()
    if user is None and row.user_id is not None:
        user = db.session.get(User, int(row.user_id))
    if user is not None:
        owner = User.query.filter(User.phone == phone, User.id != int(user.id)).first()
        if owner:
            db.session.rollback()
            return error_response("Phone already in use", 409)
        user.phone = phone
        user.phone_verified = True
        user.updated_at = now
    db.session.commit()
    return jsonify({"ok": True, "message": "Phone verified", "phone": phone, "user": user.to_dict() if user else None}), 200
