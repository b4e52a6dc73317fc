from datetime import datetime

from flask import Blueprint, request, session, current_app, jsonify

from extensions import db, limiter
from models import ROLES, Profile
from utils import admin_required, is_admin
from utils.audit import log_event
from utils.errors import Conflict, Forbidden, Locked, NotAuthenticated, NotFound, ValidationFailed
from utils.security import (
    generate_secure_password,
    hash_password,
    is_locked,
    minutes_left,
    password_problems,
    register_failure,
    register_success,
    sanitize_input,
    verify_password,
)
from utils.validation import is_valid_email, normalize_email, require_choice

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def _validated_profile(payload: dict, role: str) -> Profile:
    email = normalize_email(payload.get("email"))
    password = payload.get("password") or ""
    errors = {}
    if not is_valid_email(email):
        errors["email"] = "Please enter a valid email address"
    problems = password_problems(password)
    if problems:
        errors["password"] = "Password must contain " + ", ".join(problems)
    if errors:
        raise ValidationFailed("Invalid sign-up details", errors)
    if Profile.query.filter_by(email=email).first() is not None:
        raise Conflict("User already registered")
    return Profile(
        email=email,
        password_hash=hash_password(password),
        first_name=sanitize_input(payload.get("first_name")) or None,
        last_name=sanitize_input(payload.get("last_name")) or None,
        role=role,
    )


def _start_session(profile: Profile) -> None:
    session.clear()
    session.permanent = True
    session["user_id"] = profile.id
    session["username"] = profile.full_name
    session["role"] = profile.role
    session["last_seen"] = datetime.utcnow().timestamp()


@auth_bp.route('/signup', methods=['POST'])
@limiter.limit('10 per minute')
def signup():
    """Self sign-up. The very first account of an empty system becomes the admin."""
    payload = request.get_json(silent=True) or {}
    first_user = Profile.query.count() == 0
    profile = _validated_profile(payload, "admin" if first_user else "teacher")
    profile.email_confirmed = bool(current_app.config.get("AUTO_CONFIRM_EMAIL"))
    db.session.add(profile)
    db.session.flush()
    log_event("signup", target=f"profile:{profile.id}", detail=profile.role)
    db.session.commit()
    current_app.logger.info("new %s account %s", profile.role, profile.email)
    return jsonify({"profile": profile.to_dict(), "admin_setup": first_user}), 201


@auth_bp.route('/signin', methods=['POST'])
# Rate limit sign-in attempts per client address
@limiter.limit('10 per minute', methods=['POST'])
def signin():
    payload = request.get_json(silent=True) or {}
    email = normalize_email(payload.get("email"))
    password = payload.get("password") or ""
    if not email or not password:
        raise ValidationFailed("Email and password are required")
    profile = Profile.query.filter_by(email=email).first()
    if profile is None or not profile.is_active:
        raise NotAuthenticated("Invalid login credentials", code="invalid_credentials")
    if is_locked(profile):
        raise Locked(
            f"Too many failed attempts. Try again in {minutes_left(profile)} minute(s).",
            minutes_remaining=minutes_left(profile),
        )
    if not verify_password(profile.password_hash, password):
        locked = register_failure(
            profile,
            current_app.config.get("MAX_FAILED_LOGIN_ATTEMPTS", 5),
            current_app.config.get("LOGIN_LOCKOUT_MINUTES", 15),
        )
        db.session.commit()
        if locked:
            current_app.logger.warning("account %s locked after repeated failures", email)
        raise NotAuthenticated("Invalid login credentials", code="invalid_credentials")
    if not profile.email_confirmed:
        if not current_app.config.get("AUTO_CONFIRM_EMAIL"):
            raise Forbidden("Email not confirmed", code="email_not_confirmed")
        profile.email_confirmed = True
    register_success(profile)
    db.session.commit()
    _start_session(profile)
    return jsonify({"profile": profile.to_dict()})


@auth_bp.route('/signout', methods=['POST'])
def signout():
    session.clear()
    return jsonify({"ok": True})


@auth_bp.route('/session', methods=['GET'])
def current_session():
    profile = db.session.get(Profile, session["user_id"]) if session.get("user_id") else None
    if profile is None:
        raise NotAuthenticated("Not signed in")
    return jsonify({"profile": profile.to_dict()})


@auth_bp.route('/is-admin', methods=['GET'])
def is_admin_check():
    return jsonify({"is_admin": is_admin()})


@auth_bp.route('/users', methods=['GET'])
@admin_required
def list_users():
    users = Profile.query.order_by(Profile.created_at).all()
    return jsonify({"users": [u.to_dict() for u in users]})


@auth_bp.route('/users', methods=['POST'])
@admin_required
def create_user():
    payload = request.get_json(silent=True) or {}
    role = require_choice(payload.get("role") or "teacher", ROLES, "role")
    profile = _validated_profile(payload, role)
    profile.email_confirmed = True
    db.session.add(profile)
    db.session.flush()
    log_event("user_created", target=f"profile:{profile.id}", detail=role)
    db.session.commit()
    return jsonify({"profile": profile.to_dict()}), 201


@auth_bp.route('/users/<int:user_id>/reset-password', methods=['POST'])
@admin_required
def reset_password(user_id):
    """Admin-issued password reset; returns the generated password once."""
    profile = db.session.get(Profile, user_id)
    if profile is None:
        raise NotFound(f"User {user_id} not found")
    new_password = generate_secure_password()
    profile.password_hash = hash_password(new_password)
    profile.failed_attempts = 0
    profile.locked_until = None
    log_event("password_reset", target=f"profile:{profile.id}")
    db.session.commit()
    return jsonify({"user_id": profile.id, "password": new_password})
