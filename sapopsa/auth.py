"""Token issuing and the two-stage access gate.

Identity is the email the client supplies on ``PUT /user``; there is no
password check. Protected routes additionally require the same email as the
``email`` query parameter.
"""
import re
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    verify_jwt_in_request,
)

from .errors import Forbidden, Unauthorized

ROLE_ADMIN = "admin"
ROLE_CUSTOMER = "customer"
ALLOWED_USER_ROLES = {ROLE_ADMIN, ROLE_CUSTOMER}

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else ROLE_CUSTOMER


def get_user_role(user_document) -> str:
    if not user_document:
        return ROLE_CUSTOMER

    default_admin = normalize_email(current_app.config.get("DEFAULT_ADMIN_EMAIL"))
    if default_admin and normalize_email(user_document.get("email")) == default_admin:
        return ROLE_ADMIN

    return normalize_role(user_document.get("role"))


def issue_token(email: str) -> str:
    return create_access_token(identity=email)


def _forbidden(message: str):
    current_app.logger.warning(
        "Rejected %s %s: %s", request.method, request.path, message
    )
    return jsonify({"error": Forbidden.kind, "message": message}), Forbidden.status_code


def init_jwt(app) -> JWTManager:
    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_or_malformed_header(reason: str):
        # A present header that is not "Bearer <token>" is a bad credential,
        # not a missing one.
        if request.headers.get(app.config["JWT_HEADER_NAME"]):
            return _forbidden("Invalid or expired credential.")
        current_app.logger.info(
            "Rejected %s %s: %s", request.method, request.path, reason
        )
        return (
            jsonify({"error": Unauthorized.kind, "message": "Authorization required."}),
            Unauthorized.status_code,
        )

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return _forbidden("Invalid or expired credential.")

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return _forbidden("Invalid or expired credential.")

    return jwt


def requester_email() -> str:
    return request.args.get("email", "")


def check_token():
    verify_jwt_in_request()
    if get_jwt_identity() != requester_email():
        current_app.logger.warning(
            "Token email does not match requested email on %s", request.path
        )
        raise Forbidden("Email does not match the credential.")


def check_admin():
    check_token()
    store = current_app.extensions["sapopsa.store"]
    user_document = store.users.find_one({"email": requester_email()})
    if get_user_role(user_document or {"email": requester_email()}) != ROLE_ADMIN:
        current_app.logger.warning(
            "Admin access denied for %s on %s", requester_email(), request.path
        )
        raise Forbidden("Admin access required.")
    return user_document


def verify_token(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        check_token()
        return view(*args, **kwargs)

    return wrapper


def verify_admin(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        check_admin()
        return view(*args, **kwargs)

    return wrapper
