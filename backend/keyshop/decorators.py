# Overview: Request decorators for API routes (bearer authentication, role checks).

from functools import wraps
from flask import request, jsonify, g

from .errors import ForbiddenError, UnauthorizedError
from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, "current_user")


def _error(error, **extra):
    body = error.to_dict()
    body.update(extra)
    return jsonify(body), error.status_code


def require_auth(f):
    """
    Require a valid bearer session.

    Sets g.current_user (the authenticated User) and g.session_context.

    Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return _error(UnauthorizedError("Authentication required"))

        token = auth_header.split(" ", 1)[1].strip()
        context = session_service.validate_session(token)

        if not context:
            return _error(UnauthorizedError("Invalid or expired token"))

        g.current_user = context.user
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_role(role: str):
    """Require the authenticated user to hold `role`. Use after @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return _error(UnauthorizedError("Authentication required"))

            if g.current_user.role != role:
                return _error(ForbiddenError("Permission denied"), required_role=role)

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def client_ip() -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"
