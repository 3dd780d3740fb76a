"""Request guards for the REST API."""
from __future__ import annotations

from functools import wraps
from typing import Callable

from flask import g, jsonify, request

from slurm_portal.auth.tokens import TokenError, decode_token
from slurm_portal.config import get_config


def token_required(view: Callable) -> Callable:
    """Require ``Authorization: Bearer <token>``; sets ``g.username`` and ``g.role``."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization", "")
        if not auth_header:
            return jsonify({"error": "Authorization header is required"}), 401

        if not auth_header.startswith("Bearer "):
            return jsonify({"error": "Invalid token format"}), 401
        token = auth_header[len("Bearer "):]

        config = get_config()
        try:
            claims = decode_token(token, config.jwt_secret, config.jwt_issuer)
        except TokenError:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.username = claims.username
        g.role = claims.role
        return view(*args, **kwargs)

    return wrapper


def admin_required(view: Callable) -> Callable:
    """Like token_required, and the token must carry the admin role."""

    @wraps(view)
    def check_role(*args, **kwargs):
        if g.role != "admin":
            return jsonify({"error": "Admin privileges required"}), 403
        return view(*args, **kwargs)

    return token_required(check_role)
