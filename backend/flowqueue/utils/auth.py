"""Shared-secret authentication for worker endpoints."""

from __future__ import annotations

import functools
import hmac
from collections.abc import Callable
from http import HTTPStatus
from typing import Any, TypeVar, cast

from flask import current_app, jsonify, request

TCallable = TypeVar("TCallable", bound=Callable[..., Any])


def _extract_bearer_token() -> str | None:
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


def _unauthorized(message: str):
    response = jsonify({"error": message, "code": "UNAUTHORIZED"})
    response.status_code = HTTPStatus.UNAUTHORIZED
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


def require_worker_secret(func: TCallable) -> TCallable:
    """Require ``Authorization: Bearer <WORKER_SECRET>`` when a secret is configured."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        secret = current_app.config.get("WORKER_SECRET")
        if not secret:
            return func(*args, **kwargs)

        token = _extract_bearer_token()
        if not token:
            return _unauthorized("missing bearer token")
        if not hmac.compare_digest(token.encode("utf-8"), str(secret).encode("utf-8")):
            return _unauthorized("invalid token")
        return func(*args, **kwargs)

    return cast(TCallable, wrapper)
