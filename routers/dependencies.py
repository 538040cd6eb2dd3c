"""Shared FastAPI dependencies for the billing routers."""

from __future__ import annotations

from typing import Any, Dict, Iterator

import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from billing.config import BillingConfig
from billing.stripe_client import StripeGateway

ADMIN_ROLES = frozenset({"admin", "super_admin"})


def get_session(request: Request) -> Iterator[Session]:
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.stripe_gateway


def get_billing_config(request: Request) -> BillingConfig:
    return request.app.state.billing_config


def require_admin(request: Request, config: BillingConfig = Depends(get_billing_config)) -> Dict[str, Any]:
    """
    Validate the admin bearer token and return its claims
    """
    if not config.admin_jwt_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication is not configured.",
        )

    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = jwt.decode(token.strip(), config.admin_jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    if payload.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")

    return payload
