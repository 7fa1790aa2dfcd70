"""
Request authentication.

An ``Authenticator`` asks each strategy in order; the first one that
recognises the request decides who is calling. A request no strategy
recognises is anonymous, which the ledgers treat as read-only.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Protocol

from fastapi import Depends, HTTPException, Request
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2 import id_token
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import config
from .database import Store
from .identity import Identity
from .models import AccountStatus, User, UserRole

logger = logging.getLogger(__name__)

TokenVerifier = Callable[[str], Dict]


class Strategy(Protocol):
    def authenticate(self, request: Request) -> Optional[User]: ...


def firebase_verifier(project_id: str) -> TokenVerifier:
    def verify(token: str) -> Dict:
        return id_token.verify_firebase_token(token, GoogleRequest(), audience=project_id)
    return verify


class FirebaseTokenStrategy:
    """``Authorization: Bearer <Firebase ID token>``; first sign-in creates the user."""

    def __init__(self, store: Store, project_id: Optional[str], verifier: Optional[TokenVerifier] = None) -> None:
        self.store = store
        self.project_id = project_id
        self.verifier = verifier or (firebase_verifier(project_id) if project_id else None)

    def authenticate(self, request: Request) -> Optional[User]:
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return None
        if self.verifier is None:
            raise HTTPException(status_code=500, detail="FIREBASE_PROJECT_ID not configured")
        token = auth.split(" ", 1)[1]
        try:
            info = self.verifier(token)
        except (ValueError, GoogleAuthError) as exc:
            logger.info("rejected bearer token: %s", exc)
            raise HTTPException(status_code=401, detail="Invalid Firebase token")

        email = info.get("email")
        if not email:
            raise HTTPException(status_code=401, detail="Token missing email")

        def unit(session: Session) -> User:
            user = session.exec(select(User).where(User.email == email)).first()
            if not user:
                user = User(
                    name=info.get("name") or "New User",
                    email=email,
                    phone=info.get("phone_number") or "",
                    role=UserRole.PASSENGER,
                )
                session.add(user)
                logger.info("created user %s for %s", user.id, email)
            return user

        try:
            return self.store.run_transaction(unit)
        except IntegrityError:
            # a parallel first sign-in inserted the same email; use its row
            logger.info("user for %s created concurrently, re-reading", email)
            return self.store.run_transaction(unit)


class DevHeaderStrategy:
    """``X-User-Id: <id>`` for local development. Off unless configured."""

    header = "X-User-Id"

    def __init__(self, store: Store) -> None:
        self.store = store

    def authenticate(self, request: Request) -> Optional[User]:
        uid = request.headers.get(self.header)
        if not uid:
            return None
        user = self.store.read(lambda s: s.get(User, uid.strip()))
        if not user:
            raise HTTPException(401, "Unknown X-User-Id")
        return user


class Authenticator:
    def __init__(self, strategies: List[Strategy]) -> None:
        self.strategies = strategies

    def identify(self, request: Request) -> Optional[Identity]:
        for strategy in self.strategies:
            user = strategy.authenticate(request)
            if user is None:
                continue
            if user.status == AccountStatus.BANNED:
                raise HTTPException(403, "Account suspended")
            return Identity.of(user)
        return None


def build_authenticator(
    store: Store,
    project_id: Optional[str] = None,
    allow_dev_header: Optional[bool] = None,
    verifier: Optional[TokenVerifier] = None,
) -> Authenticator:
    if allow_dev_header is None:
        allow_dev_header = config.AUTH_ALLOW_DEV_HEADER
    strategies: List[Strategy] = [
        FirebaseTokenStrategy(store, project_id or config.FIREBASE_PROJECT_ID, verifier),
    ]
    if allow_dev_header:
        strategies.append(DevHeaderStrategy(store))
    return Authenticator(strategies)


def get_identity(request: Request) -> Optional[Identity]:
    return request.app.state.authenticator.identify(request)


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    return identity
