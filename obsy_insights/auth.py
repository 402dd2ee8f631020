"""
auth.py - Accounts and bearer-token authentication

This module is the identity provider for the insight service:
1. Signup:
   - Creates an account with username and password (bcrypt via Passlib).
   - Stores the user document in Firestore with a default subscription tier.
2. Login:
   - Verifies the password and issues an opaque bearer token.
   - Tokens live in Redis with a TTL, so expiry needs no extra bookkeeping.
3. Token verification:
   - `TokenAuthenticator.resolve` turns an `Authorization: Bearer <token>`
     header into a user id, or an `auth` stage failure.

Security notes:
- Passwords are never stored in plain text.
- Tokens are random (`secrets.token_urlsafe`) and carry no user data.
- Every verification failure is reported as the same 401, whatever the cause.
"""

import logging
import os
import secrets
from datetime import datetime
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Form, HTTPException
from passlib.context import CryptContext

from .gcp_clients import get_firestore_client, shared_redis_client
from .models import PipelineError, Stage

# Suppress harmless bcrypt warnings from Passlib
logging.getLogger("passlib.handlers.bcrypt").setLevel(logging.ERROR)

_logger = logging.getLogger(__name__)

router = APIRouter()

FIRESTORE_USERS_COLLECTION = "users"
DEFAULT_TIER = "free"
TOKEN_KEY_PREFIX = "auth_token:"
AUTH_TOKEN_TTL_MINUTES = int(os.environ.get("AUTH_TOKEN_TTL_MINUTES", "1440"))
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    """Return True if the password matches its stored hash."""
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password):
    return pwd_context.hash(password)


def parse_bearer(header: Optional[str]) -> Tuple[Optional[str], Optional[PipelineError]]:
    """
    Extract the token from an Authorization header.

    Returns:
        (token, None) on success, (None, error) when the header is missing
        or is not a non-empty Bearer credential.
    """
    if header is None or not header.strip():
        return None, PipelineError.at(Stage.AUTH, "Missing authorization header")
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None, PipelineError.at(Stage.AUTH, "Invalid bearer token")
    return token.strip(), None


class TokenAuthenticator:
    """Resolves bearer tokens issued by /login to user ids."""

    def __init__(self, redis_client):
        self.redis = redis_client

    def issue(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self.redis.set(TOKEN_KEY_PREFIX + token, user_id, ex=AUTH_TOKEN_TTL_MINUTES * 60)
        return token

    def resolve(self, header: Optional[str]) -> Tuple[Optional[str], Optional[PipelineError]]:
        token, error = parse_bearer(header)
        if error:
            return None, error
        if self.redis is None:
            _logger.error("Token verification unavailable: Redis client not available.")
            return None, PipelineError.at(Stage.AUTH, "Invalid or expired token")
        try:
            user_id = self.redis.get(TOKEN_KEY_PREFIX + token)
        except Exception as e:
            _logger.error("Token lookup failed: %s", e)
            return None, PipelineError.at(Stage.AUTH, "Invalid or expired token")
        if not user_id:
            return None, PipelineError.at(Stage.AUTH, "Invalid or expired token")
        return user_id, None


def _user_doc(client, username: str):
    return client.collection(FIRESTORE_USERS_COLLECTION).document(username)


def _check_new_password(username: str, password: str, confirm_password: str) -> None:
    if password != confirm_password:
        _logger.warning("Signup rejected for '%s': confirmation mismatch", username)
        raise HTTPException(status_code=400, detail="Passwords do not match.")
    if len(password) < MIN_PASSWORD_LENGTH:
        _logger.warning("Signup rejected for '%s': password under %d chars", username, MIN_PASSWORD_LENGTH)
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.",
        )


@router.post("/signup")
async def signup(
    username: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    client=Depends(get_firestore_client),
):
    """
    Create an account on the default tier.

    The tier is what the quota ledger reads later, so every new user document
    carries one from the start.
    """
    # Password rules first, before touching Firestore
    _check_new_password(username, password, confirm_password)
    # Firestore client injected by Depends; None means no connection
    if client is None:
        _logger.error("Signup for '%s' aborted: Firestore unavailable", username)
        raise HTTPException(status_code=500, detail="Account store unavailable.")

    try:
        # Usernames are document ids, so one lookup decides uniqueness
        doc_ref = _user_doc(client, username)
        if doc_ref.get().exists:
            _logger.info("Signup rejected: '%s' is taken", username)
            raise HTTPException(status_code=400, detail="Username already exists.")
        # Store the hash only, with the tier the quota ledger reads
        doc_ref.set({
            "username": username,
            "hashed_password": hash_password(password),
            "subscription_tier": DEFAULT_TIER,
            "created_at": datetime.utcnow().isoformat() + "Z",
        })
    except HTTPException:
        raise
    except Exception as e:
        _logger.exception("Signup for '%s' failed: %s", username, e)
        raise HTTPException(status_code=500, detail="Signup failed.")

    _logger.info("Account created: %s (tier=%s)", username, DEFAULT_TIER)
    return {"status": "success", "user_id": username, "subscription_tier": DEFAULT_TIER}


@router.post("/login")
async def login(
    username: str = Form(...),
    password: str = Form(...),
    client=Depends(get_firestore_client),
    redis_client=Depends(shared_redis_client),
):
    """Exchange username and password for a bearer token."""
    # Both stores are needed: users in Firestore, tokens in Redis
    if client is None:
        _logger.error("Login for '%s' aborted: Firestore unavailable", username)
        raise HTTPException(status_code=500, detail="Account store unavailable.")
    if redis_client is None:
        _logger.error("Login for '%s' aborted: token store unavailable", username)
        raise HTTPException(status_code=503, detail="Token service unavailable.")

    try:
        # Same 401 for unknown user and wrong password
        snapshot = _user_doc(client, username).get()
        stored_hash = (snapshot.to_dict() or {}).get("hashed_password") if snapshot.exists else None
        if not stored_hash or not verify_password(password, stored_hash):
            _logger.info("Login refused for '%s'", username)
            raise HTTPException(status_code=401, detail="Invalid username or password.")
        # Opaque token, expires on its own via the Redis TTL
        token = TokenAuthenticator(redis_client).issue(snapshot.id)
    except HTTPException:
        raise
    except Exception as e:
        _logger.exception("Login for '%s' failed: %s", username, e)
        raise HTTPException(status_code=500, detail="Login failed.")

    _logger.info("Issued token for %s", snapshot.id)
    return {
        "status": "success",
        "user_id": snapshot.id,
        "access_token": token,
        "token_type": "bearer",
        "expires_in": AUTH_TOKEN_TTL_MINUTES * 60,
    }
