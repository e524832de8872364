"""
Firebase token verification and role checks

Bearer tokens are Firebase ID tokens. A verified token yields its claims; the
email claim identifies the user, and the stored users document carries the
role used for admin-only routes.
"""
import base64
import json
import logging
from typing import Optional

import firebase_admin
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from pymongo.database import Database

from database import USERS, get_db
from errors import Forbidden, Unauthorized, UserNotFound
from schemas import Role

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def firebase_ready() -> bool:
    try:
        firebase_admin.get_app()
    except ValueError:
        return False
    return True


def init_firebase(service_key: str) -> bool:
    """Initialise the default Firebase app from a base64 encoded service account."""
    if firebase_ready():
        return True
    if not service_key:
        logger.warning("FB_SERVICE_KEY not set, bearer tokens will be rejected")
        return False
    service_account = json.loads(base64.b64decode(service_key).decode("utf-8"))
    firebase_admin.initialize_app(credentials.Certificate(service_account))
    logger.info("Firebase app initialised")
    return True


class FirebaseVerifier:
    def verify(self, token: str) -> dict:
        if not firebase_ready():
            raise Unauthorized("Unauthorized access! Invalid token.")
        try:
            return firebase_auth.verify_id_token(token)
        except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError,
                firebase_auth.RevokedIdTokenError, firebase_auth.CertificateFetchError) as e:
            logger.info(f"Firebase token verification failed: {e}")
            raise Unauthorized("Unauthorized access! Invalid token.") from e


verifier = FirebaseVerifier()


def get_verifier() -> FirebaseVerifier:
    return verifier


def current_claims(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    token_verifier: FirebaseVerifier = Depends(get_verifier),
) -> dict:
    if creds is None or creds.scheme.lower() != "bearer" or not creds.credentials:
        raise Unauthorized("Unauthorized access! Missing or invalid authorization header.")
    return token_verifier.verify(creds.credentials)


def verified_email(claims: dict = Depends(current_claims)) -> str:
    email = claims.get("email")
    if not email:
        raise Forbidden("Forbidden access! Email not found in token.")
    return email


def lookup_role(db: Database, email: str) -> Optional[Role]:
    # only plain strings, never query operators
    if not isinstance(email, str) or not email:
        return None
    user = db[USERS].find_one({"email": email}, {"role": 1})
    if not user:
        return None
    return Role.ADMIN if user.get("role") == Role.ADMIN.value else Role.USER


def authorize(db: Database, email: str) -> Role:
    """Resolve the stored role of a verified email. Looked up on every call."""
    role = lookup_role(db, email)
    if role is None:
        raise UserNotFound()
    return role


def is_admin(db: Database, email: str) -> bool:
    return lookup_role(db, email) == Role.ADMIN


def require_admin(email: str = Depends(verified_email), db: Database = Depends(get_db)) -> str:
    if authorize(db, email) != Role.ADMIN:
        raise Forbidden("Forbidden access! Admin privileges required.")
    return email


def require_self_or_admin(db: Database, caller: str, email: str) -> None:
    if caller != email and not is_admin(db, caller):
        raise Forbidden("Forbidden access! You can only access your own data.")
