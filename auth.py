"""
Authentication

Three sign-in paths issue the same session JWT: anonymous, custom token
(signed by an external issuer with CUSTOM_TOKEN_SECRET) and email/password
accounts. Roles live on the user profile, which is created lazily with the
"user" role; nothing reachable by the profile owner can change it.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

import database
import notices
import settings
from database import StoreError
from notices import Notice
from schemas import Account, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Per-IP rate limiting for credential sign-in
RATE_LIMIT_WINDOW_SEC = 60 * 15  # 15 minutes
RATE_LIMIT_MAX_ATTEMPTS = 20

INVALID_CREDENTIALS = "Incorrect credentials. Check your email and password."
AUTH_MESSAGES = {
    "user-not-found": INVALID_CREDENTIALS,
    "wrong-password": INVALID_CREDENTIALS,
    "invalid-credential": INVALID_CREDENTIALS,
    "invalid-email": "Invalid email format.",
    "user-disabled": "This user has been disabled.",
    "too-many-requests": "Too many failed attempts. Please try again later.",
    "invalid-custom-token": "Token authentication error. Some features may be limited.",
    "invalid-token": "Your session is invalid or has expired. Please sign in again.",
    "not-admin": "Access denied: this user is not an administrator.",
}


class AuthError(Exception):
    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        self.message = message or AUTH_MESSAGES.get(code, f"Authentication error: {code}")
        super().__init__(self.message)


class Identity(BaseModel):
    uid: str
    anonymous: bool = False
    email: Optional[str] = None
    token_id: Optional[str] = None
    expires_at: Optional[float] = None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(identity: Identity, expires_minutes: Optional[int] = None) -> str:
    expires_minutes = expires_minutes or settings.TOKEN_EXPIRE_MIN
    to_encode = {
        "sub": identity.uid,
        "anon": identity.anonymous,
        "email": identity.email,
        "jti": identity.token_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


AuthListener = Callable[[str, Optional[Identity]], None]


class AuthProvider:
    """Issues and verifies session tokens and tells listeners about sign-in/out."""

    def __init__(self):
        self._listeners: List[AuthListener] = []
        # revoked token ids mapped to their expiry timestamp
        self._revoked: Dict[str, float] = {}
        self._rate_store: Dict[str, List[float]] = {}

    def on_auth_state_changed(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, uid: str, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            listener(uid, identity)

    def check_rate_limit(self, ip: str) -> None:
        now = datetime.now().timestamp()
        bucket = [t for t in self._rate_store.get(ip, []) if now - t <= RATE_LIMIT_WINDOW_SEC]
        if len(bucket) >= RATE_LIMIT_MAX_ATTEMPTS:
            raise AuthError("too-many-requests")
        bucket.append(now)
        self._rate_store[ip] = bucket

    def _issue(self, uid: str, anonymous: bool = False, email: Optional[str] = None) -> Tuple[str, Identity]:
        identity = Identity(uid=uid, anonymous=anonymous, email=email, token_id=uuid.uuid4().hex)
        token = create_access_token(identity)
        self._emit(uid, identity)
        return token, identity

    def sign_in_anonymously(self) -> Tuple[str, Identity]:
        return self._issue(uuid.uuid4().hex, anonymous=True)

    def sign_in_with_custom_token(self, custom_token: str) -> Tuple[str, Identity]:
        try:
            claims = jwt.decode(custom_token, settings.CUSTOM_TOKEN_SECRET, algorithms=[settings.JWT_ALG])
        except JWTError:
            raise AuthError("invalid-custom-token")
        uid = claims.get("uid") or claims.get("sub")
        if not uid:
            raise AuthError("invalid-custom-token")
        return self._issue(str(uid), email=claims.get("email"))

    def sign_in_with_email_and_password(self, email: str, password: str, ip: str = "unknown") -> Tuple[str, Identity]:
        self.check_rate_limit(ip)
        try:
            email = validate_email(email, check_deliverability=False).normalized
        except EmailNotValidError:
            raise AuthError("invalid-email")
        accounts = database.get_documents("account", {"email": email}, limit=1)
        if not accounts:
            raise AuthError("user-not-found")
        account = accounts[0]
        if not verify_password(password, account.get("password_hash", "")):
            raise AuthError("wrong-password")
        if not account.get("is_active", True):
            raise AuthError("user-disabled")
        return self._issue(account["id"], email=email)

    def verify(self, token: str) -> Identity:
        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
        except JWTError:
            raise AuthError("invalid-token")
        uid = payload.get("sub")
        if uid is None or payload.get("jti") in self._revoked:
            raise AuthError("invalid-token")
        return Identity(uid=uid, anonymous=bool(payload.get("anon")), email=payload.get("email"),
                        token_id=payload.get("jti"), expires_at=payload.get("exp"))

    def sign_out(self, token: str) -> Identity:
        identity = self.verify(token)
        now = datetime.now(timezone.utc).timestamp()
        self._revoked = {jti: exp for jti, exp in self._revoked.items() if exp > now}
        if identity.token_id:
            self._revoked[identity.token_id] = identity.expires_at or now + settings.TOKEN_EXPIRE_MIN * 60
        self._emit(identity.uid, None)
        return identity


# ---------- Accounts & profiles ----------

def create_account(email: str, password: str, role: str = "user") -> str:
    email = validate_email(email, check_deliverability=False).normalized
    account = Account(email=email, password_hash=hash_password(password))
    uid = database.create_document("account", account)
    database.create_document("user", User(role=role), doc_id=uid)
    return uid


def set_role(uid: str, role: str) -> None:
    if not database.update_document("user", uid, {"role": role}):
        database.create_document("user", User(role=role), doc_id=uid)


def seed_admin() -> Optional[str]:
    """Create (or promote) the admin account named by ADMIN_EMAIL / ADMIN_PASSWORD."""
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD and settings.backend_configured()):
        return None
    email = validate_email(settings.ADMIN_EMAIL, check_deliverability=False).normalized
    existing = database.get_documents("account", {"email": email}, limit=1)
    if existing:
        uid = existing[0]["id"]
        set_role(uid, "admin")
    else:
        uid = create_account(email, settings.ADMIN_PASSWORD, role="admin")
    logger.info("Admin account ready: %s", email)
    return uid


def ensure_profile(uid: str) -> Tuple[dict, List[Notice]]:
    """
    Load the profile for ``uid``, creating it with the "user" role on first use.

    Store failures never leave the caller without a profile: a local
    ``{"id", "role": "user"}`` fallback is returned together with a notice.
    """
    fallback = {"id": uid, "role": "user"}
    try:
        profile = database.get_document("user", uid)
        if profile is not None:
            return profile, []
        database.create_document("user", User(role="user"), doc_id=uid)
        return database.get_document("user", uid) or fallback, []
    except StoreError as exc:
        logger.warning("Profile for %s could not be loaded or created: %s", uid, exc.message)
        if exc.code == StoreError.PERMISSION_DENIED:
            return fallback, [notices.error(
                "Permission error loading/creating the profile. Check the database access rules.", 10000)]
        if exc.code == StoreError.UNKNOWN:
            # a concurrent request may have created it first
            try:
                profile = database.get_document("user", uid)
            except StoreError:
                profile = None
            if profile is not None:
                return profile, []
        return fallback, [notices.warning(
            "Authentication sync error. Please reload the page or try again.", 7000)]


def profile_role(uid: str) -> str:
    profile = database.get_document("user", uid)
    return (profile or {}).get("role", "user")
