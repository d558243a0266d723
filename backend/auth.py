"""
Accounts, sign-in and sessions.

A ``Session`` is an explicit object handed to whatever needs the current
identity. Its lifecycle is ``init -> authenticated | anonymous -> disposed``;
listeners registered with ``on_change`` hear every state change.
"""
import logging
import secrets
import smtplib
import uuid
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import bcrypt

from . import profiles
from .db import Store, now_iso
from .errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import CollectorProfile, Identity, UserProfile

logger = logging.getLogger(__name__)

MAX_OTP_ATTEMPTS = 5
SIGN_IN_PURPOSE = 'sign_in'


class SessionState(str, Enum):
    INIT = 'init'
    AUTHENTICATED = 'authenticated'
    ANONYMOUS = 'anonymous'
    DISPOSED = 'disposed'


# ======== Password & OTP helpers ========
def hash_secret(plain: str) -> bytes:
    return bcrypt.hashpw(plain.encode('utf-8'), bcrypt.gensalt())


def check_secret(plain: str, stored: Any) -> bool:
    # Ensure stored hash is bytes for bcrypt across sqlite variants
    if stored is None:
        return False
    if isinstance(stored, memoryview):
        stored_bytes = stored.tobytes()
    elif isinstance(stored, str):
        stored_bytes = stored.encode('utf-8')
    else:
        stored_bytes = bytes(stored)
    try:
        return bcrypt.checkpw(plain.encode('utf-8'), stored_bytes)
    except ValueError:
        return False


def generate_otp_code(length: int = 6) -> str:
    return ''.join(secrets.choice('0123456789') for _ in range(length))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def store_email_otp(store: Store, email: str, purpose: str, code_plain: str, ttl_minutes: int = 10) -> None:
    expires_at = (_utcnow() + timedelta(minutes=ttl_minutes)).isoformat()
    with store.transaction() as tx:
        # Invalidate older active OTPs for this email & purpose
        tx.update('email_otps', {'consumed_at': now_iso()}, {'email': email, 'purpose': purpose, 'consumed_at': None})
        tx.insert('email_otps', {
            'email': email,
            'purpose': purpose,
            'code_hash': hash_secret(code_plain),
            'expires_at': expires_at,
            'created_at': now_iso(),
        })


def validate_and_consume_email_otp(store: Store, email: str, purpose: str, code_plain: str) -> bool:
    with store.transaction() as tx:
        rows = tx.select('email_otps', {'email': email, 'purpose': purpose}, order_by=('-id',), limit=1)
        if not rows:
            return False
        row = rows[0]
        if row['consumed_at'] is not None:
            return False
        if datetime.fromisoformat(row['expires_at']) < _utcnow():
            return False
        if int(row['attempts'] or 0) >= MAX_OTP_ATTEMPTS:
            return False
        if not check_secret(code_plain, row['code_hash']):
            tx.update('email_otps', {'attempts': int(row['attempts'] or 0) + 1}, {'id': row['id']})
            return False
        tx.update('email_otps', {'consumed_at': now_iso()}, {'id': row['id']})
        return True


def send_email_otp(email: str, purpose: str, otp_code: str, settings: Dict[str, Any]) -> None:
    """Send OTP via SMTP if configured, else log it."""
    host = settings.get('SMTP_HOST')
    if not host:
        logger.info("[DEV] OTP for %s to %s: %s", purpose, email, otp_code)
        return

    msg = EmailMessage()
    msg['Subject'] = f"Your {purpose.replace('_', ' ').title()} OTP"
    msg['From'] = settings.get('MAIL_FROM', 'no-reply@localhost')
    msg['To'] = email
    msg.set_content(
        f"Your one-time code is: {otp_code}\n\n"
        f"This code expires in {settings.get('OTP_TTL_MINUTES', 10)} minutes. "
        f"If you did not request this, you can ignore this email."
    )
    try:
        with smtplib.SMTP(host, settings.get('SMTP_PORT', 587), timeout=15) as server:
            if settings.get('SMTP_TLS', True):
                server.starttls()
            if settings.get('SMTP_USER'):
                server.login(settings['SMTP_USER'], settings.get('SMTP_PASS') or '')
            server.send_message(msg)
        logger.info("[SMTP] OTP email sent to %s for %s", email, purpose)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("[SMTP] Failed to send OTP email to %s: %s. Falling back to log.", email, e)
        logger.info("[DEV] OTP for %s to %s: %s", purpose, email, otp_code)


def _normalize_email(email: Any) -> str:
    text = str(email or '').strip().lower()
    # Minimal email format check
    if '@' not in text or '.' not in text.split('@')[-1]:
        raise ValidationError("invalid email address")
    return text


def request_sign_in_otp(store: Store, email: Any, settings: Dict[str, Any]) -> str:
    address = _normalize_email(email)
    if store.fetch_one('accounts', {'email': address}) is None:
        raise NotFoundError("no account for this email")
    code = generate_otp_code()
    store_email_otp(store, address, SIGN_IN_PURPOSE, code, settings.get('OTP_TTL_MINUTES', 10))
    send_email_otp(address, SIGN_IN_PURPOSE, code, settings)
    return code


# ======== Session ========
class Session:
    def __init__(self, store: Store):
        self.store = store
        self.state = SessionState.INIT
        self.identity: Optional[Identity] = None
        self.token: Optional[str] = None
        self._listeners: List[Callable[['Session'], None]] = []

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def on_change(self, callback: Callable[['Session'], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _set(self, state: SessionState, identity: Optional[Identity] = None, token: Optional[str] = None) -> None:
        self.state = state
        self.identity = identity
        self.token = token
        for callback in list(self._listeners):
            callback(self)

    def _check_open(self) -> None:
        if self.state == SessionState.DISPOSED:
            raise AuthError("session has been disposed")

    def _start(self, account: Dict[str, Any]) -> 'Session':
        token = secrets.token_urlsafe(32)
        self.store.insert('sessions', {
            'token': token,
            'account_id': account['id'],
            'role': account['role'],
            'created_at': now_iso(),
        })
        self._set(
            SessionState.AUTHENTICATED,
            Identity(id=account['id'], email=account['email'], role=account['role']),
            token,
        )
        return self

    def resume(self, token: Optional[str]) -> 'Session':
        """Restore an identity from a bearer token; unknown or disposed tokens leave the session anonymous."""
        self._check_open()
        row = self.store.fetch_one('sessions', {'token': token, 'disposed_at': None}) if token else None
        account = self.store.fetch_one('accounts', {'id': row['account_id']}) if row else None
        if account is None:
            self._set(SessionState.ANONYMOUS)
        else:
            self._set(
                SessionState.AUTHENTICATED,
                Identity(id=account['id'], email=account['email'], role=account['role']),
                token,
            )
        return self

    def sign_up(self, email: Any, password: str, profile: Union[UserProfile, CollectorProfile]) -> 'Session':
        self._check_open()
        address = _normalize_email(email)
        if len(password or '') < 6:
            raise ValidationError("password must be at least 6 characters")
        account = {
            'id': str(uuid.uuid4()),
            'email': address,
            'password_hash': hash_secret(password),
            'role': profile.role,
            'created_at': now_iso(),
        }
        with self.store.transaction() as tx:
            if tx.fetch_one('accounts', {'email': address}) is not None:
                raise ConflictError("email already exists")
            tx.insert('accounts', account)
            if isinstance(profile, CollectorProfile):
                tx.insert('scrappers', profiles.collector_row(account['id'], address, profile))
            else:
                tx.insert('users', profiles.user_row(account['id'], address, profile))
        logger.info("new %s account %s", profile.role, account['id'])
        return self._start(account)

    def sign_in_with_password(self, email: Any, password: str) -> 'Session':
        self._check_open()
        if not email or not password:
            raise ValidationError("email and password are required")
        account = self.store.fetch_one('accounts', {'email': str(email).strip().lower()})
        if account is None or not check_secret(password, account['password_hash']):
            raise AuthError("invalid credentials")
        return self._start(account)

    def sign_in_with_otp(self, email: Any, code: str) -> 'Session':
        self._check_open()
        address = _normalize_email(email)
        if not code or not validate_and_consume_email_otp(self.store, address, SIGN_IN_PURPOSE, str(code).strip()):
            raise AuthError("invalid or expired code")
        account = self.store.fetch_one('accounts', {'email': address})
        if account is None:
            raise AuthError("invalid or expired code")
        return self._start(account)

    def require(self, role: Optional[str] = None) -> Identity:
        self._check_open()
        if not self.is_authenticated or self.identity is None:
            raise AuthError("unauthorized")
        if role is not None and self.identity.role != role:
            raise ForbiddenError(f"only a {role} can do this")
        return self.identity

    def sign_out(self) -> None:
        """Revoke the token and dispose the session."""
        if self.token:
            self.store.update('sessions', {'disposed_at': now_iso()}, {'token': self.token, 'disposed_at': None})
        self.dispose()

    def dispose(self) -> None:
        if self.state != SessionState.DISPOSED:
            self._set(SessionState.DISPOSED)
            self._listeners.clear()
