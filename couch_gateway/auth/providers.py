# couch_gateway/auth/providers.py
import abc, asyncio, logging
from datetime import datetime, timezone

import firebase_admin
import jwt
from firebase_admin import auth as firebase_auth
from firebase_admin.exceptions import FirebaseError

from ..errors import TokenExpired, TokenInvalid, VerifierUnavailable
from ..schema import Identity

log = logging.getLogger(__name__)


def _identity(payload: dict, subject_claim: str = "sub") -> Identity:
    subject = payload.get(subject_claim)
    if not isinstance(subject, str) or not subject:
        raise TokenInvalid(message="Token has no subject")
    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None
    return Identity(subject=subject, expires_at=expires_at, claims=payload)


class AuthProvider(abc.ABC):
    @abc.abstractmethod
    async def verify(self, token: str, check_revoked: bool = True) -> Identity: ...

    def _decode(self, token: str, key, **options) -> dict:
        try:
            return jwt.decode(token, key, **options)
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except jwt.PyJWTError as exc:
            log.debug("token rejected: %s", type(exc).__name__)
            raise TokenInvalid() from exc


# ───── Firebase ID tokens (default) ──────────────────────────────────
def _firebase_app(project_id: str) -> firebase_admin.App:
    name = f"couch-gateway:{project_id}"
    try:
        return firebase_admin.get_app(name)
    except ValueError:
        # credentials come from GOOGLE_APPLICATION_CREDENTIALS, loaded on first use
        return firebase_admin.initialize_app(options={"projectId": project_id}, name=name)


class FirebaseProvider(AuthProvider):
    def __init__(self, project_id: str, app: firebase_admin.App | None = None):
        if not project_id:
            raise ValueError("FIREBASE_PROJECT_ID is required for the firebase provider")
        self.project_id = project_id
        self._app = app

    @property
    def app(self) -> firebase_admin.App:
        if self._app is None:
            self._app = _firebase_app(self.project_id)
        return self._app

    async def verify(self, token: str, check_revoked: bool = True) -> Identity:
        try:
            # blocking: certificate fetch, plus a user lookup when checking revocation
            payload = await asyncio.to_thread(
                firebase_auth.verify_id_token, token,
                app=self.app, check_revoked=check_revoked,
            )
        except firebase_auth.ExpiredIdTokenError as exc:
            raise TokenExpired() from exc
        except firebase_auth.RevokedIdTokenError as exc:
            raise TokenInvalid("revoked", "Token has been revoked") from exc
        except firebase_auth.UserDisabledError as exc:
            raise TokenInvalid("disabled", "User account is disabled") from exc
        except (firebase_auth.InvalidIdTokenError, firebase_auth.UserNotFoundError, ValueError) as exc:
            log.debug("token rejected: %s", type(exc).__name__)
            raise TokenInvalid() from exc
        except FirebaseError as exc:
            log.warning("firebase verification unavailable: %s", type(exc).__name__)
            raise VerifierUnavailable() from exc
        return _identity(payload)


# ───── Self-issued / third-party JWTs ────────────────────────────────
class JWTProvider(AuthProvider):
    def __init__(self, key: str, algorithms: list[str],
                 audience: str | None = None, issuer: str | None = None):
        if not key:
            raise ValueError("JWT_KEY is required for the jwt provider")
        self._key = key
        self.algorithms = algorithms
        self.audience = audience
        self.issuer = issuer

    async def verify(self, token: str, check_revoked: bool = True) -> Identity:
        options = {"require": ["exp", "sub"]}
        if self.audience is None:
            options["verify_aud"] = False
        payload = self._decode(
            token, self._key,
            algorithms=self.algorithms,
            audience=self.audience,
            issuer=self.issuer,
            options=options,
        )
        return _identity(payload)


# ───── No-auth / local dev provider ──────────────────────────────────
class LocalProvider(AuthProvider):
    def __init__(self, subject: str = "local-dev"):
        self.subject = subject

    async def verify(self, token: str, check_revoked: bool = True) -> Identity:
        # allow *any* bearer token
        return Identity(subject=self.subject)
