# couch_gateway/auth/registry.py
import logging

from ..config import Settings
from .providers import AuthProvider, FirebaseProvider, JWTProvider, LocalProvider

log = logging.getLogger(__name__)


def _secret(value) -> str | None:
    return value.get_secret_value() if value is not None else None


_provider_map = {
    "firebase": lambda s: FirebaseProvider(s.firebase_project_id),
    "jwt": lambda s: JWTProvider(_secret(s.jwt_key), s.jwt_algorithms,
                                 audience=s.jwt_audience, issuer=s.jwt_issuer),
    "local": lambda s: LocalProvider(s.local_subject),
}


def get_provider(settings: Settings) -> AuthProvider:
    try:
        factory = _provider_map[settings.auth_provider]
    except KeyError:
        raise ValueError(f"unknown AUTH_PROVIDER {settings.auth_provider!r}") from None
    if settings.auth_provider == "local":
        log.warning("local auth provider enabled: every bearer token maps to %r",
                    settings.local_subject)
    return factory(settings)
