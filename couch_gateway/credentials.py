# couch_gateway/credentials.py
"""
Stateless per-user CouchDB credentials.

The password of every gateway-managed principal is an HMAC of the subject
under one server-wide key, so it can be recomputed on every request and is
never stored, cached or logged.
"""
import base64
import hashlib
import hmac
from dataclasses import dataclass, field

from .errors import InvalidSubject

DEFAULT_PREFIX = "firebase:"
USER_DOC_PREFIX = "org.couchdb.user:"
MAX_SUBJECT_LENGTH = 128    # Firebase uid limit


@dataclass(frozen=True)
class DerivedCredential:
    principal_name: str
    secret: str = field(repr=False)

    def basic_auth(self) -> str:
        raw = f"{self.principal_name}:{self.secret}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    @property
    def user_doc_id(self) -> str:
        return user_doc_id(self.principal_name)


def user_doc_id(principal_name: str) -> str:
    return USER_DOC_PREFIX + principal_name


def validate_subject(subject) -> str:
    if not isinstance(subject, str) or not subject.strip():
        raise InvalidSubject()
    if len(subject) > MAX_SUBJECT_LENGTH:
        raise InvalidSubject("Identity subject is too long")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in subject):
        raise InvalidSubject()
    return subject


def derive(subject: str, signing_key: str | bytes, prefix: str = DEFAULT_PREFIX) -> DerivedCredential:
    """Map ``subject`` to its principal name and HMAC-SHA256 password (hex)."""
    validate_subject(subject)
    key = signing_key.encode("utf-8") if isinstance(signing_key, str) else signing_key
    secret = hmac.new(key, subject.encode("utf-8"), hashlib.sha256).hexdigest()
    return DerivedCredential(principal_name=prefix + subject, secret=secret)


class CredentialDeriver:
    """Binds the process-wide signing key; read-only after construction."""

    def __init__(self, signing_key: str | bytes, prefix: str = DEFAULT_PREFIX):
        if not signing_key:
            raise ValueError("signing key must not be empty")
        self._key = signing_key
        self.prefix = prefix

    def __repr__(self) -> str:
        return f"CredentialDeriver(prefix={self.prefix!r})"

    def derive(self, subject: str) -> DerivedCredential:
        return derive(subject, self._key, self.prefix)
