# couch_gateway/config.py
from functools import lru_cache
from typing import Optional
from urllib.parse import unquote, urlsplit, urlunsplit

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # backing store (may embed admin "user:password@")
    couchdb_url: str = "http://localhost:5984"
    couchdb_admin_user: Optional[str] = None
    couchdb_admin_password: Optional[SecretStr] = None
    shared_db_name: str = "users_data"
    principal_prefix: str = "firebase:"

    # process-wide key every per-user password is derived from
    signing_key: SecretStr = Field(
        ..., validation_alias=AliasChoices("signing_key", "firebase_secret_key")
    )

    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 60.0

    # identity provider: firebase | jwt | local
    auth_provider: str = "firebase"
    firebase_project_id: Optional[str] = None
    jwt_key: Optional[SecretStr] = None
    jwt_algorithms: list[str] = ["HS256"]
    jwt_audience: Optional[str] = None
    jwt_issuer: Optional[str] = None
    local_subject: str = "local-dev"

    api_prefix: str = "/api"
    public_sync_url: Optional[str] = None
    cors_origins: list[str] = ["*"]

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    @property
    def couchdb_base_url(self) -> str:
        """COUCHDB_URL with any userinfo stripped."""
        parts = urlsplit(self.couchdb_url)
        netloc = parts.hostname or ""
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path.rstrip("/"), "", ""))

    @property
    def couchdb_admin(self) -> tuple[str, str] | None:
        """Admin credentials: explicit settings first, then URL userinfo."""
        if self.couchdb_admin_user:
            password = self.couchdb_admin_password
            return self.couchdb_admin_user, password.get_secret_value() if password else ""
        parts = urlsplit(self.couchdb_url)
        if parts.username:
            return unquote(parts.username), unquote(parts.password or "")
        return None


@lru_cache
def get_settings() -> Settings:
    return Settings()
