"""
Admin-side CouchDB client.

One instance is built by the app factory and handed to every component
that needs the backing store.  The aiohttp session is opened lazily so the
client can be constructed outside a running loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import aiohttp

from .config import Settings

log = logging.getLogger(__name__)

USERS_DB = "_users"


class CouchError(Exception):
    """Non-2xx answer from CouchDB."""

    def __init__(self, status: int, error: str = "", reason: str = ""):
        self.status = status
        self.error = error
        self.reason = reason
        super().__init__(f"{status} {error}: {reason}".strip())


class CouchNotFound(CouchError):
    pass


class CouchConflict(CouchError):
    pass


class CouchUnavailable(Exception):
    """Transport-level failure: refused, reset, timed out."""


_STATUS_ERRORS = {404: CouchNotFound, 409: CouchConflict}


def _doc_path(*segments: str) -> str:
    return "/" + "/".join(quote(s, safe="") for s in segments)


class CouchClient:
    def __init__(
        self,
        base_url: str,
        admin: tuple[str, str] | None = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._auth = aiohttp.BasicAuth(*admin) if admin else None
        self._timeout = aiohttp.ClientTimeout(
            total=connect_timeout + read_timeout,
            sock_connect=connect_timeout,
            sock_read=read_timeout,
        )
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CouchClient":
        return cls(
            settings.couchdb_base_url,
            admin=settings.couchdb_admin,
            connect_timeout=settings.upstream_connect_timeout,
            read_timeout=settings.upstream_read_timeout,
        )

    def __repr__(self) -> str:
        return f"CouchClient({self.base_url!r})"

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(auth=self._auth, timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------ #
    # transport
    # ------------------------------------------------------------------ #

    async def _request(self, method: str, path: str, json: Any = None) -> tuple[int, Any]:
        url = self.base_url + path
        try:
            async with self.session.request(method, url, json=json) as resp:
                body = None
                if method != "HEAD":
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = None
                if resp.status >= 400:
                    body = body if isinstance(body, dict) else {}
                    exc_cls = _STATUS_ERRORS.get(resp.status, CouchError)
                    raise exc_cls(resp.status, body.get("error", ""), body.get("reason", ""))
                return resp.status, body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CouchUnavailable(type(exc).__name__) from exc

    # ------------------------------------------------------------------ #
    # server
    # ------------------------------------------------------------------ #

    async def list_databases(self) -> list[str]:
        _, body = await self._request("GET", "/_all_dbs")
        return list(body or [])

    async def ping(self) -> None:
        """Raises CouchUnavailable / CouchError when the server is not usable."""
        await self.list_databases()

    # ------------------------------------------------------------------ #
    # databases
    # ------------------------------------------------------------------ #

    async def database_exists(self, name: str) -> bool:
        try:
            await self._request("HEAD", _doc_path(name))
        except CouchNotFound:
            return False
        return True

    async def create_database(self, name: str) -> bool:
        """True if created, False if it was already there."""
        try:
            await self._request("PUT", _doc_path(name))
        except CouchError as exc:
            if exc.status == 412:      # file_exists
                return False
            raise
        log.info("created shared database %s", name)
        return True

    async def ensure_database(self, name: str) -> None:
        if not await self.database_exists(name):
            await self.create_database(name)

    async def insert(self, db: str, doc: dict) -> dict:
        _, body = await self._request("POST", _doc_path(db), json=doc)
        return body

    # ------------------------------------------------------------------ #
    # _users
    # ------------------------------------------------------------------ #

    async def get_user(self, doc_id: str) -> dict:
        """Raises CouchNotFound when no such principal exists."""
        _, body = await self._request("GET", _doc_path(USERS_DB, doc_id))
        return body

    async def create_user(self, doc: dict) -> dict:
        """Raises CouchConflict when the principal already exists."""
        _, body = await self._request("PUT", _doc_path(USERS_DB, doc["_id"]), json=doc)
        return body
