# couch_gateway/proxy.py
"""
Per-user reverse proxy to the shared CouchDB database.

Request and response bodies are streamed, never buffered.  The client's
Authorization header is replaced by Basic credentials derived from the
authenticated subject, and the Host header follows the target URL.
"""
import asyncio
import logging
from urllib.parse import quote, unquote

import aiohttp
from fastapi import Request
from fastapi.responses import Response, StreamingResponse
from multidict import CIMultiDict
from yarl import URL

from .config import Settings
from .credentials import CredentialDeriver
from .errors import AuthError, PathNotProxied, ProxyUpstreamError
from .schema import Identity

log = logging.getLogger(__name__)

HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade",
})
# replaced by the proxy, never forwarded from the client
_REQUEST_SKIP = HOP_BY_HOP | {"host", "authorization", "expect"}
# let the client's own headers through untouched
_NO_AUTO_HEADERS = ("User-Agent", "Accept", "Accept-Encoding", "Content-Type")


class ProxyGateway:
    def __init__(
        self,
        target: str,
        db_name: str,
        mount_path: str,
        deriver: CredentialDeriver,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
    ):
        self.target = URL(target.rstrip("/"))
        self.db_path = self.target.raw_path.rstrip("/") + "/" + quote(db_name, safe="")
        self.mount_path = mount_path.rstrip("/")
        self.deriver = deriver
        # no total deadline: _changes feeds stay open as long as data keeps flowing
        self._timeout = aiohttp.ClientTimeout(
            total=None, connect=None,
            sock_connect=connect_timeout, sock_read=read_timeout,
        )
        self._session: aiohttp.ClientSession | None = None

    @classmethod
    def from_settings(cls, settings: Settings, deriver: CredentialDeriver) -> "ProxyGateway":
        return cls(
            settings.couchdb_base_url,
            settings.shared_db_name,
            settings.api_prefix.rstrip("/") + "/sync",
            deriver,
            connect_timeout=settings.upstream_connect_timeout,
            read_timeout=settings.upstream_read_timeout,
        )

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                auto_decompress=False,
                # AuthSession cookies must never be shared between users
                cookie_jar=aiohttp.DummyCookieJar(),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------ #
    # request rewriting
    # ------------------------------------------------------------------ #

    def rewrite(self, raw_path: str, query: str = "") -> URL:
        """``<mount>/rest`` -> ``<target>/<db>/rest``, keeping percent-encoding.

        The mount is matched segment by segment on the decoded path, the
        way the router matched it; the rest is passed on as the client
        encoded it.
        """
        segments = raw_path.split("?", 1)[0].split("/")
        mount = self.mount_path.split("/")
        if [unquote(s) for s in segments[:len(mount)]] != mount:
            raise ValueError(f"path outside {self.mount_path}: {raw_path}")
        rest = segments[len(mount):]
        path = self.db_path + ("/" + "/".join(rest) if rest else "")
        url = str(self.target.origin()) + path
        if query:
            url += "?" + query
        return URL(url, encoded=True)

    def upstream_headers(self, request: Request, authorization: str) -> CIMultiDict:
        headers = CIMultiDict()
        for name, value in request.headers.items():
            if name.lower() not in _REQUEST_SKIP:
                headers.add(name, value)
        headers["Authorization"] = authorization
        return headers

    @staticmethod
    def _raw_path(request: Request) -> str:
        raw = request.scope.get("raw_path")
        if raw:
            return raw.decode("latin-1")
        return quote(request.url.path)

    # ------------------------------------------------------------------ #
    # forwarding
    # ------------------------------------------------------------------ #

    async def forward(self, request: Request, identity: Identity | None) -> Response:
        if identity is None:
            # the gate always runs first; this only guards misuse
            return AuthError("missing").response()

        cred = self.deriver.derive(identity.subject)
        try:
            url = self.rewrite(self._raw_path(request), request.url.query)
        except ValueError:
            log.info("not proxied: %s", request.url.path)
            return PathNotProxied().response()
        headers = self.upstream_headers(request, cred.basic_auth())
        data = _body(request) if _has_body(request) else None

        try:
            upstream = await self.session.request(
                request.method, url,
                headers=headers,
                data=data,
                allow_redirects=False,
                skip_auto_headers=_NO_AUTO_HEADERS,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning("upstream failure subject=%s %s %s: %s",
                        identity.subject, request.method, request.url.path, type(exc).__name__)
            return ProxyUpstreamError().response()

        response = StreamingResponse(
            _relay(upstream, identity.subject, request.url.path),
            status_code=upstream.status,
        )
        response.raw_headers = [
            (name, value) for name, value in upstream.raw_headers
            if name.decode("latin-1").lower() not in HOP_BY_HOP
        ]
        return response


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    return request.headers.get("content-length", "0") not in ("", "0")


async def _body(request: Request):
    async for chunk in request.stream():
        if chunk:
            yield chunk


async def _relay(upstream: aiohttp.ClientResponse, subject: str, path: str):
    completed = False
    try:
        async for chunk in upstream.content.iter_any():
            yield chunk
        completed = True
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        log.warning("upstream stream aborted subject=%s %s: %s", subject, path, type(exc).__name__)
    finally:
        # client gone or upstream broke: drop the connection instead of pooling it
        if completed:
            upstream.release()
        else:
            upstream.close()
