"""Shared fixtures: a fake CouchDB on a real socket and a gateway app in front of it."""
import asyncio
import base64
import socket
import time
import uuid

import httpx
import jwt
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from couch_gateway.app import create_app
from couch_gateway.config import Settings

SIGNING_KEY = "k"
JWT_SECRET = "testing_secret"
SHARED_DB = "users_data"
ADMIN_USER, ADMIN_PASSWORD = "admin", "adminpass"
ADMIN_BASIC = "Basic " + base64.b64encode(f"{ADMIN_USER}:{ADMIN_PASSWORD}".encode()).decode()


def make_token(sub="u123", secret=JWT_SECRET, expires_in=3600, **claims) -> str:
    now = int(time.time())
    payload = {"sub": sub, "iat": now, "exp": now + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class FakeCouch:
    """Just enough of CouchDB for the admin client and the sync proxy."""

    def __init__(self):
        self.url = None
        self.dbs = {"_users"}
        self.users = {}
        self.docs = {}
        self.requests = []          # everything that hit the shared db
        self.admin_auth = []
        self.user_reads = 0
        self.user_creates = 0
        self.fail_users = False

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/_all_dbs", self.all_dbs)
        app.router.add_route("*", "/_users/{doc_id}", self.user_doc)
        app.router.add_get(f"/{SHARED_DB}/_changes", self.changes)
        app.router.add_route("*", "/{db}", self.database)
        app.router.add_route("*", "/{db}/{rest:.*}", self.document)
        return app

    @property
    def hostport(self) -> str:
        return self.url.split("://", 1)[1]

    async def _record(self, request: web.Request) -> bytes:
        body = await request.read()
        self.requests.append({
            "method": request.method,
            "raw_path": request.raw_path,
            "headers": request.headers.copy(),
            "body": body,
        })
        return body

    async def all_dbs(self, request):
        self.admin_auth.append(request.headers.get("Authorization"))
        return web.json_response(sorted(self.dbs))

    async def user_doc(self, request):
        self.admin_auth.append(request.headers.get("Authorization"))
        doc_id = request.match_info["doc_id"]
        if self.fail_users:
            return web.json_response({"error": "unauthorized", "reason": "nope"}, status=401)
        if request.method == "GET":
            self.user_reads += 1
            await asyncio.sleep(0)
            if doc_id not in self.users:
                return web.json_response({"error": "not_found", "reason": "missing"}, status=404)
            return web.json_response(self.users[doc_id])
        if request.method == "PUT":
            await asyncio.sleep(0)
            if doc_id in self.users:
                return web.json_response(
                    {"error": "conflict", "reason": "Document update conflict."}, status=409)
            self.users[doc_id] = await request.json()
            self.user_creates += 1
            return web.json_response({"ok": True, "id": doc_id, "rev": "1-a"}, status=201)
        return web.json_response({"error": "method_not_allowed"}, status=405)

    async def database(self, request):
        db = request.match_info["db"]
        if db == SHARED_DB and not self._is_admin(request):
            await self._record(request)
            return web.json_response({"db_name": db})
        if request.method == "HEAD":
            return web.Response(status=200 if db in self.dbs else 404)
        if request.method == "PUT":
            if db in self.dbs:
                return web.json_response({"error": "file_exists"}, status=412)
            self.dbs.add(db)
            return web.json_response({"ok": True}, status=201)
        if request.method == "POST":
            if db not in self.dbs:
                return web.json_response({"error": "not_found", "reason": "Database does not exist."}, status=404)
            doc = await request.json()
            doc_id = doc.get("_id") or uuid.uuid4().hex
            self.docs.setdefault(db, {})[doc_id] = doc
            return web.json_response({"ok": True, "id": doc_id, "rev": "1-b"}, status=201)
        return web.json_response({"db_name": db})

    async def document(self, request):
        body = await self._record(request)
        rest = request.match_info["rest"]
        if rest == "missing":
            return web.json_response({"error": "not_found", "reason": "missing"}, status=404)
        status = 201 if request.method in ("PUT", "POST") else 200
        return web.json_response(
            {"method": request.method, "path": request.path, "body": body.decode()},
            status=status,
            headers={"X-Couch-Request-ID": "abc123"},
        )

    async def changes(self, request):
        await self._record(request)
        resp = web.StreamResponse(headers={"Content-Type": "application/json"})
        await resp.prepare(request)
        await resp.write(b'{"results":[\n')
        await resp.write(b'{"seq":"1","id":"a"},\n')
        await resp.write(b'{"seq":"2","id":"b"}\n')
        await resp.write(b'],"last_seq":"2"}\n')
        await resp.write_eof()
        return resp

    def _is_admin(self, request) -> bool:
        return request.headers.get("Authorization") == ADMIN_BASIC


@pytest_asyncio.fixture
async def fake_couch():
    couch = FakeCouch()
    server = TestServer(couch.make_app())
    await server.start_server()
    couch.url = str(server.make_url("/")).rstrip("/")
    yield couch
    await server.close()


@pytest.fixture
def dead_url():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}"


def gateway_settings(couchdb_url: str, **overrides) -> Settings:
    values = dict(
        signing_key=SIGNING_KEY,
        couchdb_url=couchdb_url,
        couchdb_admin_user=ADMIN_USER,
        couchdb_admin_password=ADMIN_PASSWORD,
        auth_provider="jwt",
        jwt_key=JWT_SECRET,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(fake_couch):
    return gateway_settings(fake_couch.url)


@pytest_asyncio.fixture
async def app(settings):
    app = create_app(settings)
    yield app
    await app.state.proxy.close()
    await app.state.couch.close()


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as c:
        yield c
