# couch_gateway/app.py
import json
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth.providers import AuthProvider
from .auth.registry import get_provider
from .config import Settings, get_settings
from .couch import CouchClient, CouchError, CouchUnavailable
from .credentials import CredentialDeriver
from .documents import save_document
from .errors import InvalidDocument, install_error_handlers
from .middleware.gate import Admitted, RequestGate
from .provisioning import ProvisioningCoordinator
from .proxy import ProxyGateway
from .schema import DbUrl, SaveResult, StatusInfo

log = logging.getLogger(__name__)

# the gate answers 405 itself, so the route accepts everything
_ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


async def check_couchdb(couch: CouchClient) -> None:
    """Refuse to start when the backing store cannot be reached."""
    try:
        await couch.ping()
    except (CouchError, CouchUnavailable) as exc:
        log.critical("failed to connect to CouchDB: %s", exc)
        raise RuntimeError("CouchDB is unreachable") from exc
    log.info("CouchDB connection verified")


def create_app(
    settings: Settings | None = None,
    couch: CouchClient | None = None,
    provider: AuthProvider | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    # one key, one admin client, one proxy session for the whole process
    deriver = CredentialDeriver(settings.signing_key.get_secret_value(), settings.principal_prefix)
    couch = couch or CouchClient.from_settings(settings)
    provider = provider or get_provider(settings)
    provisioner = ProvisioningCoordinator(couch, deriver)
    gate = RequestGate(provider, provisioner)
    proxy = ProxyGateway.from_settings(settings, deriver)

    # ----------------------------------------------------------------------- #
    # Lifespan hook: verify CouchDB *then* make sure the shared db exists
    # ----------------------------------------------------------------------- #
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await check_couchdb(couch)                              # 1️⃣ fail fast
        await couch.ensure_database(settings.shared_db_name)    # 2️⃣ shared db
        yield
        await proxy.close()                                     # 3️⃣ release sessions
        await couch.close()

    app = FastAPI(title="Couch Sync Gateway", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    app.state.settings = settings
    app.state.couch = couch
    app.state.gate = gate
    app.state.proxy = proxy

    router = APIRouter()

    @router.get("/status", response_model=StatusInfo)
    async def couchdb_status():
        try:
            dbs = await couch.list_databases()
        except (CouchError, CouchUnavailable) as exc:
            log.warning("status check failed: %s", type(exc).__name__)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"status": "Error", "message": "CouchDB connection failed"},
            )
        return StatusInfo(status="OK", couchdb="Connected" if dbs else "No DBs found")

    @router.post("/save-data", response_model=SaveResult)
    async def save_data(request: Request):
        verdict = await gate.admit(request)
        if not isinstance(verdict, Admitted):
            return verdict.response()
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidDocument() from exc
        return await save_document(couch, settings.shared_db_name, verdict.identity, payload)

    @router.get("/get-db-url", response_model=DbUrl)
    async def get_db_url(request: Request):
        verdict = await gate.admit(request)
        if not isinstance(verdict, Admitted):
            return verdict.response()
        url = settings.public_sync_url or (
            str(request.base_url).rstrip("/") + settings.api_prefix.rstrip("/") + "/sync"
        )
        return DbUrl(dbUrl=url)

    # ---------- PouchDB <-> CouchDB sync proxy ---------- #
    @router.api_route("/sync", methods=_ANY_METHOD, include_in_schema=False)
    @router.api_route("/sync/{path:path}", methods=_ANY_METHOD, include_in_schema=False)
    async def sync_proxy(request: Request):
        verdict = await gate.admit(request, sync=True)
        if not isinstance(verdict, Admitted):
            return verdict.response()
        return await proxy.forward(request, verdict.identity)

    app.include_router(router, prefix=settings.api_prefix.rstrip("/"))
    return app
