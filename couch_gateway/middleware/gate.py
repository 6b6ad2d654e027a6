# couch_gateway/middleware/gate.py
"""
Ordered admission for protected routes:

    authenticate -> method allow-list -> ensure-provisioned

Each stage short-circuits.  ``admit`` is the only way to run the sync
stages, so provisioning never runs for an unauthenticated caller or a
rejected method, and the proxy never runs before provisioning finished.
"""
import logging
from dataclasses import dataclass
from typing import Union

from fastapi import Request
from fastapi.responses import JSONResponse

from ..auth.providers import AuthProvider
from ..errors import AuthError, GatewayError, MethodNotAllowed
from ..provisioning import ProvisioningCoordinator
from ..schema import Identity

log = logging.getLogger(__name__)

SYNC_METHODS = frozenset({"GET", "PUT", "POST", "DELETE"})


@dataclass(frozen=True)
class Admitted:
    identity: Identity


@dataclass(frozen=True)
class Rejected:
    error: GatewayError

    def response(self) -> JSONResponse:
        return self.error.response()


Verdict = Union[Admitted, Rejected]


def bearer_token(request: Request) -> str:
    auth_hdr = request.headers.get("authorization")
    if not auth_hdr:
        raise AuthError("missing")
    scheme, _, token = auth_hdr.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise AuthError("malformed")
    return token


class RequestGate:
    def __init__(self, provider: AuthProvider, provisioner: ProvisioningCoordinator,
                 allowed_methods=SYNC_METHODS):
        self.provider = provider
        self.provisioner = provisioner
        self.allowed_methods = frozenset(allowed_methods)

    async def authenticate(self, request: Request) -> Identity:
        token = bearer_token(request)
        identity = await self.provider.verify(token, check_revoked=True)
        request.state.identity = identity      # stash for later stages
        return identity

    def check_method(self, request: Request) -> None:
        if request.method not in self.allowed_methods:
            raise MethodNotAllowed()

    async def admit(self, request: Request, sync: bool = False) -> Verdict:
        """Run the gate; ``sync`` adds the method and provisioning stages."""
        try:
            identity = await self.authenticate(request)
            if sync:
                self.check_method(request)
                await self.provisioner.ensure_provisioned(identity.subject)
        except GatewayError as exc:
            log.info("rejected %s %s: %s", request.method, request.url.path, exc.error)
            return Rejected(exc)
        return Admitted(identity)
