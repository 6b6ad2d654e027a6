# couch_gateway/provisioning.py
"""
Lazy creation of the CouchDB `_users` principal behind every subject.

No in-process lock: CouchDB's own uniqueness on `_users` doc ids decides
concurrent first requests, and the loser's 409 counts as success.
"""
import logging

from .couch import CouchClient, CouchConflict, CouchError, CouchNotFound, CouchUnavailable
from .credentials import CredentialDeriver, DerivedCredential
from .errors import ProvisioningFailed

log = logging.getLogger(__name__)


def principal_doc(cred: DerivedCredential) -> dict:
    return {
        "_id": cred.user_doc_id,
        "name": cred.principal_name,
        "type": "user",
        "roles": [],
        "password": cred.secret,
    }


class ProvisioningCoordinator:
    def __init__(self, couch: CouchClient, deriver: CredentialDeriver):
        self.couch = couch
        self.deriver = deriver

    async def ensure_provisioned(self, subject: str) -> None:
        cred = self.deriver.derive(subject)

        try:
            await self.couch.get_user(cred.user_doc_id)
            log.debug("principal %s already provisioned", cred.principal_name)
            return
        except CouchNotFound:
            pass
        except (CouchError, CouchUnavailable) as exc:
            log.error("could not look up principal for subject %s: %s", subject, type(exc).__name__)
            raise ProvisioningFailed() from exc

        try:
            await self.couch.create_user(principal_doc(cred))
        except CouchConflict:
            # a concurrent first request created it
            log.debug("principal %s created concurrently", cred.principal_name)
            return
        except (CouchError, CouchUnavailable) as exc:
            log.error("could not create principal for subject %s: %s", subject, type(exc).__name__)
            raise ProvisioningFailed() from exc

        log.info("created principal %s", cred.principal_name)
