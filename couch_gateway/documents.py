# couch_gateway/documents.py
"""Manual single-document save into the shared, owner-tagged database."""
import logging
from typing import Any

from .couch import CouchClient, CouchError, CouchUnavailable
from .errors import InvalidDocument, SaveFailed
from .schema import Identity

log = logging.getLogger(__name__)

OWNER_FIELD = "userId"


def tag_owner(payload: Any, subject: str) -> dict:
    """Copy of ``payload`` carrying exactly one owner tag: the caller."""
    if not isinstance(payload, dict):
        raise InvalidDocument()
    return {**payload, OWNER_FIELD: subject}


async def save_document(couch: CouchClient, db_name: str, identity: Identity, payload: Any) -> dict:
    doc = tag_owner(payload, identity.subject)
    try:
        await couch.ensure_database(db_name)
        result = await couch.insert(db_name, doc)
    except (CouchError, CouchUnavailable) as exc:
        log.error("save failed subject=%s: %s", identity.subject, type(exc).__name__)
        raise SaveFailed() from exc
    log.debug("saved %s for subject=%s", result.get("id"), identity.subject)
    return result
