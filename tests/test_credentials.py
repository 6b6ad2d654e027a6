import base64
import hashlib
import hmac

import pytest

from couch_gateway.credentials import CredentialDeriver, derive, user_doc_id
from couch_gateway.errors import InvalidSubject


def test_example_subject():
    cred = derive("u123", "k")
    expected = hmac.new(b"k", b"u123", hashlib.sha256).hexdigest()
    assert cred.principal_name == "firebase:u123"
    assert cred.secret == expected
    assert len(cred.secret) == 64
    assert cred.basic_auth() == "Basic " + base64.b64encode(
        f"firebase:u123:{expected}".encode()).decode()


def test_deterministic():
    deriver = CredentialDeriver("k")
    assert deriver.derive("u123") == deriver.derive("u123")
    assert CredentialDeriver("k").derive("u123") == derive("u123", b"k")


def test_distinct_subjects_and_keys():
    assert derive("a", "k").secret != derive("b", "k").secret
    assert derive("a", "k").secret != derive("a", "other").secret


def test_prefix_and_doc_id():
    cred = CredentialDeriver("k", prefix="gw:").derive("u1")
    assert cred.principal_name == "gw:u1"
    assert cred.user_doc_id == "org.couchdb.user:gw:u1"
    assert user_doc_id("firebase:x") == "org.couchdb.user:firebase:x"


def test_secret_stays_out_of_repr():
    cred = derive("u123", "k")
    assert cred.secret not in repr(cred)
    assert "sekrit" not in repr(CredentialDeriver("sekrit"))


@pytest.mark.parametrize("subject", ["", "   ", None, 42, "a" * 129, "bad\nsubject", "nul\x00"])
def test_invalid_subject(subject):
    with pytest.raises(InvalidSubject) as exc_info:
        derive(subject, "k")
    assert exc_info.value.status_code == 400
    assert exc_info.value.error == "invalid_subject"


def test_empty_signing_key_rejected():
    with pytest.raises(ValueError):
        CredentialDeriver("")
