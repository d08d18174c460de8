import os
import stat

import pytest
import requests

from docintegrity import (
    AllowAllOracle,
    CallablePermissionOracle,
    FileKeyStore,
    IdentityNotFoundError,
    InMemoryKeyStore,
    OpaPermissionOracle,
)
from docintegrity.keys import generate_identity, get_key_store
from docintegrity.permissions import get_permission_oracle

from support import identity


# ---------------------------------------------------------------- key store

def test_file_key_store_round_trip(tmp_path):
    store = FileKeyStore(tmp_path / "ids")
    alice = identity("alice")
    store.put(alice)

    loaded = store.get("alice")
    assert loaded == alice
    assert store.list_ids() == ["alice"]
    assert store.encryption_public_key("alice") == alice.encryption_public_key
    assert store.signing_key("alice") == ("rsa-sha256", alice.encryption_private_key)


@pytest.mark.skipif(os.name != "posix", reason="POSIX file modes")
def test_file_key_store_private_files_are_owner_only(tmp_path):
    store = FileKeyStore(tmp_path)
    store.put(identity("bob"))
    mode = stat.S_IMODE(os.stat(tmp_path / "bob.json").st_mode)
    assert mode == 0o600


def test_file_key_store_picks_up_replaced_keys(tmp_path):
    store = FileKeyStore(tmp_path)
    store.put(identity("alice"))
    assert store.get("alice").signing_algorithm == "rsa-sha256"

    replacement = identity("alice", "ed25519")
    store.put(replacement)
    assert store.get("alice").signing_algorithm == "ed25519"


def test_unknown_identity(tmp_path):
    with pytest.raises(IdentityNotFoundError):
        FileKeyStore(tmp_path).get("nobody")
    with pytest.raises(IdentityNotFoundError):
        InMemoryKeyStore().get("nobody")


def test_path_traversal_identity_rejected(tmp_path):
    with pytest.raises(IdentityNotFoundError):
        FileKeyStore(tmp_path).get("../etc/passwd")
    with pytest.raises(ValueError):
        generate_identity("../evil")


def test_public_view_strips_private_material():
    view = identity("carol").public_view()
    assert view.encryption_private_key is None
    assert view.signing_private_key is None
    assert view.encryption_public_key == identity("carol").encryption_public_key

    store = InMemoryKeyStore([view])
    with pytest.raises(IdentityNotFoundError):
        store.encryption_private_key("carol")
    with pytest.raises(IdentityNotFoundError):
        store.signing_key("carol")


def test_ed25519_identity_has_separate_signing_pair():
    dave = identity("dave", "ed25519")
    assert dave.signing_algorithm == "ed25519"
    assert dave.signing_public_key != dave.encryption_public_key
    assert dave.encryption_public_key.startswith("-----BEGIN PUBLIC KEY-----")


def test_key_store_factory(tmp_path):
    assert isinstance(get_key_store("memory"), InMemoryKeyStore)
    assert isinstance(get_key_store("file", tmp_path), FileKeyStore)
    with pytest.raises(ValueError):
        get_key_store("vault")


# ---------------------------------------------------------------- oracles

def test_callable_oracle_requires_explicit_true():
    assert CallablePermissionOracle(lambda a, o, d: True).allows("alice", "edit", "d1")
    assert not CallablePermissionOracle(lambda a, o, d: None).allows("alice", "edit", "d1")
    assert not CallablePermissionOracle(lambda a, o, d: "yes").allows("alice", "edit", "d1")


class FakeResponse:
    def __init__(self, body=None, status=200, bad_json=False):
        self._body = body
        self.status_code = status
        self._bad_json = bad_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._bad_json:
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json, timeout))
        if self.error:
            raise self.error
        return self.response


def test_opa_oracle_allows_on_true_result():
    session = FakeSession(FakeResponse({"result": True}))
    oracle = OpaPermissionOracle("http://opa/v1/data/docs/allow", timeout=2, session=session)

    assert oracle.allows("alice", "share", "doc-1")
    url, payload, timeout = session.calls[0]
    assert url == "http://opa/v1/data/docs/allow"
    assert payload["input"]["actor"] == "alice"
    assert payload["input"]["operation"] == "share"
    assert payload["input"]["document_id"] == "doc-1"
    assert timeout == 2


@pytest.mark.parametrize("session", [
    FakeSession(FakeResponse({"result": False})),
    FakeSession(FakeResponse({"result": "true"})),
    FakeSession(FakeResponse({})),
    FakeSession(FakeResponse(["not", "a", "dict"])),
    FakeSession(FakeResponse({"result": True}, status=500)),
    FakeSession(FakeResponse(bad_json=True)),
    FakeSession(error=requests.ConnectionError("down")),
    FakeSession(error=requests.Timeout("slow")),
])
def test_opa_oracle_fails_closed(session):
    assert not OpaPermissionOracle("http://opa", session=session).allows("alice", "edit", "doc-1")


def test_opa_oracle_requires_url():
    with pytest.raises(ValueError):
        OpaPermissionOracle("")


def test_oracle_factory():
    assert isinstance(get_permission_oracle("none"), AllowAllOracle)
    with pytest.raises(ValueError):
        get_permission_oracle("ldap")
