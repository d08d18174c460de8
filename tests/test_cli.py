import json
import logging

import pytest

from docintegrity import content_hash
from docintegrity.cli import main


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_hash_file(tmp_path, capsys):
    path = tmp_path / "note.txt"
    path.write_bytes(b"Hello")
    assert main(["hash", "-f", str(path)]) == 0
    assert capsys.readouterr().out.strip() == f"content_hash: {content_hash(b'Hello')}"


def test_hash_json_is_key_order_independent(tmp_path, capsys):
    a = tmp_path / "a.json"
    b = tmp_path / "b.json"
    a.write_text('{"x": 1, "y": [1, 2]}')
    b.write_text('{"y": [1, 2], "x": 1}')
    main(["hash", "--json", "-f", str(a)])
    main(["hash", "--json", "-f", str(b)])
    first, second = capsys.readouterr().out.strip().splitlines()
    assert first == second


def test_keygen_writes_identity(tmp_path, capsys):
    keystore = tmp_path / "ids"
    assert main(["keygen", "--id", "erin", "--algorithm", "ed25519", "--keystore", str(keystore)]) == 0
    public = json.loads(capsys.readouterr().out)
    assert public["id"] == "erin"
    assert "signing_private_key" not in public
    assert (keystore / "erin.json").exists()

    assert main(["keygen", "--id", "erin", "--keystore", str(keystore)]) == 1


def test_verify_chain_and_export(core, tmp_path, capsys):
    doc = core.on_create("alice", b"Hello")
    core.on_sign(doc, "bob")
    db_path = str(core.db.path)

    assert main(["verify-chain", "--db", db_path]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["valid"] is True
    assert result["entries"] == 2

    out = tmp_path / "audit.json"
    assert main(["export-audit", "--db", db_path, "-o", str(out)]) == 0
    exported = json.loads(out.read_text())
    assert [e["action"] for e in exported] == ["document.create", "document.sign"]

    assert main(["export-audit", "--db", db_path, "--actor", "bob"]) == 0
    filtered = json.loads(capsys.readouterr().out)
    assert [e["actor"] for e in filtered] == ["bob"]


def test_verify_chain_reports_tampering(core, capsys):
    doc = core.on_create("alice", b"Hello")
    core.on_edit(doc, "alice", b"Hello World")
    with core.db.transaction() as conn:
        conn.execute("UPDATE audit_log SET actor='mallory' WHERE sequence_number=1")

    assert main(["verify-chain", "--db", str(core.db.path)]) == 1
    result = json.loads(capsys.readouterr().out)
    assert result["broken_at"] == 1


def test_history(core, capsys):
    doc = core.on_create("alice", b"v1")
    core.on_edit(doc, "alice", b"v2", description="second draft")

    assert main(["history", "-d", doc.id, "--db", str(core.db.path)]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("* v2")
    assert "second draft" in lines[1]

    assert main(["history", "-d", "missing", "--db", str(core.db.path)]) == 1


def test_invalid_crypto_config_is_rejected(monkeypatch, tmp_path, capsys):
    from docintegrity import config

    path = tmp_path / "note.txt"
    path.write_bytes(b"Hello")
    monkeypatch.setattr(config, "MIN_RSA_KEY_BITS", 1024)
    assert main(["hash", "-f", str(path)]) == 2
    assert "min_rsa_key_bits" in capsys.readouterr().err

    monkeypatch.setattr(config, "MIN_RSA_KEY_BITS", 2048)
    monkeypatch.setattr(config, "SIGNATURE_ALGORITHM", "md5")
    assert main(["hash", "-f", str(path)]) == 2
    assert "signature_algorithm" in capsys.readouterr().err


def test_debug_flag_lowers_log_level(monkeypatch, tmp_path):
    path = tmp_path / "note.txt"
    path.write_bytes(b"Hello")
    monkeypatch.setenv("DOCINTEGRITY_DEBUG", "1")
    assert main(["hash", "-f", str(path)]) == 0
    assert logging.getLogger().level == logging.DEBUG
