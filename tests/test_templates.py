"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from mongofleet.models import AuthPolicy, StorageConfig
from mongofleet.templates import TemplateEngine, TemplateError


def _context(**overrides: object) -> dict[str, object]:
    context: dict[str, object] = {
        "environment": "staging",
        "node_name": "db1",
        "storage": StorageConfig(cache_size_gb=1.5, oplog_size_mb=2048),
        "auth": AuthPolicy(enabled=True, key_file="/etc/mongod/keyfile"),
        "replica_set": "rs0",
        "port": 27017,
        "bind_ip": "0.0.0.0",
    }
    context.update(overrides)
    return context


def test_render_mongod_conf_with_replica_and_auth() -> None:
    """The built-in mongod.conf renders storage, security and replication blocks."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("mongod.conf.j2", _context())

    assert "cacheSizeGB: 1.5" in output
    assert "authorization: enabled" in output
    assert "keyFile: /etc/mongod/keyfile" in output
    assert "replSetName: rs0" in output
    assert "oplogSizeMB: 2048" in output
    assert "(staging / db1)" in output


def test_standalone_config_has_no_replication_block() -> None:
    """Standalone nodes render without replication or keyFile."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "mongod.conf.j2",
        _context(replica_set=None, auth=AuthPolicy(enabled=False), storage=StorageConfig()),
    )

    assert "replication:" not in output
    assert "keyFile" not in output
    assert "authorization: disabled" in output
    assert "cacheSizeGB" not in output


def test_rendered_checksum_is_stable() -> None:
    """Identical inputs produce identical checksums; different inputs differ."""
    engine = TemplateEngine.with_overrides(None)

    first = engine.render("mongod.conf.j2", _context())
    second = engine.render("mongod.conf.j2", _context())
    other = engine.render("mongod.conf.j2", _context(port=27018))

    assert first.checksum == second.checksum
    assert first.checksum != other.checksum
    assert first.template == "mongod.conf.j2"


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow built-in ones."""
    (tmp_path / "mongod.conf.j2").write_text("custom {{ node_name }}\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(tmp_path)

    assert engine.render_to_string("mongod.conf.j2", _context()) == "custom db1\n"


def test_missing_variables_raise_template_error() -> None:
    """Strict undefined variables surface as TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("mongod.conf.j2", {"environment": "staging"})


def test_unknown_template_raises_template_error() -> None:
    """Unknown template names raise TemplateError."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("missing.j2", {})
