"""Unit tests for YAML configuration loading."""

from __future__ import annotations

import os

import pytest

from proxmox_probe import config
from proxmox_probe.config import SecurityConfig, config_from_dict, load_config
from proxmox_probe.errors import ConfigError


def test_defaults_derive_paths_from_base_dir() -> None:
    cfg = SecurityConfig(base_dir="/srv/probe")
    assert cfg.security_check_enabled
    assert cfg.auto_update_hashes
    assert not cfg.auto_fix_permissions
    assert not cfg.continue_on_security_issues
    assert cfg.backup_path == "/srv/probe/backup"
    assert cfg.log_path == "/srv/probe/log"
    assert cfg.lock_path == "/srv/probe/lock"
    assert cfg.secure_account == "/srv/probe/secure_account"
    assert cfg.identity_dir == "/srv/probe/identity"
    assert cfg.suspicious_ports == config.DEFAULT_SUSPICIOUS_PORTS


def test_upper_case_keys_and_string_booleans() -> None:
    cfg = config_from_dict({
        "BASE_DIR": "/srv/probe",
        "AUTO_FIX_PERMISSIONS": "yes",
        "CHECK_NETWORK_SECURITY": "true",
        "CHECK_OPEN_PORTS": 1,
        "BACKUP_PATH": "/mnt/backup",
        "COMPRESSION_TYPE": "zstd",
    })
    assert cfg.auto_fix_permissions
    assert cfg.check_network_security
    assert cfg.check_open_ports
    assert cfg.backup_path == "/mnt/backup"
    assert cfg.log_path == "/srv/probe/log"
    assert cfg.compression_type == "zstd"


def test_legacy_keys() -> None:
    cfg = config_from_dict({
        "full_security_check": "false",
        "local_backup_path": "/data/backup",
        "abort_on_security_issues": "false",
    })
    assert not cfg.security_check_enabled
    assert cfg.backup_path == "/data/backup"
    assert cfg.continue_on_security_issues


def test_explicit_continue_beats_abort() -> None:
    cfg = config_from_dict({"continue_on_security_issues": False, "abort_on_security_issues": False})
    assert not cfg.continue_on_security_issues


def test_invalid_boolean_raises() -> None:
    with pytest.raises(ConfigError, match="invalid boolean"):
        config_from_dict({"auto_fix_permissions": "maybe"})


def test_process_lists_merge_with_defaults() -> None:
    cfg = config_from_dict({"suspicious_processes": "xmrig, evilbot\nbackdoor"})
    assert cfg.suspicious_processes[: len(config.DEFAULT_SUSPICIOUS_PROCESSES)] == \
        config.DEFAULT_SUSPICIOUS_PROCESSES
    assert cfg.suspicious_processes[-2:] == ["evilbot", "backdoor"]
    assert cfg.suspicious_processes.count("xmrig") == 1


def test_process_patterns_keep_inner_spaces() -> None:
    cfg = config_from_dict({"safe_bracket_processes": "blkmapd worker*, nfsv4 callback*\nrpciod"})
    assert cfg.safe_bracket_processes[-2:] == ["blkmapd worker*", "rpciod"]
    assert cfg.safe_bracket_processes.count("nfsv4 callback*") == 1
    assert "blkmapd" not in cfg.safe_bracket_processes
    assert "callback*" not in cfg.safe_bracket_processes


def test_port_whitelist_still_splits_on_whitespace() -> None:
    assert config.parse_list("nc:4444 sshd:2222,\tfoo:1") == ["nc:4444", "sshd:2222", "foo:1"]
    assert config.parse_pattern_list(" a b ,\n c ") == ["a b", "c"]


def test_suspicious_ports_replace_defaults() -> None:
    cfg = config_from_dict({"suspicious_ports": [4444, "5555"], "port_whitelist": "nc:4444 sshd:2222"})
    assert cfg.suspicious_ports == [4444, 5555]
    assert cfg.port_whitelist == ["nc:4444", "sshd:2222"]


def test_invalid_port_raises() -> None:
    with pytest.raises(ConfigError, match="invalid port"):
        config_from_dict({"suspicious_ports": "22,ssh"})


def test_base_dir_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("BASE_DIR", "/env/base")
    cfg = config_from_dict({})
    assert cfg.base_dir == "/env/base"
    assert cfg.backup_path == "/env/base/backup"


def test_load_config_substitutes_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("PROBE_TEST_REMOTE", "s3:bucket")
    path = tmp_path / "backup.yaml"
    path.write_text(
        "base_dir: /srv/probe\n"
        "security:\n"
        "  cloud_enabled: true\n"
        "  cloud_remote: ${PROBE_TEST_REMOTE}\n"
        "  check_network_security: true\n"
    )
    cfg = load_config(str(path))
    assert cfg.base_dir == "/srv/probe"
    assert cfg.cloud_enabled
    assert cfg.cloud_remote == "s3:bucket"
    assert cfg.check_network_security


def test_load_config_empty_file(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("BASE_DIR", raising=False)
    path = tmp_path / "empty.yaml"
    path.write_text("")
    cfg = load_config(str(path))
    assert cfg.base_dir == config.DEFAULT_BASE_DIR


def test_load_config_rejects_invalid_yaml(tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("key: [unclosed\n")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(str(path))


def test_load_config_rejects_non_mapping(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(str(path))


def test_load_config_missing_file(tmp_path) -> None:
    with pytest.raises(OSError):
        load_config(os.path.join(str(tmp_path), "missing.yaml"))
