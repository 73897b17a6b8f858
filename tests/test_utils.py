"""Unit tests for configuration, credential and startup handling.

Tests cover:
- Boolean parsing (_parse_bool)
- Config parsing and loading (parse_config, load_config)
- Credential and settings loading (load_token, load_settings)
- Exit status of run() on startup failures and per-pair errors
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from fakes import MockDNSProvider
from linode_ddns.cli import (
    DEFAULT_API_URL,
    DEFAULT_IP_URL,
    AddressFamily,
    Config,
    DomainRecordTarget,
    PublicAddress,
    RemoteDomain,
    StartupError,
    _parse_bool,
    load_config,
    load_settings,
    load_token,
    parse_config,
    run,
)

ONE_TARGET = [{"domain": "example.com", "record": "home"}]

# =============================================================================
# Boolean Parsing Tests
# =============================================================================


def test_parse_bool_values() -> None:
    assert _parse_bool(None, default=True) is True
    assert _parse_bool(None, default=False) is False
    assert _parse_bool(True) is True
    assert _parse_bool("yes") is True
    assert _parse_bool(" ON ") is True
    assert _parse_bool("0") is False
    assert _parse_bool("false") is False


# =============================================================================
# Config Parsing Tests
# =============================================================================


def test_parse_config_defaults() -> None:
    config = parse_config({"domains": ONE_TARGET})

    assert config == Config(
        targets=(DomainRecordTarget("example.com", "home"),),
        default_ttl=0,
        ip_url=DEFAULT_IP_URL,
        ipv4=True,
        ipv6=True,
    )


def test_parse_config_keeps_target_order() -> None:
    config = parse_config(
        {
            "domains": [
                {"domain": "b.example", "record": "x"},
                {"domain": "a.example", "record": ""},
            ]
        }
    )

    assert config.targets == (
        DomainRecordTarget("b.example", "x"),
        DomainRecordTarget("a.example", ""),
    )


@pytest.mark.parametrize(
    "flags, expected",
    [
        ({}, (True, True)),
        ({"ipv4": False, "ipv6": False}, (True, True)),
        ({"ipv4": True}, (True, False)),
        ({"ipv6": "yes"}, (False, True)),
        ({"ipv4": True, "ipv6": False}, (True, False)),
    ],
)
def test_parse_config_family_flags(flags: dict, expected: tuple) -> None:
    config = parse_config({"domains": ONE_TARGET, **flags})

    assert (config.ipv4, config.ipv6) == expected


@pytest.mark.parametrize("ttl", [-1, "300", 1.5, True])
def test_parse_config_rejects_bad_ttl(ttl) -> None:
    with pytest.raises(StartupError, match="default_ttl"):
        parse_config({"domains": ONE_TARGET, "default_ttl": ttl})


@pytest.mark.parametrize(
    "domains",
    [None, [], ["example.com"], [{"record": "home"}], [{"domain": "example.com"}]],
)
def test_parse_config_rejects_bad_domains(domains) -> None:
    with pytest.raises(StartupError):
        parse_config({"domains": domains})


def test_parse_config_rejects_non_mapping() -> None:
    with pytest.raises(StartupError):
        parse_config(["not", "a", "mapping"])


# =============================================================================
# Config Loading Tests
# =============================================================================


def test_load_config_from_json(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"domains": ONE_TARGET, "default_ttl": 300, "ipv4": True, "ipv6": False})
    )

    config = load_config(str(path))

    assert config.default_ttl == 300
    assert config.enabled_families()[0].record_type == "A"
    assert len(config.enabled_families()) == 1


def test_load_config_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        """
domains:
  - domain: example.com
    record: home
default_ttl: 120
ip_url: https://ip.example.test
"""
    )

    config = load_config(str(path))

    assert config.ip_url == "https://ip.example.test"
    assert config.default_ttl == 120


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(StartupError, match="cannot read"):
        load_config(str(tmp_path / "nope.json"))


def test_load_config_unparseable(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text('{"domains": [')

    with pytest.raises(StartupError, match="cannot parse"):
        load_config(str(path))


# =============================================================================
# Credential and Settings Tests
# =============================================================================


def test_load_token() -> None:
    assert load_token({"LINODE_TOKEN": " abc \n"}) == "abc"


@pytest.mark.parametrize("environ", [{}, {"LINODE_TOKEN": ""}, {"LINODE_TOKEN": "   "}])
def test_load_token_missing(environ: dict) -> None:
    with pytest.raises(StartupError, match="LINODE_TOKEN"):
        load_token(environ)


def test_load_settings_defaults() -> None:
    settings = load_settings({})

    assert settings.config_path == "config.json"
    assert settings.api_url == DEFAULT_API_URL
    assert settings.timeout_seconds == 10.0


@pytest.mark.parametrize("timeout", ["abc", "0", "-5"])
def test_load_settings_rejects_bad_timeout(timeout: str) -> None:
    with pytest.raises(StartupError):
        load_settings({"HTTP_TIMEOUT_SECONDS": timeout})


# =============================================================================
# run() Exit Status Tests
# =============================================================================


def test_run_without_token_exits_non_zero(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"domains": ONE_TARGET}))

    with patch("linode_ddns.cli.LinodeDNSProvider") as provider_cls:
        assert run({"DDNS_CONFIG_PATH": str(path)}) == 1

    provider_cls.assert_not_called()


def test_run_with_missing_config_exits_non_zero(tmp_path: Path) -> None:
    with patch("linode_ddns.cli.LinodeDNSProvider") as provider_cls:
        code = run({"LINODE_TOKEN": "t", "DDNS_CONFIG_PATH": str(tmp_path / "missing.json")})

    assert code == 1
    provider_cls.assert_not_called()


def test_run_reports_exit_status_from_sync(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"domains": ONE_TARGET, "default_ttl": 300, "ipv4": True}))
    dns = MockDNSProvider(domains=[RemoteDomain(1, "example.com")])

    with patch("linode_ddns.cli.LinodeDNSProvider", return_value=dns) as provider_cls, patch(
        "linode_ddns.cli.IPDiscoveryProbe.discover"
    ) as discover:
        discover.return_value = PublicAddress(AddressFamily.V4, "203.0.113.7")
        code = run({"LINODE_TOKEN": "tok", "DDNS_CONFIG_PATH": str(path)})

    assert code == 0
    provider_cls.assert_called_once_with("tok", DEFAULT_API_URL, 10.0)
    assert dns.create_calls == [(1, "home", "A", "203.0.113.7", 300)]
