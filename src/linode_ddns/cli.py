#!/usr/bin/env python3
"""linode-ddns - Dynamic DNS for Linode DNS Manager

Discovers the public IPv4 and IPv6 addresses of this host and makes sure the
configured A / AAAA records on Linode point at them. Records are created when
missing and updated when stale; nothing is ever deleted. Meant to be run
periodically (cron, systemd timer), one pass per invocation.

Environment variables:

    LINODE_TOKEN           Linode personal access token (required)
    DDNS_CONFIG_PATH       Path to the YAML/JSON config file (default: config.json)
    LINODE_API_URL         Linode API base URL (default: https://api.linode.com/v4)
    HTTP_TIMEOUT_SECONDS   Timeout for every HTTP request (default: 10)
    LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)

Config file (JSON shown, YAML works too):

    {
      "domains": [
        {"domain": "example.com", "record": "home"},
        {"domain": "example.org", "record": "www"}
      ],
      "default_ttl": 300,
      "ip_url": "https://icanhazip.com",
      "ipv4": true,
      "ipv6": true
    }

    If neither ipv4 nor ipv6 is enabled, both are.

Exit status is 0 when every (record, family) pair was reconciled and 1 when
any pair failed or the configuration/credential could not be loaded.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests
import yaml
from requests.adapters import HTTPAdapter

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_API_URL = "https://api.linode.com/v4"
DEFAULT_IP_URL = "https://icanhazip.com"
DEFAULT_TIMEOUT_SECONDS = 10.0
TOKEN_ENV_VAR = "LINODE_TOKEN"
PAGE_SIZE = 500

# =============================================================================
# Errors
# =============================================================================


class DDNSError(Exception):
    """Base class for every error this tool reports."""


class StartupError(DDNSError):
    """Missing credential or unusable configuration. Fatal before any network activity."""


class TransportError(DDNSError):
    """A call to the DNS provider API failed."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")


class DiscoveryError(DDNSError):
    """The public address of one family could not be determined."""

    def __init__(self, family: AddressFamily, cause: Any):
        self.family = family
        self.cause = cause
        super().__init__(f"{family.label} discovery failed: {cause}")


class DomainResolutionError(DDNSError):
    """The configured domain could not be found (cause is None) or listed."""

    def __init__(self, domain: str, cause: Optional[Exception] = None):
        self.domain = domain
        self.cause = cause
        if cause is None:
            message = f"domain '{domain}' not found"
        else:
            message = f"could not resolve domain '{domain}': {cause}"
        super().__init__(message)


class RecordLookupError(DDNSError):
    def __init__(self, domain: str, record: str, record_type: str, cause: Exception):
        self.domain = domain
        self.record = record
        self.record_type = record_type
        self.cause = cause
        super().__init__(f"lookup of {record_type} record '{record}' in '{domain}' failed: {cause}")


class MutationError(DDNSError):
    def __init__(
        self, domain: str, record: str, record_type: str, operation: str, cause: Exception
    ):
        self.domain = domain
        self.record = record
        self.record_type = record_type
        self.operation = operation
        self.cause = cause
        super().__init__(
            f"{operation} of {record_type} record '{record}' in '{domain}' failed: {cause}"
        )


# =============================================================================
# Enums
# =============================================================================


class AddressFamily(Enum):
    """IP address family, each with its own probe and record type."""

    V4 = "v4"
    V6 = "v6"

    @property
    def label(self) -> str:
        return "IPv4" if self is AddressFamily.V4 else "IPv6"

    @property
    def record_type(self) -> str:
        return "A" if self is AddressFamily.V4 else "AAAA"

    @property
    def wildcard_address(self) -> str:
        return "0.0.0.0" if self is AddressFamily.V4 else "::"

    @property
    def ip_version(self) -> int:
        return 4 if self is AddressFamily.V4 else 6


class Outcome(Enum):
    NOOP = "noop"
    UPDATED = "updated"
    CREATED = "created"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DomainRecordTarget:
    """A record to keep pointed at this host."""

    domain_name: str
    record_name: str

    def __str__(self) -> str:
        return f"{self.record_name}.{self.domain_name}" if self.record_name else self.domain_name


@dataclass(frozen=True)
class Config:
    targets: Tuple[DomainRecordTarget, ...]
    default_ttl: int = 0
    ip_url: str = DEFAULT_IP_URL
    ipv4: bool = True
    ipv6: bool = True

    def enabled_families(self) -> List[AddressFamily]:
        families = []
        if self.ipv4:
            families.append(AddressFamily.V4)
        if self.ipv6:
            families.append(AddressFamily.V6)
        return families


@dataclass(frozen=True)
class Settings:
    """Process-level settings taken from the environment."""

    config_path: str = DEFAULT_CONFIG_PATH
    api_url: str = DEFAULT_API_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class PublicAddress:
    """The discovered address of a family, or why there is none."""

    family: AddressFamily
    address: Optional[str] = None
    error: Optional[DDNSError] = None

    @property
    def available(self) -> bool:
        return self.address is not None

    @classmethod
    def unavailable(cls, family: AddressFamily, error: DDNSError) -> PublicAddress:
        return cls(family=family, address=None, error=error)


@dataclass(frozen=True)
class RemoteDomain:
    id: int
    name: str


@dataclass(frozen=True)
class RemoteRecord:
    id: int
    name: str
    type: str
    target: str
    ttl: int = 0


@dataclass(frozen=True)
class PairResult:
    """Result of reconciling one target for one family."""

    target: DomainRecordTarget
    family: AddressFamily
    outcome: Optional[Outcome] = None
    error: Optional[DDNSError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    addresses: Dict[AddressFamily, PublicAddress] = field(default_factory=dict)
    results: List[PairResult] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(not r.ok for r in self.results)

    @property
    def exit_code(self) -> int:
        return 1 if self.has_errors else 0

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    def summary(self) -> str:
        errors = sum(1 for r in self.results if not r.ok)
        return (
            f"{self.count(Outcome.CREATED)} created, {self.count(Outcome.UPDATED)} updated, "
            f"{self.count(Outcome.NOOP)} unchanged, {errors} failed"
        )


# =============================================================================
# IP Discovery
# =============================================================================


class FamilyAdapter(HTTPAdapter):
    """Transport adapter whose connections only use one address family.

    Every socket is bound to the family's wildcard address before connecting,
    so addresses of the other family fail to bind and are skipped by urllib3
    instead of being used as a fallback. Connections to a proxy are bound the
    same way.
    """

    def __init__(self, family: AddressFamily, **kwargs: Any):
        self.family = family
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["source_address"] = (self.family.wildcard_address, 0)
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["source_address"] = (self.family.wildcard_address, 0)
        return super().proxy_manager_for(proxy, **proxy_kwargs)


class IPDiscoveryProbe:
    """Asks a plain-text "what is my IP" endpoint for our public address."""

    def __init__(self, url: str, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self._url = url
        self._timeout = timeout_seconds

    def _session_for(self, family: AddressFamily) -> requests.Session:
        session = requests.Session()
        adapter = FamilyAdapter(family)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def discover(self, family: AddressFamily) -> PublicAddress:
        """Return the public address of ``family`` or raise DiscoveryError."""
        session = self._session_for(family)
        try:
            response = session.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            text = response.content.decode("ascii").strip()
        except requests.exceptions.RequestException as e:
            raise DiscoveryError(family, e) from e
        except UnicodeDecodeError as e:
            raise DiscoveryError(family, f"non-ASCII response from {self._url}") from e
        finally:
            session.close()

        try:
            address = ipaddress.ip_address(text)
        except ValueError as e:
            raise DiscoveryError(family, f"malformed address {text!r} from {self._url}") from e

        if address.version != family.ip_version:
            raise DiscoveryError(
                family, f"got IPv{address.version} address {text!r} from {self._url}"
            )

        logger.debug(f"{family.label} address from {self._url}: {text}")
        return PublicAddress(family=family, address=text)


# =============================================================================
# DNS Provider Interface and Implementation
# =============================================================================


class DNSProvider(ABC):
    """Remote DNS API used by the directories and the reconciler."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_domains(self) -> List[RemoteDomain]:
        """Return every domain visible to the credential."""
        pass

    @abstractmethod
    def list_records(self, domain_id: int) -> List[RemoteRecord]:
        """Return every record of a domain."""
        pass

    @abstractmethod
    def create_record(
        self, domain_id: int, name: str, record_type: str, target: str, ttl: int
    ) -> RemoteRecord:
        pass

    @abstractmethod
    def update_record(
        self, domain_id: int, record_id: int, name: str, record_type: str, target: str, ttl: int
    ) -> RemoteRecord:
        pass


class LinodeDNSProvider(DNSProvider):
    """Linode DNS Manager (API v4) provider."""

    def __init__(
        self,
        token: str,
        url: str = DEFAULT_API_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Linode"

    def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._session.request(
                method, f"{self._url}{path}", timeout=self._timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise TransportError(operation, e) from e

    def _get_all_pages(self, operation: str, path: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = self._request(
                operation, "GET", path, params={"page": page, "page_size": PAGE_SIZE}
            )
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, list):
                raise TransportError(operation, ValueError(f"unexpected response on page {page}"))
            items.extend(data)
            pages = body.get("pages") or 1
            logger.debug(f"{operation}: page {page}/{pages}, {len(data)} item(s)")
            if page >= pages:
                return items
            page += 1

    def list_domains(self) -> List[RemoteDomain]:
        domains = []
        for d in self._get_all_pages("list domains", "/domains"):
            domain = _parse_domain(d)
            if domain is None:
                logger.warning(f"Skipping malformed domain: {d}")
                continue
            domains.append(domain)
        return domains

    def list_records(self, domain_id: int) -> List[RemoteRecord]:
        records = []
        for r in self._get_all_pages(
            f"list records of domain {domain_id}", f"/domains/{domain_id}/records"
        ):
            record = _parse_record(r)
            if record is None:
                logger.warning(f"Skipping malformed record: {r}")
                continue
            records.append(record)
        return records

    def create_record(
        self, domain_id: int, name: str, record_type: str, target: str, ttl: int
    ) -> RemoteRecord:
        data = {"type": record_type, "name": name, "target": target, "ttl_sec": ttl}
        body = self._request(
            f"create {record_type} record '{name}'",
            "POST",
            f"/domains/{domain_id}/records",
            json=data,
        )
        return _parse_record(body) or RemoteRecord(0, name, record_type, target, ttl)

    def update_record(
        self, domain_id: int, record_id: int, name: str, record_type: str, target: str, ttl: int
    ) -> RemoteRecord:
        data = {"type": record_type, "name": name, "target": target, "ttl_sec": ttl}
        body = self._request(
            f"update {record_type} record '{name}'",
            "PUT",
            f"/domains/{domain_id}/records/{record_id}",
            json=data,
        )
        return _parse_record(body) or RemoteRecord(record_id, name, record_type, target, ttl)


def _parse_domain(item: Any) -> Optional[RemoteDomain]:
    if not isinstance(item, dict):
        return None
    domain_id = item.get("id")
    name = item.get("domain")
    if not isinstance(domain_id, int) or not isinstance(name, str):
        return None
    return RemoteDomain(id=domain_id, name=name)


def _parse_record(item: Any) -> Optional[RemoteRecord]:
    if not isinstance(item, dict):
        return None
    record_id = item.get("id")
    name = item.get("name")
    record_type = item.get("type")
    target = item.get("target")
    if (
        not isinstance(record_id, int)
        or not isinstance(name, str)
        or not isinstance(record_type, str)
        or not isinstance(target, str)
    ):
        return None
    ttl = item.get("ttl_sec")
    return RemoteRecord(
        id=record_id,
        name=name,
        type=record_type,
        target=target,
        ttl=ttl if isinstance(ttl, int) else 0,
    )


# =============================================================================
# Directories
# =============================================================================


def find_domain(provider: DNSProvider, name: str) -> Optional[RemoteDomain]:
    """Find a domain by exact name. Returns None if it does not exist.

    Raises TransportError if the domains cannot be listed.
    """
    for domain in provider.list_domains():
        if domain.name == name:
            logger.debug(f"Domain '{name}' has id {domain.id}")
            return domain
    return None


def find_record(
    provider: DNSProvider, domain_id: int, name: str, record_type: str
) -> Optional[RemoteRecord]:
    """Find a record by exact name and type. Returns None if it does not exist.

    When the provider holds several records with the same name and type the
    first one wins; the rest are reported but left alone.

    Raises TransportError if the records cannot be listed.
    """
    matches = [
        r for r in provider.list_records(domain_id) if r.name == name and r.type == record_type
    ]
    if not matches:
        return None
    if len(matches) > 1:
        logger.warning(
            f"Found {len(matches)} {record_type} records named '{name}' in domain {domain_id}; "
            f"using record {matches[0].id}, duplicates need manual cleanup"
        )
    return matches[0]


# =============================================================================
# Reconciler
# =============================================================================


class RecordReconciler:
    """Brings a single (domain, record, type) to the desired target."""

    def __init__(self, provider: DNSProvider):
        self.provider = provider

    def reconcile(
        self,
        domain_id: int,
        domain_name: str,
        record_name: str,
        record_type: str,
        target: str,
        ttl: int,
    ) -> Outcome:
        """Create or update the record so it points at ``target``.

        Issues at most one mutating call. Raises RecordLookupError when the
        existing records cannot be read and MutationError when the create or
        update call fails.
        """
        try:
            existing = find_record(self.provider, domain_id, record_name, record_type)
        except TransportError as e:
            raise RecordLookupError(domain_name, record_name, record_type, e) from e

        if existing is not None and existing.target == target:
            logger.debug(f"{record_type} record '{record_name}' in '{domain_name}' is current")
            return Outcome.NOOP

        if existing is not None:
            logger.info(
                f"Updating {record_type} record '{record_name}' in '{domain_name}': "
                f"{existing.target} -> {target}"
            )
            try:
                self.provider.update_record(
                    domain_id, existing.id, record_name, record_type, target, ttl
                )
            except TransportError as e:
                raise MutationError(domain_name, record_name, record_type, "update", e) from e
            return Outcome.UPDATED

        logger.info(f"Creating {record_type} record '{record_name}' in '{domain_name}' -> {target}")
        try:
            self.provider.create_record(domain_id, record_name, record_type, target, ttl)
        except TransportError as e:
            raise MutationError(domain_name, record_name, record_type, "create", e) from e
        return Outcome.CREATED


# =============================================================================
# Core Syncer
# =============================================================================


class DynamicDNSSyncer:
    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        probe: IPDiscoveryProbe,
        config: Config,
    ):
        self.dns_provider = dns_provider
        self.probe = probe
        self.config = config
        self.reconciler = RecordReconciler(dns_provider)

    def _discover_addresses(self) -> Dict[AddressFamily, PublicAddress]:
        addresses: Dict[AddressFamily, PublicAddress] = {}
        for family in self.config.enabled_families():
            try:
                addresses[family] = self.probe.discover(family)
                logger.info(f"Public {family.label} address: {addresses[family].address}")
            except DiscoveryError as e:
                logger.warning(f"{e}; skipping {family.record_type} records this run")
                addresses[family] = PublicAddress.unavailable(family, e)
        return addresses

    def _record(self, report: SyncReport, result: PairResult) -> None:
        family = result.family
        if result.ok:
            address = report.addresses[family].address
            logger.info(
                f"{result.target} [{family.record_type}] {result.outcome.value} ({address})"
            )
        else:
            logger.error(f"{result.target} [{family.record_type}] error: {result.error}")
        report.results.append(result)

    def _sync_target(self, report: SyncReport, target: DomainRecordTarget) -> None:
        families = self.config.enabled_families()

        if not any(report.addresses[f].available for f in families):
            for family in families:
                self._record(
                    report, PairResult(target, family, error=report.addresses[family].error)
                )
            return

        try:
            domain = find_domain(self.dns_provider, target.domain_name)
        except TransportError as e:
            domain_error = DomainResolutionError(target.domain_name, e)
        else:
            domain_error = None
            if domain is None:
                domain_error = DomainResolutionError(target.domain_name)

        if domain_error is not None:
            for family in families:
                public = report.addresses[family]
                error = domain_error if public.available else public.error
                self._record(report, PairResult(target, family, error=error))
            return

        for family in families:
            public = report.addresses[family]
            if not public.available:
                self._record(report, PairResult(target, family, error=public.error))
                continue
            try:
                outcome = self.reconciler.reconcile(
                    domain.id,
                    domain.name,
                    target.record_name,
                    family.record_type,
                    public.address,
                    self.config.default_ttl,
                )
            except DDNSError as e:
                self._record(report, PairResult(target, family, error=e))
            else:
                self._record(report, PairResult(target, family, outcome=outcome))

    def sync_once(self) -> SyncReport:
        report = SyncReport(addresses=self._discover_addresses())
        for target in self.config.targets:
            self._sync_target(report, target)
        return report


# =============================================================================
# Configuration
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_targets(raw: Any) -> Tuple[DomainRecordTarget, ...]:
    if not isinstance(raw, list) or not raw:
        raise StartupError("'domains' must be a non-empty list")

    targets = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise StartupError(f"domains[{index}] must be a mapping, got {item!r}")
        domain = item.get("domain")
        record = item.get("record")
        if not isinstance(domain, str) or not domain.strip():
            raise StartupError(f"domains[{index}] is missing 'domain'")
        if not isinstance(record, str):
            raise StartupError(f"domains[{index}] is missing 'record'")
        targets.append(DomainRecordTarget(domain_name=domain.strip(), record_name=record.strip()))
    return tuple(targets)


def _parse_ttl(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise StartupError(f"'default_ttl' must be a non-negative integer, got {value!r}")
    return value


def parse_config(data: Any) -> Config:
    """Build a Config from an already decoded document."""
    if not isinstance(data, dict):
        raise StartupError("config must be a mapping")

    ip_url = str(data.get("ip_url") or DEFAULT_IP_URL).strip()
    ipv4 = _parse_bool(data.get("ipv4"), default=False)
    ipv6 = _parse_bool(data.get("ipv6"), default=False)
    if not ipv4 and not ipv6:
        ipv4 = ipv6 = True

    return Config(
        targets=_parse_targets(data.get("domains")),
        default_ttl=_parse_ttl(data.get("default_ttl")),
        ip_url=ip_url,
        ipv4=ipv4,
        ipv6=ipv6,
    )


def load_config(config_path: str) -> Config:
    """Load the YAML/JSON config file. Raises StartupError on any problem."""
    path = Path(config_path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, IOError) as e:
        raise StartupError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise StartupError(f"cannot parse config file {path}: {e}") from e

    config = parse_config(data)
    logger.info(
        f"Loaded {len(config.targets)} record(s) from {path} "
        f"(ttl={config.default_ttl}, ipv4={config.ipv4}, ipv6={config.ipv6})"
    )
    return config


def load_token(environ: Mapping[str, str]) -> str:
    token = environ.get(TOKEN_ENV_VAR, "").strip()
    if not token:
        raise StartupError(f"API token not found, please set {TOKEN_ENV_VAR}")
    return token


def load_settings(environ: Mapping[str, str]) -> Settings:
    raw_timeout = environ.get("HTTP_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
    try:
        timeout = float(raw_timeout)
    except ValueError as e:
        raise StartupError(f"HTTP_TIMEOUT_SECONDS must be a number, got {raw_timeout!r}") from e
    if timeout <= 0:
        raise StartupError(f"HTTP_TIMEOUT_SECONDS must be positive, got {raw_timeout!r}")

    return Settings(
        config_path=environ.get("DDNS_CONFIG_PATH", DEFAULT_CONFIG_PATH),
        api_url=environ.get("LINODE_API_URL", DEFAULT_API_URL),
        timeout_seconds=timeout,
    )


# =============================================================================
# Main
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run(environ: Mapping[str, str]) -> int:
    """Run one reconciliation pass and return the process exit status."""
    configure_logging(environ.get("LOG_LEVEL", "INFO"))
    try:
        settings = load_settings(environ)
        token = load_token(environ)
        config = load_config(settings.config_path)
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        return 1

    dns_provider = LinodeDNSProvider(token, settings.api_url, settings.timeout_seconds)
    probe = IPDiscoveryProbe(config.ip_url, settings.timeout_seconds)
    logger.info(f"DNS Provider: {dns_provider.name}")
    logger.info(f"IP discovery: {config.ip_url}")

    syncer = DynamicDNSSyncer(dns_provider=dns_provider, probe=probe, config=config)
    report = syncer.sync_once()
    logger.info(f"Sync finished: {report.summary()}")
    return report.exit_code


def main():
    """Main entry point."""
    try:
        sys.exit(run(os.environ))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
