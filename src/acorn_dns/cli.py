#!/usr/bin/env python3
"""acorn-dns - Managed DNS Reconciliation

Reconciles the tri-state Acorn DNS toggle against the persisted credential
record and drives the registrar calls each transition requires.

Modes (the "acornDNS" config key):
    - enabled:  hold a managed domain, reserving one if none is held
    - auto:     hold a managed domain only when no cluster domains are set
    - disabled: release any held managed domain

Configuration payload (JSON or YAML file at ACORN_CONFIG_PATH):

    {
      "acornDNS": "auto",
      "clusterDomains": ["example.com"],
      "acornDNSEndpoint": "https://oss-acorn.io/v1",
      "dnsRecords": [{"type": "A", "name": "app", "values": ["10.0.0.1"]}]
    }

    acornDNS           enabled | auto | disabled (default: auto)
    clusterDomains     Domains owned by the cluster (default: none)
    acornDNSEndpoint   Registrar endpoint override (optional)
    dnsRecords         Records kept alive by the renewal loop (optional)

Environment variables:

    Registrar:
        ACORN_DNS_ENDPOINT         Default registrar endpoint
                                   (default: https://oss-acorn.io/v1)
        REGISTRAR_TIMEOUT_SECONDS  HTTP timeout for registrar calls (default: 30)

    Configuration and state:
        ACORN_CONFIG_PATH          Config payload file (default: /config/acorn-config.json)
        STATE_PATH                 Persisted record file (default: /data/acorn-dns.json)
        DNS_RECORD_NAME            Record name (default: acorn-dns)
        DNS_RECORD_NAMESPACE       Record namespace (default: acorn-system)

    Runtime:
        SYNC_MODE                  "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS      Resync interval in watch mode (default: 60)
        RENEW_INTERVAL_SECONDS     Lease renewal interval in watch mode, 0 disables
                                   (default: 21600)
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
import yaml

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_DNS_ENDPOINT = "https://oss-acorn.io/v1"

# Registrar configuration
ACORN_DNS_ENDPOINT = os.getenv("ACORN_DNS_ENDPOINT", DEFAULT_DNS_ENDPOINT).strip()
REGISTRAR_TIMEOUT_SECONDS = float(os.getenv("REGISTRAR_TIMEOUT_SECONDS", "30"))

# Config payload and persisted record
ACORN_CONFIG_PATH = os.getenv("ACORN_CONFIG_PATH", "/config/acorn-config.json")
STATE_PATH = os.getenv("STATE_PATH", "/data/acorn-dns.json")
DNS_RECORD_NAME = os.getenv("DNS_RECORD_NAME", "acorn-dns").strip()
DNS_RECORD_NAMESPACE = os.getenv("DNS_RECORD_NAMESPACE", "acorn-system").strip()

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "60"))
RENEW_INTERVAL_SECONDS = int(os.getenv("RENEW_INTERVAL_SECONDS", "21600"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Annotation carrying the state marker on the stored record
DNS_STATE_ANNOTATION = "acorn.io/dns-state"

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class DNSMode(Enum):
    """Acorn DNS toggle.

    ENABLED:  Always hold a managed domain.
    AUTO:     Hold a managed domain only when the cluster has no domains of
              its own.
    DISABLED: Never hold a managed domain.

    The same values are persisted as the record's state marker.
    """

    ENABLED = "enabled"
    AUTO = "auto"
    DISABLED = "disabled"

    @classmethod
    def parse(cls, value: Any, default: "DNSMode") -> "DNSMode":
        if isinstance(value, str):
            normalized = value.strip().lower()
            for mode in cls:
                if mode.value == normalized:
                    return mode
        return default


class RecordType(Enum):
    """DNS record types the registrar accepts."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    TXT = "TXT"


class ActionKind(Enum):
    """Registrar calls the decision engine can plan."""

    RESERVE = "reserve"
    PURGE = "purge"


# =============================================================================
# Errors
# =============================================================================


class AcornDNSError(Exception):
    """Base class for reconciliation failures. None of them are fatal."""


class ParseError(AcornDNSError):
    """The configuration payload is structurally invalid."""


class StorageError(AcornDNSError):
    """The persisted record could not be read or written."""


class RegistrarError(AcornDNSError):
    """A registrar call failed."""

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{operation}: {message}")

    @property
    def is_auth_error(self) -> bool:
        """True when the registrar rejected the domain token."""
        return self.status_code in (401, 403)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class RecordRequest:
    """A DNS record to publish under the managed domain."""

    name: str
    type: RecordType
    values: Tuple[str, ...] = ()

    def to_json(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type.value, "values": list(self.values)}


@dataclass(frozen=True)
class FQDNTypePair:
    """Identifies a published record by fully-qualified name and type."""

    fqdn: str
    type: RecordType


@dataclass(frozen=True)
class RenewRequest:
    """Lease renewal payload: the records this installation believes exist."""

    records: Tuple[RecordRequest, ...] = ()
    version: str = ""

    def to_json(self) -> Dict[str, Any]:
        return {"records": [r.to_json() for r in self.records], "version": self.version}


@dataclass(frozen=True)
class RenewResponse:
    """Registrar answer to a renewal, listing records it does not have."""

    name: str
    out_of_sync_records: Tuple[FQDNTypePair, ...] = ()


@dataclass(frozen=True)
class ConfigSnapshot:
    """Effective DNS configuration for one reconciliation pass."""

    mode: DNSMode = DNSMode.AUTO
    cluster_domains: Tuple[str, ...] = ()
    endpoint: str = ""
    records: Tuple[RecordRequest, ...] = ()


@dataclass(frozen=True)
class DNSRecordState:
    """The persisted credential record for one installation.

    `domain` and `token` are set together or not at all, and a record marked
    disabled never holds either.
    """

    name: str
    namespace: str
    state_marker: DNSMode
    domain: str = ""
    token: str = ""

    def __post_init__(self) -> None:
        if bool(self.domain) != bool(self.token):
            raise ValueError(
                f"Record {self.namespace}/{self.name}: domain and token must be set together"
            )
        if self.state_marker == DNSMode.DISABLED and self.domain:
            raise ValueError(
                f"Record {self.namespace}/{self.name}: disabled record cannot hold a domain"
            )

    @property
    def holds_domain(self) -> bool:
        return bool(self.domain)

    def with_changes(self, **changes: Any) -> "DNSRecordState":
        return replace(self, **changes)

    def diff(self, other: Optional["DNSRecordState"]) -> Dict[str, Tuple[Any, Any]]:
        """Return {field: (self_value, other_value)} for fields that differ.

        Token values are masked so the result is safe to log.
        """
        changes: Dict[str, Tuple[Any, Any]] = {}
        for attr in ("name", "namespace", "state_marker", "domain", "token"):
            old = getattr(self, attr)
            new = getattr(other, attr) if other is not None else None
            if old == new:
                continue
            if attr == "token":
                old, new = _mask(old), _mask(new)
            elif attr == "state_marker":
                old = old.value
                new = new.value if new is not None else None
            changes[attr] = (old, new)
        return changes

    def to_stored(self) -> Dict[str, Any]:
        """Serialize to the stored object shape (secret-like, base64 payloads)."""
        return {
            "kind": "Secret",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "annotations": {DNS_STATE_ANNOTATION: self.state_marker.value},
            },
            "data": {
                "domain": _b64encode(self.domain),
                "token": _b64encode(self.token),
            },
        }

    @classmethod
    def from_stored(cls, obj: Dict[str, Any]) -> "DNSRecordState":
        metadata = obj.get("metadata") or {}
        data = obj.get("data") or {}
        if not isinstance(metadata, dict):
            raise ValueError(f"metadata must be an object, got {type(metadata).__name__}")
        if not isinstance(data, dict):
            raise ValueError(f"data must be an object, got {type(data).__name__}")
        annotations = metadata.get("annotations") or {}
        if not isinstance(annotations, dict):
            raise ValueError(f"annotations must be an object, got {type(annotations).__name__}")
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            # A record written without a marker predates the toggle: treat as auto.
            state_marker=DNSMode.parse(annotations.get(DNS_STATE_ANNOTATION), DNSMode.AUTO),
            domain=_b64decode(data.get("domain")),
            token=_b64decode(data.get("token")),
        )


@dataclass(frozen=True)
class RegistrarAction:
    """A single planned registrar call."""

    kind: ActionKind
    domain: str = ""
    token: str = field(default="", repr=False)


@dataclass(frozen=True)
class Decision:
    """Outcome of the decision engine.

    When `actions` contains a RESERVE, `next_record` has empty domain/token and
    is completed with the registrar's response.
    """

    actions: Tuple[RegistrarAction, ...]
    next_record: DNSRecordState

    @property
    def reserves(self) -> bool:
        return any(a.kind == ActionKind.RESERVE for a in self.actions)


# =============================================================================
# Registrar Interface and Implementations
# =============================================================================


class DNSRegistrar(ABC):
    """Abstract base class for managed-domain registrars."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the registrar name for logging."""
        pass

    @abstractmethod
    def reserve_domain(self, endpoint: str) -> Tuple[str, str]:
        """Reserve a new managed domain. Returns (domain, token)."""
        pass

    @abstractmethod
    def create_records(
        self, endpoint: str, domain: str, token: str, records: Sequence[RecordRequest]
    ) -> None:
        """Publish records under the managed domain."""
        pass

    @abstractmethod
    def renew(
        self, endpoint: str, domain: str, token: str, renew_request: RenewRequest
    ) -> RenewResponse:
        """Extend the reservation lease."""
        pass

    @abstractmethod
    def delete_record(self, endpoint: str, domain: str, fqdn: str, token: str) -> None:
        """Remove a single record."""
        pass

    @abstractmethod
    def purge_records(self, endpoint: str, domain: str, token: str) -> None:
        """Remove every record under the managed domain."""
        pass


class AcornDNSRegistrar(DNSRegistrar):
    """HTTP client for the Acorn DNS service."""

    def __init__(self, timeout_seconds: float = 30.0):
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Acorn DNS"

    def reserve_domain(self, endpoint: str) -> Tuple[str, str]:
        data = self._request("reserve domain", "POST", f"{_base(endpoint)}/domains")
        domain = data.get("name") if isinstance(data, dict) else None
        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(domain, str) or not domain or not isinstance(token, str) or not token:
            raise RegistrarError("reserve domain", "response missing name or token")
        logger.info(f"Reserved domain {domain}")
        return domain, token

    def create_records(
        self, endpoint: str, domain: str, token: str, records: Sequence[RecordRequest]
    ) -> None:
        url = f"{_base(endpoint)}/domains/{domain}/records"
        for record in records:
            self._request("create records", "POST", url, token=token, body=record.to_json())
            logger.info(f"Created {record.type.value} record {record.name} in {domain}")

    def renew(
        self, endpoint: str, domain: str, token: str, renew_request: RenewRequest
    ) -> RenewResponse:
        data = self._request(
            "renew",
            "POST",
            f"{_base(endpoint)}/domains/{domain}/renew",
            token=token,
            body=renew_request.to_json(),
        )
        if not isinstance(data, dict):
            raise RegistrarError("renew", "response is not an object")

        out_of_sync: List[FQDNTypePair] = []
        for item in data.get("outOfSyncRecords") or []:
            fqdn = item.get("fqdn") if isinstance(item, dict) else None
            record_type = item.get("type") if isinstance(item, dict) else None
            try:
                out_of_sync.append(FQDNTypePair(fqdn=str(fqdn), type=RecordType(record_type)))
            except ValueError:
                logger.warning(f"Skipping malformed out-of-sync record: {item}")
        return RenewResponse(
            name=str(data.get("name") or domain), out_of_sync_records=tuple(out_of_sync)
        )

    def delete_record(self, endpoint: str, domain: str, fqdn: str, token: str) -> None:
        prefix = _record_prefix(fqdn, domain)
        self._request(
            "delete record",
            "DELETE",
            f"{_base(endpoint)}/domains/{domain}/records/{prefix}",
            token=token,
        )
        logger.info(f"Deleted record {fqdn}")

    def purge_records(self, endpoint: str, domain: str, token: str) -> None:
        self._request(
            "purge records", "POST", f"{_base(endpoint)}/domains/{domain}/purgerecords", token=token
        )
        logger.info(f"Purged records for {domain}")

    def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        token: str = "",
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = self._session.request(
                method, url, json=body, headers=headers, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to {operation} via {self.name}: {e}")
            raise RegistrarError(operation, str(e)) from e

        if response.status_code < 200 or response.status_code >= 300:
            message = (response.text or "").strip() or response.reason or "request failed"
            logger.error(
                f"Failed to {operation} via {self.name}: HTTP {response.status_code} {message}"
            )
            raise RegistrarError(operation, message, response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RegistrarError(
                operation, f"invalid JSON response: {e}", response.status_code
            ) from e


# =============================================================================
# Utility Functions
# =============================================================================


def _base(endpoint: str) -> str:
    return endpoint.rstrip("/")


def _record_prefix(fqdn: str, domain: str) -> str:
    fqdn = fqdn.rstrip(".")
    suffix = "." + domain
    return fqdn[: -len(suffix)] if fqdn.endswith(suffix) else fqdn


def _mask(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return "***" if value else ""


def _b64encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _b64decode(value: Any) -> str:
    if not value:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"expected base64 string, got {type(value).__name__}")
    try:
        return base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def _parse_cluster_domains(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ParseError(f"clusterDomains must be a list of strings, got {type(value).__name__}")

    domains: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ParseError(f"clusterDomains entries must be strings, got {item!r}")
        item = item.strip()
        if item:
            domains.append(item)
    return tuple(domains)


def _parse_record_requests(value: Any) -> Tuple[RecordRequest, ...]:
    """Parse dnsRecords, skipping malformed entries with a warning."""
    if value is None:
        return ()
    if not isinstance(value, list):
        logger.warning(f"Ignoring dnsRecords: expected a list, got {type(value).__name__}")
        return ()

    records: List[RecordRequest] = []
    for item in value:
        if not isinstance(item, dict):
            logger.warning(f"Skipping dnsRecords entry: expected an object, got {item!r}")
            continue
        name = item.get("name")
        values = item.get("values") or []
        if not isinstance(name, str) or not name.strip():
            logger.warning(f"Skipping dnsRecords entry without a name: {item!r}")
            continue
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            logger.warning(f"Skipping dnsRecords entry {name!r}: values must be a list of strings")
            continue
        try:
            record_type = RecordType(str(item.get("type") or "").upper())
        except ValueError:
            logger.warning(
                f"Skipping dnsRecords entry {name!r}: unsupported type {item.get('type')!r}"
            )
            continue
        records.append(RecordRequest(name=name.strip(), type=record_type, values=tuple(values)))
    return tuple(records)


# =============================================================================
# Config Snapshot Parsing
# =============================================================================


def parse_config_snapshot(payload: Any) -> ConfigSnapshot:
    """Build a ConfigSnapshot from a raw configuration payload.

    Args:
        payload: Mapping, or JSON/YAML text. None or blank text means an empty
            configuration.

    Returns:
        ConfigSnapshot with defaults applied (mode auto, no cluster domains)

    Raises:
        ParseError: If the payload is not a well-formed object
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")

    if payload is None:
        data: Any = {}
    elif isinstance(payload, str):
        if not payload.strip():
            data = {}
        else:
            try:
                data = yaml.safe_load(payload)
            except yaml.YAMLError as e:
                raise ParseError(f"Config payload is not valid JSON/YAML: {e}") from e
            if data is None:
                data = {}
    else:
        data = payload

    if not isinstance(data, dict):
        raise ParseError(f"Config payload must be an object, got {type(data).__name__}")

    raw_mode = data.get("acornDNS")
    mode = DNSMode.parse(raw_mode, DNSMode.AUTO)
    if raw_mode is not None and mode.value != str(raw_mode).strip().lower():
        logger.warning(f"Unrecognized acornDNS value {raw_mode!r}, defaulting to '{mode.value}'")

    endpoint = data.get("acornDNSEndpoint") or ""
    if not isinstance(endpoint, str):
        logger.warning(f"Ignoring acornDNSEndpoint {endpoint!r}: expected a string")
        endpoint = ""

    return ConfigSnapshot(
        mode=mode,
        cluster_domains=_parse_cluster_domains(data.get("clusterDomains")),
        endpoint=endpoint.strip(),
        records=_parse_record_requests(data.get("dnsRecords")),
    )


def load_config_snapshot(config_path: str) -> ConfigSnapshot:
    """Read and parse the config payload file. A missing file means defaults."""
    path = Path(config_path)
    if not path.exists():
        logger.debug(f"Config file {config_path} not found, using defaults")
        return ConfigSnapshot()
    try:
        text = path.read_text("utf-8")
    except OSError as e:
        raise ParseError(f"Failed to read config file {config_path}: {e}") from e
    return parse_config_snapshot(text)


# =============================================================================
# State Management
# =============================================================================


class RecordStore:
    """Stores the singleton DNS record as a JSON object on disk."""

    def __init__(self, path: str, name: str = "acorn-dns", namespace: str = "acorn-system"):
        self.path = Path(path)
        self.name = name
        self.namespace = namespace

    def empty_record(self, marker: DNSMode = DNSMode.AUTO) -> DNSRecordState:
        return DNSRecordState(name=self.name, namespace=self.namespace, state_marker=marker)

    def read(self) -> Tuple[Optional[DNSRecordState], bool]:
        if not self.path.exists():
            return None, False
        try:
            obj = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read record file {self.path}: {e}") from e
        if not isinstance(obj, dict):
            raise StorageError(f"Record file {self.path} does not contain an object")

        try:
            record = DNSRecordState.from_stored(obj)
        except ValueError as e:
            raise StorageError(f"Invalid record in {self.path}: {e}") from e

        # Never report "not found" here: the next write would overwrite another
        # installation's token.
        if (record.name, record.namespace) != (self.name, self.namespace):
            raise StorageError(
                f"Record file {self.path} holds {record.namespace}/{record.name}, "
                f"expected {self.namespace}/{self.name}"
            )
        return record, True

    def write(self, record: DNSRecordState) -> bool:
        """Create or fully replace the stored record. Returns True if created."""
        created = not self.path.exists()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(record.to_stored(), indent=2, sort_keys=True), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(f"Failed to write record file {self.path}: {e}") from e
        return created


class RecordWriter:
    def __init__(self, record_store: RecordStore):
        self.record_store = record_store

    def write(self, next_record: DNSRecordState, current: Optional[DNSRecordState]) -> bool:
        """Persist next_record. Returns False when the stored record already matches."""
        if current == next_record:
            logger.debug(f"Record {next_record.namespace}/{next_record.name} unchanged")
            return False

        created = self.record_store.write(next_record)
        if created or current is None:
            logger.info(
                f"Created record {next_record.namespace}/{next_record.name} "
                f"(state: {next_record.state_marker.value})"
            )
        else:
            changes = current.diff(next_record)
            summary = ", ".join(f"{k}: {old!r} -> {new!r}" for k, (old, new) in changes.items())
            logger.info(f"Updated record {next_record.namespace}/{next_record.name}: {summary}")
        return True


# =============================================================================
# Decision Engine
# =============================================================================


def decide(snapshot: ConfigSnapshot, current: DNSRecordState) -> Decision:
    """Map (desired mode, cluster domains, current record) to registrar calls
    and the next record.

    A held domain is never reserved again; it is only released on a
    transition to disabled, or to auto when cluster domains are present.
    """
    if snapshot.mode == DNSMode.DISABLED:
        return _release(current, DNSMode.DISABLED)

    if snapshot.mode == DNSMode.AUTO and snapshot.cluster_domains:
        return _release(current, DNSMode.AUTO)

    # enabled, or auto without cluster domains
    if current.holds_domain:
        return Decision(actions=(), next_record=current.with_changes(state_marker=snapshot.mode))

    return Decision(
        actions=(RegistrarAction(kind=ActionKind.RESERVE),),
        next_record=current.with_changes(state_marker=snapshot.mode, domain="", token=""),
    )


def _release(current: DNSRecordState, marker: DNSMode) -> Decision:
    actions: Tuple[RegistrarAction, ...] = ()
    if current.holds_domain:
        actions = (
            RegistrarAction(kind=ActionKind.PURGE, domain=current.domain, token=current.token),
        )
    return Decision(
        actions=actions,
        next_record=current.with_changes(state_marker=marker, domain="", token=""),
    )


def apply_decision(decision: Decision, registrar: DNSRegistrar, endpoint: str) -> DNSRecordState:
    """Issue the planned registrar calls in order and return the completed record.

    RegistrarError propagates on the first failure.
    """
    next_record = decision.next_record
    for action in decision.actions:
        if action.kind == ActionKind.RESERVE:
            logger.info(f"Reserving managed domain via {registrar.name}")
            domain, token = registrar.reserve_domain(endpoint)
            next_record = next_record.with_changes(domain=domain, token=token)
        elif action.kind == ActionKind.PURGE:
            logger.info(f"Releasing managed domain {action.domain}")
            registrar.purge_records(endpoint, action.domain, action.token)
    return next_record


# =============================================================================
# Core Reconciler
# =============================================================================


class DNSReconciler:
    def __init__(
        self,
        *,
        registrar: DNSRegistrar,
        record_store: RecordStore,
        default_endpoint: str = DEFAULT_DNS_ENDPOINT,
        writer: Optional[RecordWriter] = None,
    ):
        self.registrar = registrar
        self.record_store = record_store
        self.default_endpoint = default_endpoint
        self.writer = writer or RecordWriter(record_store)

    def reconcile(self, snapshot: ConfigSnapshot) -> DNSRecordState:
        """Run one reconciliation pass and return the persisted record.

        The record is written only after every registrar call succeeded.

        Raises:
            RegistrarError: If a registrar call fails
            StorageError: If the record cannot be read or written
        """
        current, found = self.record_store.read()
        if not found:
            current = None
        base = current or self.record_store.empty_record(snapshot.mode)

        decision = decide(snapshot, base)
        endpoint = snapshot.endpoint or self.default_endpoint
        logger.debug(
            f"DNS mode '{snapshot.mode.value}', cluster domains {list(snapshot.cluster_domains)}, "
            f"planned actions {[a.kind.value for a in decision.actions]}"
        )

        next_record = apply_decision(decision, self.registrar, endpoint)
        try:
            self.writer.write(next_record, current)
        except StorageError:
            if decision.reserves:
                logger.error(
                    f"Reserved domain {next_record.domain} could not be persisted; "
                    f"release it manually if the next pass reserves another"
                )
            raise
        return next_record


class DNSRenewer:
    """Maintenance calls against a held managed domain.

    Runs on its own timer; it never changes the persisted record.
    """

    def __init__(
        self,
        *,
        registrar: DNSRegistrar,
        record_store: RecordStore,
        default_endpoint: str = DEFAULT_DNS_ENDPOINT,
    ):
        self.registrar = registrar
        self.record_store = record_store
        self.default_endpoint = default_endpoint

    def _held_record(self) -> Optional[DNSRecordState]:
        record, found = self.record_store.read()
        if not found or record is None or not record.holds_domain:
            return None
        return record

    def renew(self, snapshot: ConfigSnapshot, version: str = "") -> Optional[RenewResponse]:
        record = self._held_record()
        if record is None:
            logger.debug("No managed domain held, skipping renewal")
            return None

        endpoint = snapshot.endpoint or self.default_endpoint
        response = self.registrar.renew(
            endpoint,
            record.domain,
            record.token,
            RenewRequest(records=snapshot.records, version=version),
        )
        logger.info(f"Renewed managed domain {record.domain}")

        if response.out_of_sync_records:
            missing = {(p.fqdn.rstrip("."), p.type) for p in response.out_of_sync_records}
            to_publish = [
                r
                for r in snapshot.records
                if (_fqdn(r.name, record.domain), r.type) in missing
            ]
            logger.warning(
                f"{len(response.out_of_sync_records)} record(s) out of sync for "
                f"{record.domain}, republishing {len(to_publish)}"
            )
            if to_publish:
                self.registrar.create_records(endpoint, record.domain, record.token, to_publish)
        return response

    def publish(self, records: Sequence[RecordRequest], endpoint: str = "") -> bool:
        record = self._held_record()
        if record is None or not records:
            return False
        self.registrar.create_records(
            endpoint or self.default_endpoint, record.domain, record.token, list(records)
        )
        return True

    def remove(self, fqdn: str, endpoint: str = "") -> bool:
        record = self._held_record()
        if record is None:
            return False
        self.registrar.delete_record(
            endpoint or self.default_endpoint, record.domain, fqdn, record.token
        )
        return True


def _fqdn(name: str, domain: str) -> str:
    name = name.rstrip(".")
    if name == domain or name.endswith("." + domain):
        return name
    return f"{name}.{domain}"


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not ACORN_DNS_ENDPOINT:
        errors.append("ACORN_DNS_ENDPOINT must not be empty")
    elif not ACORN_DNS_ENDPOINT.startswith(("http://", "https://")):
        errors.append(f"ACORN_DNS_ENDPOINT must be an http(s) URL: {ACORN_DNS_ENDPOINT}")

    if not DNS_RECORD_NAME or not DNS_RECORD_NAMESPACE:
        errors.append("DNS_RECORD_NAME and DNS_RECORD_NAMESPACE must not be empty")

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")

    if REGISTRAR_TIMEOUT_SECONDS <= 0:
        errors.append("REGISTRAR_TIMEOUT_SECONDS must be positive")

    if RENEW_INTERVAL_SECONDS < 0:
        errors.append("RENEW_INTERVAL_SECONDS must not be negative")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def run_pass(reconciler: DNSReconciler, config_path: str) -> Optional[ConfigSnapshot]:
    """Load the config and reconcile once. Returns the snapshot, or None on failure."""
    try:
        snapshot = load_config_snapshot(config_path)
        record = reconciler.reconcile(snapshot)
    except AcornDNSError as e:
        logger.error(f"Reconciliation failed: {e}")
        if isinstance(e, RegistrarError) and e.is_auth_error:
            logger.error(
                f"{reconciler.registrar.name} rejected the domain token; "
                f"check the record in {reconciler.record_store.path}"
            )
        return None
    domain = record.domain or "<none>"
    logger.info(f"DNS state '{record.state_marker.value}', managed domain {domain}")
    return snapshot


def main():
    """Main entry point."""
    logger.info(f"acorn-dns: {ACORN_CONFIG_PATH} -> {DNS_RECORD_NAMESPACE}/{DNS_RECORD_NAME}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    registrar = AcornDNSRegistrar(timeout_seconds=REGISTRAR_TIMEOUT_SECONDS)
    record_store = RecordStore(STATE_PATH, name=DNS_RECORD_NAME, namespace=DNS_RECORD_NAMESPACE)
    reconciler = DNSReconciler(
        registrar=registrar, record_store=record_store, default_endpoint=ACORN_DNS_ENDPOINT
    )
    renewer = DNSRenewer(
        registrar=registrar, record_store=record_store, default_endpoint=ACORN_DNS_ENDPOINT
    )

    logger.info(f"Registrar: {registrar.name} ({ACORN_DNS_ENDPOINT})")
    logger.info(f"Sync mode: {SYNC_MODE}")

    try:
        if SYNC_MODE == "once":
            if run_pass(reconciler, ACORN_CONFIG_PATH) is None:
                sys.exit(1)
            return

        poll_interval = max(5, POLL_INTERVAL_SECONDS)
        logger.info(f"Resync interval: {poll_interval}s")
        if RENEW_INTERVAL_SECONDS:
            logger.info(f"Renew interval: {RENEW_INTERVAL_SECONDS}s")

        snapshot = run_pass(reconciler, ACORN_CONFIG_PATH)
        last_config_mtime = get_config_file_mtime(ACORN_CONFIG_PATH)
        last_resync = time.monotonic()
        last_renew = time.monotonic()

        while True:
            time.sleep(5)
            now = time.monotonic()

            current_mtime = get_config_file_mtime(ACORN_CONFIG_PATH)
            if current_mtime != last_config_mtime:
                logger.info(f"Config change detected in: {Path(ACORN_CONFIG_PATH).name}")
                last_config_mtime = current_mtime
                snapshot = run_pass(reconciler, ACORN_CONFIG_PATH) or snapshot
                last_resync = now
            elif now - last_resync >= poll_interval:
                snapshot = run_pass(reconciler, ACORN_CONFIG_PATH) or snapshot
                last_resync = now

            if RENEW_INTERVAL_SECONDS and snapshot and now - last_renew >= RENEW_INTERVAL_SECONDS:
                try:
                    renewer.renew(snapshot)
                except AcornDNSError as e:
                    logger.error(f"Renewal failed: {e}")
                last_renew = now

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
