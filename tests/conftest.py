"""Shared fixtures: an in-memory registrar with call tracking."""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

from acorn_dns.cli import (
    DNSRegistrar,
    RecordRequest,
    RecordStore,
    RegistrarError,
    RenewRequest,
    RenewResponse,
)


class MockRegistrar(DNSRegistrar):
    """Registrar double returning deterministic domains and recording calls."""

    def __init__(self, domain: str = "test.oss-acorn.io", token: str = "token"):
        self.domain = domain
        self.token = token
        self.reserve_calls: List[str] = []
        self.purge_calls: List[Tuple[str, str, str]] = []
        self.create_calls: List[Tuple[str, str, str, List[RecordRequest]]] = []
        self.renew_calls: List[Tuple[str, str, str, RenewRequest]] = []
        self.delete_calls: List[Tuple[str, str, str, str]] = []
        self.fail_on: Optional[str] = None
        self.renew_response: Optional[RenewResponse] = None

    @property
    def name(self) -> str:
        return "MockRegistrar"

    def _maybe_fail(self, operation: str) -> None:
        if self.fail_on == operation:
            raise RegistrarError(operation, "registrar unavailable", 503)

    def reserve_domain(self, endpoint: str) -> Tuple[str, str]:
        self.reserve_calls.append(endpoint)
        self._maybe_fail("reserve domain")
        return self.domain, self.token

    def create_records(
        self, endpoint: str, domain: str, token: str, records: Sequence[RecordRequest]
    ) -> None:
        self.create_calls.append((endpoint, domain, token, list(records)))
        self._maybe_fail("create records")

    def renew(
        self, endpoint: str, domain: str, token: str, renew_request: RenewRequest
    ) -> RenewResponse:
        self.renew_calls.append((endpoint, domain, token, renew_request))
        self._maybe_fail("renew")
        return self.renew_response or RenewResponse(name=domain)

    def delete_record(self, endpoint: str, domain: str, fqdn: str, token: str) -> None:
        self.delete_calls.append((endpoint, domain, fqdn, token))
        self._maybe_fail("delete record")

    def purge_records(self, endpoint: str, domain: str, token: str) -> None:
        self.purge_calls.append((endpoint, domain, token))
        self._maybe_fail("purge records")


@pytest.fixture
def registrar() -> MockRegistrar:
    return MockRegistrar()


@pytest.fixture
def record_store(tmp_path: Path) -> RecordStore:
    return RecordStore(str(tmp_path / "acorn-dns.json"))
