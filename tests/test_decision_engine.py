"""Unit tests for the pure decision function and apply_decision."""

import itertools

import pytest

from acorn_dns.cli import (
    ActionKind,
    ConfigSnapshot,
    DNSMode,
    DNSRecordState,
    RegistrarAction,
    RegistrarError,
    apply_decision,
    decide,
)


def make_record(marker: DNSMode, domain: str = "", token: str = "") -> DNSRecordState:
    return DNSRecordState(
        name="acorn-dns",
        namespace="acorn-system",
        state_marker=marker,
        domain=domain,
        token=token,
    )


HELD = "held.oss-acorn.io"


class TestDecideEnabled:
    def test_reserves_when_no_domain_held(self) -> None:
        decision = decide(ConfigSnapshot(mode=DNSMode.ENABLED), make_record(DNSMode.AUTO))

        assert decision.actions == (RegistrarAction(kind=ActionKind.RESERVE),)
        assert decision.reserves
        assert decision.next_record.state_marker == DNSMode.ENABLED

    @pytest.mark.parametrize("marker", [DNSMode.ENABLED, DNSMode.AUTO])
    def test_keeps_held_domain(self, marker: DNSMode) -> None:
        current = make_record(marker, HELD, "tok")

        decision = decide(ConfigSnapshot(mode=DNSMode.ENABLED), current)

        assert decision.actions == ()
        assert decision.next_record == make_record(DNSMode.ENABLED, HELD, "tok")

    def test_cluster_domains_do_not_matter(self) -> None:
        current = make_record(DNSMode.ENABLED, HELD, "tok")

        decision = decide(
            ConfigSnapshot(mode=DNSMode.ENABLED, cluster_domains=("foo.com",)), current
        )

        assert decision.actions == ()
        assert decision.next_record.domain == HELD


class TestDecideDisabled:
    def test_purges_held_domain(self) -> None:
        decision = decide(
            ConfigSnapshot(mode=DNSMode.DISABLED), make_record(DNSMode.ENABLED, HELD, "tok")
        )

        assert decision.actions == (
            RegistrarAction(kind=ActionKind.PURGE, domain=HELD, token="tok"),
        )
        assert decision.next_record == make_record(DNSMode.DISABLED)

    def test_nothing_to_release(self) -> None:
        decision = decide(ConfigSnapshot(mode=DNSMode.DISABLED), make_record(DNSMode.AUTO))

        assert decision.actions == ()
        assert decision.next_record == make_record(DNSMode.DISABLED)


class TestDecideAuto:
    def test_cluster_domains_release_held_domain(self) -> None:
        decision = decide(
            ConfigSnapshot(mode=DNSMode.AUTO, cluster_domains=("foo.com",)),
            make_record(DNSMode.ENABLED, HELD, "tok"),
        )

        assert [a.kind for a in decision.actions] == [ActionKind.PURGE]
        assert decision.next_record == make_record(DNSMode.AUTO)

    def test_cluster_domains_without_held_domain(self) -> None:
        decision = decide(
            ConfigSnapshot(mode=DNSMode.AUTO, cluster_domains=("foo.com",)),
            make_record(DNSMode.DISABLED),
        )

        assert decision.actions == ()
        assert decision.next_record == make_record(DNSMode.AUTO)

    def test_no_cluster_domains_reserves(self) -> None:
        decision = decide(ConfigSnapshot(mode=DNSMode.AUTO), make_record(DNSMode.DISABLED))

        assert decision.reserves
        assert decision.next_record.state_marker == DNSMode.AUTO

    def test_no_cluster_domains_keeps_held_domain(self) -> None:
        decision = decide(
            ConfigSnapshot(mode=DNSMode.AUTO), make_record(DNSMode.ENABLED, HELD, "tok")
        )

        assert decision.actions == ()
        assert decision.next_record == make_record(DNSMode.AUTO, HELD, "tok")


SNAPSHOTS = [
    ConfigSnapshot(mode=DNSMode.ENABLED),
    ConfigSnapshot(mode=DNSMode.AUTO),
    ConfigSnapshot(mode=DNSMode.AUTO, cluster_domains=("foo.com",)),
    ConfigSnapshot(mode=DNSMode.DISABLED),
]

RECORDS = [
    make_record(DNSMode.ENABLED, HELD, "tok"),
    make_record(DNSMode.AUTO, HELD, "tok"),
    make_record(DNSMode.AUTO),
    make_record(DNSMode.DISABLED),
]


@pytest.mark.parametrize("snapshot,current", list(itertools.product(SNAPSHOTS, RECORDS)))
def test_never_reserves_while_holding_domain(
    snapshot: ConfigSnapshot, current: DNSRecordState
) -> None:
    decision = decide(snapshot, current)

    if current.holds_domain:
        assert not decision.reserves


@pytest.mark.parametrize("snapshot,current", list(itertools.product(SNAPSHOTS, RECORDS)))
def test_applying_decision_reaches_fixed_point(
    registrar, snapshot: ConfigSnapshot, current: DNSRecordState
) -> None:
    """Deciding again from the resulting record plans no registrar calls."""
    result = apply_decision(decide(snapshot, current), registrar, "https://dns.example.test/v1")

    again = decide(snapshot, result)

    assert again.actions == ()
    assert again.next_record == result
    assert bool(result.domain) == bool(result.token)
    if result.state_marker == DNSMode.DISABLED:
        assert result.domain == "" and result.token == ""


class TestApplyDecision:
    def test_fills_reserved_credentials(self, registrar) -> None:
        decision = decide(ConfigSnapshot(mode=DNSMode.ENABLED), make_record(DNSMode.AUTO))

        result = apply_decision(decision, registrar, "https://dns.example.test/v1")

        assert result == make_record(DNSMode.ENABLED, "test.oss-acorn.io", "token")
        assert registrar.reserve_calls == ["https://dns.example.test/v1"]

    def test_purges_with_held_credentials(self, registrar) -> None:
        decision = decide(
            ConfigSnapshot(mode=DNSMode.DISABLED), make_record(DNSMode.ENABLED, HELD, "tok")
        )

        apply_decision(decision, registrar, "https://dns.example.test/v1")

        assert registrar.purge_calls == [("https://dns.example.test/v1", HELD, "tok")]

    def test_propagates_registrar_error(self, registrar) -> None:
        registrar.fail_on = "reserve domain"
        decision = decide(ConfigSnapshot(mode=DNSMode.ENABLED), make_record(DNSMode.AUTO))

        with pytest.raises(RegistrarError) as exc_info:
            apply_decision(decision, registrar, "https://dns.example.test/v1")

        assert exc_info.value.operation == "reserve domain"
        assert exc_info.value.status_code == 503
