"""Tests for the consultline command line."""

import json

from click.testing import CliRunner

from consultline.cli.main import main
from consultline.client import ConsultEngine
from consultline.models.session import SessionState, TerminationReason


def test_quote_with_enough_balance() -> None:
    result = CliRunner().invoke(main, ["quote", "--rate", "12", "--balance", "100", "--seconds", "125", "--json"])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["minimum_required"] == "60"
    assert data["shortfall"] == "0"
    assert data["cost"] == "25.00"
    assert data["seconds_until_exhaustion"] == 375.0


def test_quote_reports_shortfall() -> None:
    result = CliRunner().invoke(main, ["quote", "--rate", "10", "--balance", "40"])

    assert result.exit_code == 0, result.output
    assert "Insufficient balance" in result.output


def test_version() -> None:
    result = CliRunner().invoke(main, ["--version"])
    assert "0.1.0" in result.output


def test_session_can_leave_the_queue(monkeypatch, channel, ledger, rating_service, notifier, settings) -> None:
    engines = []

    def busy_advisor_engine(**kwargs):
        engine = ConsultEngine(settings, channel=channel, ledger=ledger, rating_service=rating_service,
                               notifier=notifier)
        # someone else is already with the advisor
        engine.queue.try_claim("adv-1")
        engines.append(engine)
        return engine

    monkeypatch.setattr("consultline.cli.session._get_engine", busy_advisor_engine)

    result = CliRunner().invoke(main, ["session", "adv-1", "--customer", "cust-1", "--rate", "10"], input="/end\n")

    assert result.exit_code == 0, result.output
    assert "Waiting for the advisor" in result.output
    machine = engines[0].sessions()[0]
    assert machine.state == SessionState.CANCELLED
    assert machine.termination_reason == TerminationReason.USER_CANCELLED
    assert channel.joined == []
    assert ledger.debit_calls == []
