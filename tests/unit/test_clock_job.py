"""Unit tests for the billing clock command line entry point"""

import pytest
from datetime import date

from lease_billing.domain.models import ClockRunSummary
from lease_billing.jobs import run_billing_clock


def test_parse_date():
    assert run_billing_clock.parse_args(["--date", "2024-01-31"]).date == date(2024, 1, 31)
    assert run_billing_clock.parse_args([]).date is None


def test_rejects_bad_date():
    with pytest.raises(SystemExit):
        run_billing_clock.parse_args(["--date", "31/01/2024"])


@pytest.mark.parametrize("errors, exit_code", [([], 0), (["sched_1: boom"], 1)])
def test_exit_code_reflects_errors(monkeypatch, errors, exit_code):
    seen = {}

    class StubClock:
        def __init__(self, *args, **kwargs):
            pass

        async def run_once(self, today=None):
            seen["today"] = today
            return ClockRunSummary(run_date=today, errors=errors)

    monkeypatch.setattr(run_billing_clock, "BillingClock", StubClock)
    monkeypatch.setattr(run_billing_clock, "setup_logging", lambda level: None)

    assert run_billing_clock.main(["--date", "2024-01-31"]) == exit_code
    assert seen["today"] == date(2024, 1, 31)
