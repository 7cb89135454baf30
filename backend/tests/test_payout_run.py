from __future__ import annotations

from types import SimpleNamespace

from app.domain import DispatchSummary
from pipelines.payout_run import run


class StubDispatcher:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def process_payouts(self) -> DispatchSummary:
        self.calls.append("payouts")
        return DispatchSummary(processed=2, total_amount=3.5)

    def process_refunds(self) -> DispatchSummary:
        self.calls.append("refunds")
        return DispatchSummary(failed=1)

    def collect_deposits(self) -> DispatchSummary:
        self.calls.append("collect")
        return DispatchSummary(error="Treasury wallet not configured")


def test_single_action_runs_one_queue():
    dispatcher = StubDispatcher()
    results = run(dispatcher, "refunds")
    assert list(results) == ["refunds"]
    assert dispatcher.calls == ["refunds"]


def test_all_runs_queues_in_order():
    dispatcher = StubDispatcher()
    results = run(dispatcher, "all")

    assert dispatcher.calls == ["payouts", "refunds", "collect"]
    assert results["payouts"].to_dict()["processed"] == 2
    assert results["collect"].error == "Treasury wallet not configured"


def test_main_writes_summary_and_reports_failures(monkeypatch, tmp_path, test_settings):
    import pipelines.payout_run as payout_run

    dispatcher = StubDispatcher()
    summary_path = tmp_path / "reports" / "payouts.json"
    monkeypatch.setattr(
        payout_run,
        "_parse_args",
        lambda: SimpleNamespace(action="payouts", summary_path=summary_path),
    )
    monkeypatch.setattr(payout_run, "get_settings", lambda: test_settings)
    monkeypatch.setattr(payout_run, "init_db", lambda: None)
    monkeypatch.setattr(
        payout_run.PayoutDispatcher,
        "from_settings",
        classmethod(lambda cls, *args, **kwargs: dispatcher),
    )

    assert payout_run.main() == 0
    assert summary_path.exists()
    assert '"processed": 2' in summary_path.read_text()

    monkeypatch.setattr(
        payout_run,
        "_parse_args",
        lambda: SimpleNamespace(action="refunds", summary_path=None),
    )
    assert payout_run.main() == 1


def test_unconfirmed_transfers_fail_the_run(monkeypatch, test_settings):
    import pipelines.payout_run as payout_run

    dispatcher = StubDispatcher()
    dispatcher.process_payouts = lambda: DispatchSummary(processed=1, unconfirmed=1)
    monkeypatch.setattr(
        payout_run,
        "_parse_args",
        lambda: SimpleNamespace(action="payouts", summary_path=None),
    )
    monkeypatch.setattr(payout_run, "get_settings", lambda: test_settings)
    monkeypatch.setattr(payout_run, "init_db", lambda: None)
    monkeypatch.setattr(
        payout_run.PayoutDispatcher,
        "from_settings",
        classmethod(lambda cls, *args, **kwargs: dispatcher),
    )

    assert payout_run.main() == 1
