"""Tests for the reconciliation CLI."""

import json
from datetime import datetime

import pytest

from slip_payments.database import (
    ReconciliationRunRepository,
    RunKind,
    create_async_engine,
    create_tables,
    get_async_session_factory,
    session_scope,
)
from slip_payments.reconciliation import cli
from slip_payments.reconciliation.scheduler import ReconciliationScheduler
from slip_payments.services import PaymentService


@pytest.fixture(autouse=True)
def blob_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("BLOB_DIR", str(tmp_path / "slips"))


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'sweeps.db'}"


@pytest.fixture
def seed(database_url, deps):
    """Run ``fn(session, service)`` against the file database used by the sweep."""
    async def _seed(fn):
        engine = create_async_engine(database_url=database_url)
        await create_tables(engine)
        try:
            async with session_scope(get_async_session_factory(engine)) as session:
                return await fn(session, PaymentService(session, deps))
        finally:
            await engine.dispose()
    return _seed


class TestParser:
    """Tests for argument handling."""

    def test_no_command(self, capsys):
        assert cli.main([]) == cli.EXIT_REFUSED
        assert "slip-reconcile" in capsys.readouterr().out

    def test_year_without_month(self):
        assert cli.main(["monthly", "--year", "2024"]) == cli.EXIT_REFUSED

    def test_month_out_of_range(self):
        with pytest.raises(SystemExit):
            cli.main(["monthly", "--year", "2024", "--month", "13"])

    def test_defaults(self):
        args = cli.create_parser().parse_args(["monthly"])
        assert args.format == "json"
        assert args.year is None


class TestMain:
    """Tests for running sweeps from the command line."""

    def test_daily(self, capsys):
        assert cli.main(["daily"]) == cli.EXIT_OK

        data = json.loads(capsys.readouterr().out)
        assert data["kind"] == "daily"
        assert data["status"] == "completed"

    def test_monthly_text(self, capsys):
        assert cli.main(["monthly", "--year", "2024", "--month", "4", "--format", "text"]) == cli.EXIT_OK

        out = capsys.readouterr().out
        assert "MONTHLY RECONCILIATION SUMMARY" in out
        assert "Period: 2024-04-01 to 2024-05-01" in out

    def test_monthly_to_file(self, tmp_path):
        output = tmp_path / "april.csv"

        code = cli.main([
            "monthly", "--year", "2024", "--month", "4", "--format", "csv", "--output", str(output)
        ])

        assert code == cli.EXIT_OK
        assert output.read_text().startswith("cohort_id,currency")

    def test_runs_empty(self, capsys):
        assert cli.main(["runs"]) == cli.EXIT_OK
        assert json.loads(capsys.readouterr().out) == []


class TestRunSweep:
    """Tests for exit codes of one sweep."""

    async def test_refused_while_active(self, seed, database_url, deps, clock):
        async def start(session, service):
            await ReconciliationRunRepository(session).start(RunKind.DAILY.value, clock.now())

        await seed(start)

        code = await cli.run_sweep_async("daily", database_url=database_url, deps=deps)

        assert code == cli.EXIT_REFUSED

    async def test_failed_items_exit_code(self, seed, database_url, deps, monkeypatch):
        """Test a sweep with failed items completes with exit code 1."""
        async def overdue(session, service):
            await service.register_payment(
                member_id="member-1",
                cohort_id="cohort-a",
                expected_amount=50000,
                due_date=datetime(2024, 4, 1),
            )

        await seed(overdue)

        async def broken(self, session, payment_id, stats):
            raise RuntimeError("row locked")

        monkeypatch.setattr(ReconciliationScheduler, "_close_overdue_payment", broken)

        code = await cli.run_sweep_async("daily", database_url=database_url, deps=deps)

        assert code == cli.EXIT_ITEMS_FAILED

    async def test_monthly_with_seeded_payments(self, seed, database_url, deps, capsys):
        async def april(session, service):
            await service.register_payment(
                member_id="member-1",
                cohort_id="cohort-a",
                expected_amount=50000,
                due_date=datetime(2024, 4, 10),
            )

        await seed(april)

        code = await cli.run_sweep_async(
            "monthly", year=2024, month=4, database_url=database_url, deps=deps
        )

        assert code == cli.EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["totals"]["THB"]["outstanding"] == {"count": 1, "amount": 50000}
