from datetime import date, timedelta

import pytest

from app import schemas
from app.reporting_service import DashboardAggregator, compare, expense_net

AS_OF = date(2024, 6, 15)


@pytest.fixture
def aggregator():
    return DashboardAggregator(as_of=AS_OF)


def make_expense(expense_id, price_cents, expense_date, quantity=1, is_refund=False):
    return schemas.Expense(
        id=expense_id,
        vendor="Hosting Co",
        item="Server",
        price_cents=price_cents,
        quantity=quantity,
        expense_date=expense_date,
        is_refund=is_refund,
    )


def test_compare_rules():
    assert compare(0, 0) is None
    assert compare(500, 0) == schemas.PeriodComparison(percent=100.0, higher=True)
    assert compare(-500, 0) == schemas.PeriodComparison(percent=100.0, higher=False)
    assert compare(150, 100) == schemas.PeriodComparison(percent=50.0, higher=True)
    assert compare(50, 200) == schemas.PeriodComparison(percent=75.0, higher=False)
    assert compare(100, -200).percent == 150.0


def test_expense_net_for_refunds():
    assert expense_net(make_expense(1, 1250, AS_OF, quantity=2)) == 2500
    assert expense_net(make_expense(2, 1000, AS_OF, is_refund=True)) == -1000
    assert expense_net(make_expense(3, -1000, AS_OF, is_refund=True)) == -1000


def test_status_totals(aggregator, make_invoice):
    invoices = [
        make_invoice(1, 10000, date(2024, 6, 1), status=schemas.InvoiceStatus.PAID),
        make_invoice(2, 20000, date(2024, 5, 1), status=schemas.InvoiceStatus.SENT, due_date=date(2024, 5, 31)),
        make_invoice(3, 30000, date(2024, 6, 10), status=schemas.InvoiceStatus.PARTIALLY_PAID,
                     due_date=date(2024, 7, 10)),
        make_invoice(4, 4000, date(2024, 6, 12), status=schemas.InvoiceStatus.DRAFT),
        make_invoice(5, 99900, date(2024, 6, 12), status=schemas.InvoiceStatus.VOIDED),
    ]

    totals = aggregator.status_totals(invoices)

    assert totals.revenue_cents == 10000
    assert totals.pending_cents == 50000
    assert totals.overdue_cents == 20000
    assert totals.draft_cents == 4000
    assert totals.paid_this_month_cents == 10000
    assert totals.average_invoice_cents == 16000
    assert totals.counts["voided"] == 1
    assert totals.counts["paid"] == 1


def test_uninvoiced_uses_current_client_settings(aggregator, make_client, make_entry):
    clients = {1: make_client(hourly_rate_cents=10000, discount_percent=10)}
    entries = [
        make_entry(90),
        make_entry(30),
        make_entry(60, invoice_id=3),
        make_entry(60, client_id=99),
    ]

    summary = aggregator.uninvoiced(entries, clients)

    assert summary.entry_count == 2
    assert summary.minutes == 120
    assert summary.hours == 2.0
    # per entry: 13500 + 4500
    assert summary.amount_cents == 18000


def test_windows_on_accrual_basis(aggregator, make_invoice):
    invoices = [
        make_invoice(1, 10000, AS_OF),
        make_invoice(2, 5000, AS_OF - timedelta(days=29)),
        make_invoice(3, 8000, AS_OF - timedelta(days=30)),
        make_invoice(4, 2000, AS_OF - timedelta(days=59)),
        make_invoice(6, 9000, AS_OF - timedelta(days=60)),
        make_invoice(5, 7000, AS_OF - timedelta(days=5), status=schemas.InvoiceStatus.DRAFT),
    ]
    expenses = [
        make_expense(1, 3000, AS_OF - timedelta(days=2)),
        make_expense(2, 1000, AS_OF - timedelta(days=3), is_refund=True),
    ]

    (window,) = aggregator.period_summary([30], schemas.AccountingBasis.ACCRUAL, invoices, [], [], {}, expenses)

    assert window.start_date == AS_OF - timedelta(days=29)
    assert window.previous_start_date == AS_OF - timedelta(days=59)
    assert window.previous_end_date == AS_OF - timedelta(days=30)
    assert window.income_cents == 15000
    assert window.previous_income_cents == 10000
    assert window.income_change == schemas.PeriodComparison(percent=50.0, higher=True)
    assert window.expenses_cents == 2000
    assert window.previous_expenses_cents == 0
    assert window.expenses_change == schemas.PeriodComparison(percent=100.0, higher=True)
    assert window.net_cents == 13000
    assert window.previous_net_cents == 10000


@pytest.mark.parametrize("days", [30, 60, 90])
def test_steady_activity_shows_no_change(make_invoice, days):
    as_of = date(2024, 6, 30)
    aggregator = DashboardAggregator(as_of=as_of)
    # one 100-cent invoice every day, reaching well past both windows
    invoices = [make_invoice(offset + 1, 100, as_of - timedelta(days=offset)) for offset in range(2 * days + 1)]

    (window,) = aggregator.period_summary([days], schemas.AccountingBasis.ACCRUAL, invoices, [], [], {}, [])

    assert (window.end_date - window.start_date).days + 1 == days
    assert (window.previous_end_date - window.previous_start_date).days + 1 == days
    assert window.previous_end_date == window.start_date - timedelta(days=1)
    assert window.income_cents == window.previous_income_cents == 100 * days
    assert window.income_change == schemas.PeriodComparison(percent=0.0, higher=False)


def test_income_series_follows_basis(aggregator, make_client, make_entry, make_invoice, make_payment):
    clients = {1: make_client(hourly_rate_cents=6000, discount_percent=0)}
    invoices = [make_invoice(1, 40000, AS_OF - timedelta(days=45))]
    payments = [make_payment(1, AS_OF - timedelta(days=3), [(1, 25000)])]
    entries = [make_entry(120, work_date=AS_OF - timedelta(days=1), invoice_id=1)]

    def income(basis):
        (window,) = aggregator.period_summary([30], basis, invoices, payments, entries, clients, [])
        return window.income_cents

    assert income(schemas.AccountingBasis.ACCRUAL) == 0
    assert income(schemas.AccountingBasis.CASH) == 25000
    assert income(schemas.AccountingBasis.TIME) == 12000


def test_no_activity_has_no_comparison(aggregator):
    (window,) = aggregator.period_summary([90], schemas.AccountingBasis.CASH, [], [], [], {}, [])

    assert window.income_change is None
    assert window.expenses_change is None
    assert window.net_change is None


def test_summary(aggregator, make_client, make_entry, make_invoice, make_payment):
    clients = [make_client(1, name="Alpha"), make_client(2, name="Beta")]
    invoices = [
        make_invoice(1, 10000, AS_OF - timedelta(days=10), client_id=1),
        make_invoice(2, 30000, AS_OF - timedelta(days=100), client_id=2),
        make_invoice(3, 5000, AS_OF - timedelta(days=40), client_id=1, status=schemas.InvoiceStatus.VOIDED),
    ]
    payments = [make_payment(1, date(2024, 6, 3), [(1, 4000)])]
    entries = [
        make_entry(240, work_date=date(2024, 6, 14)),
        make_entry(240, work_date=date(2024, 5, 30)),
        make_entry(60, work_date=date(2024, 3, 1)),
    ]

    summary = aggregator.summary(schemas.AccountingBasis.ACCRUAL, invoices, payments, entries, clients, [])

    assert summary.total_clients == 2
    assert summary.invoiced_last_30_days_cents == 10000
    assert summary.invoiced_last_90_days_cents == 10000
    assert summary.invoiced_all_time_cents == 40000
    assert summary.hours_tracked_this_month == 4.0
    assert summary.payments_received_this_month_cents == 4000
    assert summary.average_hours_per_week == 2.0
    assert [(top.client_name, top.invoiced_cents) for top in summary.top_clients] == [("Beta", 30000), ("Alpha", 10000)]
    assert [window.days for window in summary.windows] == [30, 60, 90]
