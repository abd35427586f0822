from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from . import schemas
from .core.logging import get_logger
from .money import billable_amount, hours, round_half_away

logger = get_logger(__name__)

DEFAULT_WINDOWS = (30, 60, 90)
TOP_CLIENT_LIMIT = 5
WEEKS_FOR_AVERAGE = 4

PENDING_STATUSES = (schemas.InvoiceStatus.SENT, schemas.InvoiceStatus.PARTIALLY_PAID)
NON_OBLIGATION_STATUSES = (schemas.InvoiceStatus.DRAFT, schemas.InvoiceStatus.VOIDED)


@dataclass
class DataPoint:
    """One dated amount of an income or expense series"""
    day: date
    amount_cents: int


def sum_between(points: Iterable[DataPoint], start: date, end: date, include_end: bool = True) -> int:
    if include_end:
        return sum(point.amount_cents for point in points if start <= point.day <= end)
    return sum(point.amount_cents for point in points if start <= point.day < end)


def compare(current: int, previous: int) -> Optional[schemas.PeriodComparison]:
    """Percentage change of a window against the one before it.

    No comparison when both are zero; a change from zero reports as 100%.
    """
    if previous == 0:
        if current == 0:
            return None
        return schemas.PeriodComparison(percent=100.0, higher=current > 0)
    percent = abs(current - previous) / abs(previous) * 100
    return schemas.PeriodComparison(percent=percent, higher=current > previous)


def expense_net(expense: schemas.Expense) -> int:
    """Refunds always reduce spending, whatever sign they were stored with"""
    total = expense.price_cents * expense.quantity
    return -abs(total) if expense.is_refund else total


def is_obligation(invoice: schemas.Invoice) -> bool:
    return invoice.status not in NON_OBLIGATION_STATUSES


class DashboardAggregator:
    """Summary statistics over already fetched invoices, payments, time and expenses.

    ``as_of`` stands in for "today" so results are reproducible.
    """

    def __init__(self, as_of: date):
        self.as_of = as_of

    # --- status totals ---

    def status_totals(self, invoices: Sequence[schemas.Invoice]) -> schemas.StatusTotals:
        totals = schemas.StatusTotals(counts={status.value: 0 for status in schemas.InvoiceStatus})
        obligations = []

        for invoice in invoices:
            totals.counts[invoice.status.value] += 1
            if invoice.status == schemas.InvoiceStatus.PAID:
                totals.revenue_cents += invoice.total_cents
                if self._in_current_month(invoice.invoice_date):
                    totals.paid_this_month_cents += invoice.total_cents
            elif invoice.status in PENDING_STATUSES:
                totals.pending_cents += invoice.total_cents
                if invoice.due_date < self.as_of:
                    totals.overdue_cents += invoice.total_cents
            elif invoice.status == schemas.InvoiceStatus.DRAFT:
                totals.draft_cents += invoice.total_cents

            if invoice.status != schemas.InvoiceStatus.VOIDED:
                obligations.append(invoice.total_cents)

        if obligations:
            totals.average_invoice_cents = round_half_away(Decimal(sum(obligations)) / len(obligations))
        return totals

    # --- time ---

    def uninvoiced(
        self,
        entries: Iterable[schemas.TimeEntry],
        clients: Dict[int, schemas.Client]
    ) -> schemas.UninvoicedSummary:
        """Unbilled work valued at each client's current rate and discount"""
        summary = schemas.UninvoicedSummary()
        for entry in entries:
            if entry.invoice_id is not None:
                continue
            client = clients.get(entry.client_id)
            if client is None:
                logger.warning(f"Skipping time entry {entry.id}: client {entry.client_id} not found")
                continue
            summary.entry_count += 1
            summary.minutes += entry.minutes_spent
            summary.amount_cents += billable_amount(
                entry.minutes_spent, client.hourly_rate_cents, client.discount_percent or 0
            )
        summary.hours = hours(summary.minutes)
        return summary

    def hours_this_month(self, entries: Iterable[schemas.TimeEntry]) -> float:
        minutes = sum(entry.minutes_spent for entry in entries if self._in_current_month(entry.work_date))
        return hours(minutes)

    def average_hours_per_week(self, entries: Iterable[schemas.TimeEntry]) -> float:
        """Average over the last four weeks, today included"""
        start = self.as_of - timedelta(days=WEEKS_FOR_AVERAGE * 7 - 1)
        minutes = sum(entry.minutes_spent for entry in entries if start <= entry.work_date <= self.as_of)
        return round(hours(minutes) / WEEKS_FOR_AVERAGE, 2)

    # --- income and expense series ---

    def income_series(
        self,
        basis: schemas.AccountingBasis,
        invoices: Iterable[schemas.Invoice],
        payments: Iterable[schemas.Payment],
        entries: Iterable[schemas.TimeEntry],
        clients: Dict[int, schemas.Client]
    ) -> List[DataPoint]:
        if basis == schemas.AccountingBasis.CASH:
            return [DataPoint(payment.payment_date, payment.amount_cents) for payment in payments]

        if basis == schemas.AccountingBasis.ACCRUAL:
            return [
                DataPoint(invoice.invoice_date, invoice.total_cents)
                for invoice in invoices if is_obligation(invoice)
            ]

        points = []
        for entry in entries:
            client = clients.get(entry.client_id)
            if client is None:
                continue
            points.append(DataPoint(
                entry.work_date,
                billable_amount(entry.minutes_spent, client.hourly_rate_cents, client.discount_percent or 0)
            ))
        return points

    def expense_series(self, expenses: Iterable[schemas.Expense]) -> List[DataPoint]:
        return [DataPoint(expense.expense_date, expense_net(expense)) for expense in expenses]

    def period_window(self, days: int, income: List[DataPoint], expenses: List[DataPoint]) -> schemas.PeriodWindow:
        """Trailing ``days`` window ending today and the window of equal width before it.

        Both windows span exactly ``days`` calendar days, ``as_of`` included in the current one.
        """
        start = self.as_of - timedelta(days=days - 1)
        previous_start = start - timedelta(days=days)

        income_cents = sum_between(income, start, self.as_of)
        previous_income = sum_between(income, previous_start, start, include_end=False)
        expenses_cents = sum_between(expenses, start, self.as_of)
        previous_expenses = sum_between(expenses, previous_start, start, include_end=False)
        net = income_cents - expenses_cents
        previous_net = previous_income - previous_expenses

        return schemas.PeriodWindow(
            days=days,
            start_date=start,
            end_date=self.as_of,
            previous_start_date=previous_start,
            previous_end_date=start - timedelta(days=1),
            income_cents=income_cents,
            previous_income_cents=previous_income,
            expenses_cents=expenses_cents,
            previous_expenses_cents=previous_expenses,
            net_cents=net,
            previous_net_cents=previous_net,
            income_change=compare(income_cents, previous_income),
            expenses_change=compare(expenses_cents, previous_expenses),
            net_change=compare(net, previous_net)
        )

    def period_summary(
        self,
        windows: Sequence[int],
        basis: schemas.AccountingBasis,
        invoices: Sequence[schemas.Invoice],
        payments: Sequence[schemas.Payment],
        entries: Sequence[schemas.TimeEntry],
        clients: Dict[int, schemas.Client],
        expenses: Sequence[schemas.Expense]
    ) -> List[schemas.PeriodWindow]:
        income = self.income_series(basis, invoices, payments, entries, clients)
        spending = self.expense_series(expenses)
        return [self.period_window(days, income, spending) for days in windows]

    # --- invoiced amounts ---

    def invoiced_since(self, invoices: Iterable[schemas.Invoice], days: Optional[int] = None) -> int:
        """Total of real invoices dated in the last ``days`` days, or ever"""
        start = self.as_of - timedelta(days=days - 1) if days is not None else None
        return sum(
            invoice.total_cents for invoice in invoices
            if is_obligation(invoice)
            and (start is None or start <= invoice.invoice_date <= self.as_of)
        )

    def top_clients(
        self,
        invoices: Iterable[schemas.Invoice],
        clients: Dict[int, schemas.Client],
        limit: int = TOP_CLIENT_LIMIT
    ) -> List[schemas.TopClient]:
        totals: Dict[int, int] = {}
        names: Dict[int, Optional[str]] = {}
        for invoice in invoices:
            if not is_obligation(invoice):
                continue
            totals[invoice.client_id] = totals.get(invoice.client_id, 0) + invoice.total_cents
            names.setdefault(invoice.client_id, invoice.client_name)

        ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))[:limit]
        return [
            schemas.TopClient(
                client_id=client_id,
                client_name=clients[client_id].name if client_id in clients else names.get(client_id),
                invoiced_cents=amount
            )
            for client_id, amount in ranked
        ]

    def payments_this_month(self, payments: Iterable[schemas.Payment]) -> int:
        return sum(payment.amount_cents for payment in payments if self._in_current_month(payment.payment_date))

    # --- everything ---

    def summary(
        self,
        basis: schemas.AccountingBasis,
        invoices: Sequence[schemas.Invoice],
        payments: Sequence[schemas.Payment],
        entries: Sequence[schemas.TimeEntry],
        clients: Sequence[schemas.Client],
        expenses: Sequence[schemas.Expense],
        windows: Sequence[int] = DEFAULT_WINDOWS
    ) -> schemas.DashboardSummary:
        clients_by_id = {client.id: client for client in clients}

        summary = schemas.DashboardSummary(
            as_of=self.as_of,
            basis=basis,
            total_clients=len(clients_by_id),
            status_totals=self.status_totals(invoices),
            uninvoiced=self.uninvoiced(entries, clients_by_id),
            invoiced_last_30_days_cents=self.invoiced_since(invoices, 30),
            invoiced_last_60_days_cents=self.invoiced_since(invoices, 60),
            invoiced_last_90_days_cents=self.invoiced_since(invoices, 90),
            invoiced_all_time_cents=self.invoiced_since(invoices),
            hours_tracked_this_month=self.hours_this_month(entries),
            payments_received_this_month_cents=self.payments_this_month(payments),
            average_hours_per_week=self.average_hours_per_week(entries),
            expenses_net_cents=sum(expense_net(expense) for expense in expenses),
            top_clients=self.top_clients(invoices, clients_by_id),
            windows=self.period_summary(windows, basis, invoices, payments, entries, clients_by_id, expenses)
        )
        logger.debug(f"Dashboard summary as of {self.as_of} on {basis.value} basis")
        return summary

    def _in_current_month(self, day: date) -> bool:
        return day.year == self.as_of.year and day.month == self.as_of.month and day <= self.as_of
