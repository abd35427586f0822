from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import schemas
from .core.logging import get_logger
from .exceptions import InvalidRange
from .money import amount_for_minutes, apply_discount

logger = get_logger(__name__)

GroupKey = Tuple[int, str]


class BillingCalculator:
    """Turns unbilled time entries into discounted invoice lines and totals"""

    def validate_range(self, start_date: date, end_date: date) -> None:
        if start_date > end_date:
            raise InvalidRange(start_date, end_date)

    def select_billable_entries(
        self,
        entries: Iterable[schemas.TimeEntry],
        client_id: int,
        start_date: date,
        end_date: date
    ) -> List[schemas.TimeEntry]:
        """Entries of the client inside [start_date, end_date] that are not on an invoice yet.

        Billed entries are dropped silently so that overlapping billing runs
        can never count the same work twice.
        """
        return [
            entry for entry in entries
            if entry.client_id == client_id
            and start_date <= entry.work_date <= end_date
            and entry.invoice_id is None
        ]

    def group_entries(self, entries: Sequence[schemas.TimeEntry]) -> Dict[GroupKey, List[schemas.TimeEntry]]:
        """Group entries by (work_type_id, project_name), keeping first-seen order"""
        groups: Dict[GroupKey, List[schemas.TimeEntry]] = {}
        for entry in entries:
            key = (entry.work_type_id, (entry.project_name or "").strip())
            groups.setdefault(key, []).append(entry)
        return groups

    def compile_description(self, entries: Sequence[schemas.TimeEntry]) -> Optional[str]:
        """Join the distinct, non-blank entry details of a group into one description"""
        details: List[str] = []
        for entry in entries:
            detail = (entry.detail or "").strip()
            if detail and detail not in details:
                details.append(detail)
        return "\n".join(details) if details else None

    def price_line(self, total_minutes: int, hourly_rate_cents: int, discount_percent: float = 0) -> Tuple[int, int, int]:
        """Return ``(pre_discount_cents, discount_cents, amount_cents)`` for one line"""
        pre_discount = amount_for_minutes(total_minutes, hourly_rate_cents)
        discount, amount = apply_discount(pre_discount, discount_percent)
        return pre_discount, discount, amount

    def totals_for_lines(self, lines: Iterable) -> Tuple[int, int, int]:
        """Return ``(subtotal_cents, discount_cents, total_cents)``.

        Lines carry their post-discount amount and their discount separately,
        so the subtotal is rebuilt as the sum of both.
        """
        subtotal = 0
        discount = 0
        for line in lines:
            subtotal += line.amount_cents + line.discount_cents
            discount += line.discount_cents
        return subtotal, discount, subtotal - discount

    def preview(
        self,
        client: schemas.Client,
        entries: Iterable[schemas.TimeEntry],
        start_date: date,
        end_date: date
    ) -> schemas.InvoicePreview:
        """Compute the lines an invoice would get, without touching any entry"""
        self.validate_range(start_date, end_date)

        billable = self.select_billable_entries(entries, client.id, start_date, end_date)
        discount_percent = client.discount_percent or 0

        lines = []
        for (work_type_id, project_name), group in self.group_entries(billable).items():
            total_minutes = sum(entry.minutes_spent for entry in group)
            pre_discount, discount, amount = self.price_line(
                total_minutes, client.hourly_rate_cents, discount_percent
            )
            first = group[0]
            lines.append(schemas.PreviewLine(
                work_type_id=work_type_id,
                work_type_code=first.work_type_code,
                work_type_description=first.work_type_description,
                project_name=project_name,
                total_minutes=total_minutes,
                hourly_rate_cents=client.hourly_rate_cents,
                pre_discount_cents=pre_discount,
                discount_cents=discount,
                amount_cents=amount,
                entry_count=len(group),
                time_entry_ids=[entry.id for entry in group],
                description=self.compile_description(group)
            ))

        subtotal, discount_total, total = self.totals_for_lines(lines)
        logger.debug(
            f"Billing preview for client {client.id} ({start_date} - {end_date}): "
            f"{len(billable)} entries, {len(lines)} lines, total {total}"
        )

        return schemas.InvoicePreview(
            client=client,
            start_date=start_date,
            end_date=end_date,
            lines=lines,
            subtotal_cents=subtotal,
            discount_cents=discount_total,
            total_cents=total,
            total_entries=len(billable),
            is_empty=not billable
        )

    def build_invoice(
        self,
        preview: schemas.InvoicePreview,
        invoice_number: int,
        invoice_date: date,
        due_date: date
    ) -> schemas.InvoiceDraft:
        """Turn a preview into the payload committed together with the billed entries"""
        lines = [
            schemas.InvoiceLineBase(
                work_type_id=line.work_type_id,
                project_name=line.project_name or None,
                total_minutes=line.total_minutes,
                hourly_rate_cents=line.hourly_rate_cents,
                discount_cents=line.discount_cents,
                amount_cents=line.amount_cents,
                description=line.description
            )
            for line in preview.lines
        ]
        time_entry_ids = [entry_id for line in preview.lines for entry_id in line.time_entry_ids]

        return schemas.InvoiceDraft(
            invoice_number=invoice_number,
            client_id=preview.client.id,
            invoice_date=invoice_date,
            due_date=due_date,
            status=schemas.InvoiceStatus.DRAFT,
            discount_percent=preview.client.discount_percent or 0,
            subtotal_cents=preview.subtotal_cents,
            discount_cents=preview.discount_cents,
            total_cents=preview.total_cents,
            lines=lines,
            time_entry_ids=time_entry_ids
        )

    def build_manual_invoice(
        self,
        client: schemas.Client,
        request: schemas.ManualInvoiceCreate,
        invoice_number: int,
        due_date: date
    ) -> schemas.InvoiceDraft:
        """Price hand-entered lines at the client's current rate and discount"""
        discount_percent = client.discount_percent or 0
        lines = []
        for line in request.lines:
            _, discount, amount = self.price_line(line.total_minutes, client.hourly_rate_cents, discount_percent)
            lines.append(schemas.InvoiceLineBase(
                work_type_id=line.work_type_id,
                project_name=(line.project_name or "").strip() or None,
                total_minutes=line.total_minutes,
                hourly_rate_cents=client.hourly_rate_cents,
                discount_cents=discount,
                amount_cents=amount,
                description=line.description
            ))
        subtotal, discount_total, total = self.totals_for_lines(lines)

        return schemas.InvoiceDraft(
            invoice_number=invoice_number,
            client_id=client.id,
            invoice_date=request.invoice_date,
            due_date=due_date,
            discount_percent=discount_percent,
            subtotal_cents=subtotal,
            discount_cents=discount_total,
            total_cents=total,
            lines=lines
        )

    def default_due_date(self, invoice_date: date, payment_terms_days: int) -> date:
        """Calculate due date based on payment terms (net days)"""
        return invoice_date + timedelta(days=payment_terms_days)
