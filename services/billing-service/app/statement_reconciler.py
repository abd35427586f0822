from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from . import schemas
from .core.logging import get_logger
from .exceptions import InvalidRange

logger = get_logger(__name__)

EXCLUDED_STATUSES = (schemas.InvoiceStatus.DRAFT, schemas.InvoiceStatus.VOIDED)

# Same-day ordering: invoices first, then payments
_INVOICE_RANK = 0
_PAYMENT_RANK = 1


class StatementReconciler:
    """Builds a client statement: beginning balance, dated transactions, running balance.

    Inputs are fully fetched records. Applications are trusted as written;
    over-application is rejected when payments are created, not here.
    """

    def build(
        self,
        client: schemas.Client,
        invoices: Iterable[schemas.Invoice],
        payments: Iterable[schemas.Payment],
        start_date: date,
        end_date: date,
        company: Optional[schemas.CompanyDetails] = None
    ) -> schemas.Statement:
        if start_date > end_date:
            raise InvalidRange(start_date, end_date)

        qualifying = self.qualifying_invoices(client.id, invoices)

        beginning_balance = 0
        entries: List[Tuple[tuple, schemas.StatementTransaction]] = []

        for invoice in qualifying.values():
            if invoice.invoice_date < start_date:
                beginning_balance += invoice.total_cents
            elif invoice.invoice_date <= end_date:
                entries.append((
                    (invoice.invoice_date, _INVOICE_RANK, invoice.invoice_number, 0),
                    self._invoice_transaction(invoice)
                ))

        for payment in payments:
            for application in payment.applications:
                invoice = qualifying.get(application.invoice_id)
                if invoice is None:
                    continue
                if payment.payment_date < start_date:
                    beginning_balance -= application.amount_cents
                elif payment.payment_date <= end_date:
                    entries.append((
                        (payment.payment_date, _PAYMENT_RANK, payment.id, application.id),
                        self._payment_transaction(payment, application, invoice)
                    ))

        entries.sort(key=lambda item: item[0])

        transactions = []
        running_balance = beginning_balance
        invoices_total = 0
        payments_total = 0
        for _, transaction in entries:
            running_balance += transaction.amount_cents
            transaction.running_balance_cents = running_balance
            if transaction.type == schemas.TransactionType.INVOICE:
                invoices_total += transaction.amount_cents
            else:
                payments_total -= transaction.amount_cents
            transactions.append(transaction)

        logger.debug(
            f"Statement for client {client.id} ({start_date} - {end_date}): "
            f"beginning {beginning_balance}, {len(transactions)} transactions, ending {running_balance}"
        )

        return schemas.Statement(
            client_id=client.id,
            client_name=client.name,
            client_email=client.email,
            start_date=start_date,
            end_date=end_date,
            beginning_balance_cents=beginning_balance,
            ending_balance_cents=running_balance,
            period_invoices_total_cents=invoices_total,
            period_payments_total_cents=payments_total,
            transactions=transactions,
            company=company or schemas.CompanyDetails()
        )

    @staticmethod
    def qualifying_invoices(client_id: int, invoices: Iterable[schemas.Invoice]) -> Dict[int, schemas.Invoice]:
        """The client's invoices that are real obligations (not draft, not voided), by id"""
        return {
            invoice.id: invoice
            for invoice in invoices
            if invoice.client_id == client_id and invoice.status not in EXCLUDED_STATUSES
        }

    @staticmethod
    def _invoice_transaction(invoice: schemas.Invoice) -> schemas.StatementTransaction:
        return schemas.StatementTransaction(
            type=schemas.TransactionType.INVOICE,
            date=invoice.invoice_date,
            document_number=f"INV-{invoice.invoice_number}",
            description=f"Invoice {invoice.invoice_number}",
            amount_cents=invoice.total_cents,
            running_balance_cents=0,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number
        )

    @staticmethod
    def _payment_transaction(
        payment: schemas.Payment,
        application: schemas.PaymentApplication,
        invoice: schemas.Invoice
    ) -> schemas.StatementTransaction:
        description = f"Payment on Invoice {invoice.invoice_number}"
        if payment.note and payment.note.strip():
            description = f"{description} - {payment.note.strip()}"
        return schemas.StatementTransaction(
            type=schemas.TransactionType.PAYMENT,
            date=payment.payment_date,
            document_number=f"PAY-{payment.id}",
            description=description,
            amount_cents=-application.amount_cents,
            running_balance_cents=0,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            payment_id=payment.id,
            payment_note=payment.note
        )
