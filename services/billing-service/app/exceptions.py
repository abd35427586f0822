"""Errors raised by the billing core and its persistence layer."""


class BillingError(Exception):
    """Base class for all billing-service errors"""


class InvalidRange(BillingError, ValueError):
    """start_date falls after end_date"""

    def __init__(self, start_date, end_date):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(f"start_date ({start_date}) must be less than or equal to end_date ({end_date})")


class NotFound(BillingError, LookupError):
    entity = "Record"

    def __init__(self, identifier):
        self.identifier = identifier
        super().__init__(f"{self.entity} with ID {identifier} not found")


class UnknownClient(NotFound):
    entity = "Client"


class UnknownInvoice(NotFound):
    entity = "Invoice"


class UnknownPayment(NotFound):
    entity = "Payment"


class UnknownWorkType(NotFound):
    entity = "Work type"


class UnknownTimeEntry(NotFound):
    entity = "Time entry"


class UnknownExpense(NotFound):
    entity = "Expense"


class UnknownInvoiceLine(NotFound):
    entity = "Invoice line"


class OverApplication(BillingError, ValueError):
    """Payment applications exceed the payment amount or an invoice total"""


class InvoiceNotPayable(BillingError, ValueError):
    def __init__(self, invoice_number, status):
        self.invoice_number = invoice_number
        self.status = status
        super().__init__(f"Invoice {invoice_number} is {status} and cannot receive payments")


class InvalidStatusTransition(BillingError, ValueError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change invoice status from '{current}' to '{requested}'")


class DuplicateInvoiceNumber(BillingError):
    def __init__(self, invoice_number):
        self.invoice_number = invoice_number
        super().__init__(f"Invoice number {invoice_number} already exists")


class DuplicateWorkType(BillingError):
    def __init__(self, code):
        self.code = code
        super().__init__(f"Work type '{code}' already exists")


class EntryAlreadyBilled(BillingError, ValueError):
    def __init__(self, entry_id, invoice_id):
        self.entry_id = entry_id
        self.invoice_id = invoice_id
        super().__init__(f"Time entry {entry_id} is already billed on invoice {invoice_id}")


class RenderFailure(BillingError, ValueError):
    """Invoice or statement data is not complete enough to produce a document"""


class ConcurrentBilling(BillingError):
    """Another invoice claimed some of the entries between the check and the update"""

    def __init__(self, invoice_number, lost_count, entry_count):
        self.invoice_number = invoice_number
        self.lost_count = lost_count
        self.entry_count = entry_count
        super().__init__(
            f"{lost_count} of {entry_count} time entries were billed elsewhere "
            f"while invoice {invoice_number} was being created"
        )


class InvalidExpense(BillingError, ValueError):
    """Expense values that are only invalid in combination with the stored record"""
