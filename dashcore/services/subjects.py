# dashcore/services/subjects.py
"""Pulling notification subjects out of sales and complaint records, and wording them."""
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Tuple

from dashcore.models.notification import UrgencyTier
from dashcore.models.record import Document
from dashcore.models.subjects import (
    ComplaintSubject,
    DeliverySubject,
    InstallmentSubject,
    Subject,
    SubjectType,
    subject_adapter,
)
from dashcore.services.urgency import Urgency

SALES = "sales"
COMPLAINTS = "complaints"
EMPLOYEES = "employees"

CLOSED_COMPLAINT_STATUSES = frozenset({"resolved", "closed"})
EMPLOYEE_ASSIGNEE = "employee"

SEVERITY_PRIORITY = {
    "critical": "high",
    "high": "high",
    "medium": "medium",
    "low": "low",
}


@dataclass(frozen=True)
class Extracted:
    """A subject found in a source record, not yet validated."""
    subject_type: SubjectType
    subject_id: str
    payload: Dict[str, Any]

    def build(self) -> Subject:
        return subject_adapter.validate_python(
            {"subjectType": self.subject_type, **self.payload}
        )


def _blank(value: Any) -> bool:
    # records without a date have nothing to be due
    return value is None or (isinstance(value, str) and not value.strip())


def installments(sale: Document) -> Iterator[Extracted]:
    """Unpaid schedule entries of an EMI sale. Paid entries count as resolved."""
    details = sale.get("emiDetails")
    schedule = (details.get("schedule") if isinstance(details, dict) else None) or []
    if not isinstance(schedule, list):
        schedule = [schedule]
    for index, entry in enumerate(schedule):
        if not isinstance(entry, dict):
            yield Extracted(SubjectType.INSTALLMENT, f"{sale.id}:#{index + 1}", {"saleId": sale.id})
            continue
        if entry.get("paid") or _blank(entry.get("dueDate")):
            continue
        number = entry.get("installmentNumber", index + 1)
        yield Extracted(
            SubjectType.INSTALLMENT,
            f"{sale.id}:{number}",
            {
                "saleId": sale.id,
                "installmentNumber": number,
                "amount": entry.get("amount"),
                "dueDate": entry.get("dueDate"),
                "customerId": sale.get("customerId") or "",
                "customerName": sale.get("customerName") or "",
                "invoiceNumber": sale.get("invoiceNumber") or "",
                "phoneNumber": sale.get("customerPhone") or "",
            },
        )


def delivery(sale: Document) -> Iterator[Extracted]:
    if sale.get("deliveryStatus") != "scheduled" or _blank(sale.get("scheduledDeliveryDate")):
        return
    items = sale.get("items")
    yield Extracted(
        SubjectType.DELIVERY,
        sale.id,
        {
            "saleId": sale.id,
            "scheduledDate": sale.get("scheduledDeliveryDate"),
            "customerId": sale.get("customerId") or "",
            "customerName": sale.get("customerName") or "",
            "invoiceNumber": sale.get("invoiceNumber") or "",
            "address": sale.get("customerAddress") or "",
            "phoneNumber": sale.get("customerPhone") or "",
            "itemCount": len(items) if isinstance(items, list) else 0,
        },
    )


def complaint(record: Document) -> Iterator[Extracted]:
    if (record.get("status") or "open") in CLOSED_COMPLAINT_STATUSES:
        return
    if _blank(record.get("expectedResolutionDate")):
        return
    payload = {
        "complaintId": record.id,
        "expectedResolutionDate": record.get("expectedResolutionDate"),
    }
    for name in (
        "complaintNumber", "customerName", "customerPhone", "title", "severity",
        "status", "assigneeType", "assignedEmployeeId", "assignedEmployeeName",
    ):
        value = record.get(name)
        if value is not None:
            payload[name] = value
    yield Extracted(SubjectType.COMPLAINT, record.id, payload)


def format_currency(amount: float) -> str:
    return f"₹{amount:,.2f}"


def _days(count: int) -> str:
    return f"{count} day" if count == 1 else f"{count} days"


def describe(subject: Subject, urgency: Urgency, for_requester: bool = True) -> Tuple[str, str, str]:
    """Returns (title, message, priority) for a subject at a given urgency."""
    tier = urgency.tier

    if isinstance(subject, InstallmentSubject):
        amount = format_currency(subject.amount)
        if tier is UrgencyTier.OVERDUE:
            return (
                "EMI Payment Overdue",
                f"EMI payment of {amount} is {_days(urgency.days)} overdue for {subject.customerName}",
                "high",
            )
        if tier is UrgencyTier.DUE_TODAY:
            return (
                "EMI Payment Due Today",
                f"EMI payment of {amount} is due today for {subject.customerName}",
                "high",
            )
        return (
            "EMI Payment Due Soon",
            f"EMI payment of {amount} is due in {_days(urgency.days)} for {subject.customerName}",
            "medium",
        )

    if isinstance(subject, DeliverySubject):
        if tier is UrgencyTier.OVERDUE:
            return (
                "Delivery Overdue",
                f"Delivery for {subject.customerName} is {_days(urgency.days)} overdue",
                "high",
            )
        if tier is UrgencyTier.DUE_TODAY:
            return (
                "Delivery Scheduled Today",
                f"Delivery scheduled today for {subject.customerName}",
                "high",
            )
        return (
            "Delivery Due Soon",
            f"Delivery scheduled in {_days(urgency.days)} for {subject.customerName}",
            "medium",
        )

    if isinstance(subject, ComplaintSubject):
        who = f"Complaint #{subject.complaintNumber} from {subject.customerName}"
        if tier is UrgencyTier.OVERDUE:
            title = "Complaint Overdue" if for_requester else "Your Assigned Overdue Complaint"
            return title, f"{who} is {_days(urgency.days)} overdue", "high"
        if tier is UrgencyTier.DUE_TODAY:
            title = "Complaint Due Today" if for_requester else "Your Assigned Due Complaint"
            priority = SEVERITY_PRIORITY.get(subject.severity.lower(), "medium")
            return title, f"{who} is due for resolution today", priority
        title = "Complaint Due Soon" if for_requester else "Your Assigned Complaint"
        return title, f"{who} is due for resolution in {_days(urgency.days)}", "medium"

    raise TypeError(f"Unhandled subject type: {type(subject).__name__}")
