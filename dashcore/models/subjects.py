# dashcore/models/subjects.py
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ISO-8601 date or datetime, or epoch milliseconds
DueValue = Union[int, str]


class SubjectType(str, Enum):
    INSTALLMENT = "installment"
    DELIVERY = "delivery"
    COMPLAINT = "complaint"


class _Subject(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)


class InstallmentSubject(_Subject):
    """One unpaid entry of an EMI sale's installment schedule."""
    subjectType: Literal[SubjectType.INSTALLMENT] = SubjectType.INSTALLMENT
    saleId: str
    installmentNumber: int
    amount: float
    dueDate: DueValue
    customerId: str = ""
    customerName: str = ""
    invoiceNumber: str = ""
    phoneNumber: str = ""

    @property
    def subject_id(self) -> str:
        return f"{self.saleId}:{self.installmentNumber}"

    @property
    def due(self) -> DueValue:
        return self.dueDate


class DeliverySubject(_Subject):
    """A sale whose delivery is scheduled but not yet done."""
    subjectType: Literal[SubjectType.DELIVERY] = SubjectType.DELIVERY
    saleId: str
    scheduledDate: DueValue
    customerId: str = ""
    customerName: str = ""
    invoiceNumber: str = ""
    address: str = ""
    phoneNumber: str = ""
    itemCount: int = 0

    @property
    def subject_id(self) -> str:
        return self.saleId

    @property
    def due(self) -> DueValue:
        return self.scheduledDate


class ComplaintSubject(_Subject):
    """An open complaint with an expected resolution date."""
    subjectType: Literal[SubjectType.COMPLAINT] = SubjectType.COMPLAINT
    complaintId: str
    expectedResolutionDate: DueValue
    complaintNumber: str = ""
    customerName: str = ""
    customerPhone: str = ""
    title: str = ""
    severity: str = "medium"
    status: str = "open"
    assigneeType: str = ""
    assignedEmployeeId: str = ""
    assignedEmployeeName: str = ""

    @property
    def subject_id(self) -> str:
        return self.complaintId

    @property
    def due(self) -> DueValue:
        return self.expectedResolutionDate


Subject = Annotated[
    Union[InstallmentSubject, DeliverySubject, ComplaintSubject],
    Field(discriminator="subjectType"),
]

subject_adapter = TypeAdapter(Subject)
