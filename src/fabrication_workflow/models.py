from __future__ import annotations

import re
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProjectStatus(str, Enum):
    PENDING_BLUEPRINT = "pending_blueprint"
    PENDING_COSTING = "pending_costing"
    PENDING_CUSTOMER_APPROVAL = "pending_customer_approval"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    FABRICATION = "fabrication"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ArtifactKind(str, Enum):
    BLUEPRINT = "blueprint"
    COSTING = "costing"


class PaymentPlan(str, Enum):
    STAGED = "staged"
    FULL = "full"


class PaymentStageLabel(str, Enum):
    DOWNPAYMENT = "downpayment"
    PROGRESS = "progress"
    COMPLETION = "completion"
    FULL = "full"


class PaymentStageStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    REJECTED = "rejected"


class RevisionType(str, Enum):
    MINOR = "minor"
    MAJOR = "major"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    APPOINTMENT_AGENT = "appointment_agent"
    SALES_STAFF = "sales_staff"
    ENGINEER = "engineer"
    CASHIER = "cashier"
    FABRICATION_STAFF = "fabrication_staff"
    ADMIN = "admin"
    SYSTEM = "system"


TERMINAL_STATUSES: frozenset[ProjectStatus] = frozenset({ProjectStatus.COMPLETED, ProjectStatus.CANCELLED})

PROJECT_STATUS_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.PENDING_BLUEPRINT: frozenset({ProjectStatus.PENDING_COSTING, ProjectStatus.CANCELLED}),
    ProjectStatus.PENDING_COSTING: frozenset({ProjectStatus.PENDING_CUSTOMER_APPROVAL, ProjectStatus.CANCELLED}),
    ProjectStatus.PENDING_CUSTOMER_APPROVAL: frozenset(
        {ProjectStatus.APPROVED, ProjectStatus.REVISION_REQUESTED, ProjectStatus.CANCELLED}
    ),
    ProjectStatus.REVISION_REQUESTED: frozenset(
        {ProjectStatus.PENDING_BLUEPRINT, ProjectStatus.PENDING_COSTING, ProjectStatus.CANCELLED}
    ),
    ProjectStatus.APPROVED: frozenset({ProjectStatus.FABRICATION, ProjectStatus.CANCELLED}),
    ProjectStatus.FABRICATION: frozenset({ProjectStatus.COMPLETED, ProjectStatus.CANCELLED}),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.CANCELLED: frozenset(),
}

# Stage in which a revision targeting each artifact kind is redone.
REVISION_REENTRY_STATUS: dict[ArtifactKind, ProjectStatus] = {
    ArtifactKind.BLUEPRINT: ProjectStatus.PENDING_BLUEPRINT,
    ArtifactKind.COSTING: ProjectStatus.PENDING_COSTING,
}

PAYMENT_STAGE_STATUS_TRANSITIONS: dict[PaymentStageStatus, frozenset[PaymentStageStatus]] = {
    PaymentStageStatus.PENDING: frozenset({PaymentStageStatus.SUBMITTED}),
    PaymentStageStatus.SUBMITTED: frozenset({PaymentStageStatus.VERIFIED, PaymentStageStatus.REJECTED}),
    PaymentStageStatus.REJECTED: frozenset({PaymentStageStatus.SUBMITTED}),
    PaymentStageStatus.VERIFIED: frozenset(),
}


# Ids double as directory names, so they must already be filesystem-safe.
PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._-]{0,126}[A-Za-z0-9._])?$")


def new_project_id(prefix: str = "PRJ") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def validate_project_id(value: str) -> str:
    """Return *value* unchanged if it is a usable project id.

    Raises:
        ValueError: If *value* is blank or would be rewritten on disk.
    """
    if not value.strip():
        raise ValueError("project_id must be non-empty")
    if not PROJECT_ID_PATTERN.fullmatch(value):
        raise ValueError(
            f"project_id {value!r} must start with a letter or digit and use only letters, digits, '.', '_' or '-'"
        )
    return value


def new_revision_id() -> str:
    return f"REV-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Intake and upload payloads (supplied by external collaborators)
# ---------------------------------------------------------------------------

class SiteAddress(BaseModel):
    street: str | None = None
    barangay: str | None = None
    city: str | None = None
    province: str | None = None
    zip_code: str | None = None
    country: str | None = None
    landmark: str | None = None


class ProjectDraft(BaseModel):
    """Creation payload handed over when an appointment is converted to a project."""

    customer_ref: str = Field(min_length=1)
    category: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    site_address: SiteAddress | None = None
    source_appointment_ref: str | None = None
    project_id: str | None = None

    @field_validator("project_id")
    @classmethod
    def _usable_id(cls, value: str | None) -> str | None:
        return None if value is None else validate_project_id(value)


class ArtifactUpload(BaseModel):
    """File metadata for a blueprint upload. The bytes live in external storage."""

    model_config = ConfigDict(frozen=True)

    filename: str = Field(min_length=1)
    original_name: str = ""
    uri: str = ""
    uploaded_by: str = Field(min_length=1)
    notes: str = ""


class CostingLineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item: str = Field(min_length=1)
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    total: Decimal

    @model_validator(mode="after")
    def _total_matches(self) -> "CostingLineItem":
        if self.total != self.quantity * self.unit_price:
            raise ValueError(
                f"line item {self.item!r}: total {self.total} != quantity {self.quantity} * unit_price {self.unit_price}"
            )
        return self


class CostingUpload(ArtifactUpload):
    total_amount: int | None = Field(default=None, gt=0)
    breakdown: list[CostingLineItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class ArtifactVersion(BaseModel):
    """One immutable blueprint or costing revision."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    kind: ArtifactKind
    version: int = Field(gt=0)
    filename: str
    original_name: str = ""
    uri: str = ""
    uploaded_by: str
    uploaded_at: datetime
    notes: str = ""
    # Costing only
    total_amount: int | None = None
    breakdown: tuple[CostingLineItem, ...] = ()
    blueprint_version: int | None = None

    @model_validator(mode="after")
    def _costing_fields_only_on_costing(self) -> "ArtifactVersion":
        if self.kind == ArtifactKind.BLUEPRINT and (
            self.total_amount is not None or self.breakdown or self.blueprint_version is not None
        ):
            raise ValueError("blueprint versions cannot carry costing fields")
        return self


class ArtifactPointer(BaseModel):
    current_version: int = Field(default=0, ge=0)


class CostingPointer(ArtifactPointer):
    approved_amount: int | None = None


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_status: ProjectStatus
    to_status: ProjectStatus
    actor_role: ActorRole
    timestamp: datetime
    notes: str | None = None


class RevisionRequest(BaseModel):
    revision_id: str = Field(default_factory=new_revision_id)
    target_kind: ArtifactKind
    target_version: int = Field(ge=0)
    feedback: str
    revision_type: RevisionType = RevisionType.MINOR
    requested_by: ActorRole = ActorRole.CUSTOMER
    requested_at: datetime
    resolved_at: datetime | None = None
    resolved_by_version: int | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class PaymentStage(BaseModel):
    """Stage definition plus the payment collaborator's latest report.

    ``label``, ``percentage`` and ``amount`` never change. The remaining
    fields describe the most recent status change.
    """

    label: PaymentStageLabel
    percentage: int = Field(gt=0, le=100)
    amount: int = Field(ge=0)
    status: PaymentStageStatus = PaymentStageStatus.PENDING
    updated_at: datetime | None = None
    updated_by: ActorRole | None = None
    notes: str = ""
    reference: str | None = None
    rejection_reason: str | None = None


class CustomerApproval(BaseModel):
    model_config = ConfigDict(frozen=True)

    approved_at: datetime
    approved_by: ActorRole
    blueprint_version: int
    costing_version: int


class FabricationUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    progress: int = Field(ge=0, le=100)
    notes: str = ""
    actor_role: ActorRole
    recorded_at: datetime


class Project(BaseModel):
    project_id: str
    status: ProjectStatus = ProjectStatus.PENDING_BLUEPRINT
    category: str
    customer_ref: str
    title: str = ""
    description: str = ""
    site_address: SiteAddress | None = None
    source_appointment_ref: str | None = None
    blueprint: ArtifactPointer = Field(default_factory=ArtifactPointer)
    costing: CostingPointer = Field(default_factory=CostingPointer)
    payment_plan: PaymentPlan | None = None
    payment_stages: list[PaymentStage] = Field(default_factory=list)
    approval: CustomerApproval | None = None
    revision_history: list[RevisionRequest] = Field(default_factory=list)
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    fabrication_updates: list[FabricationUpdate] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @field_validator("project_id")
    @classmethod
    def _usable_id(cls, value: str) -> str:
        return validate_project_id(value)

    @model_validator(mode="after")
    def _costing_requires_blueprint(self) -> "Project":
        if self.costing.current_version > 0 and self.blueprint.current_version == 0:
            raise ValueError("costing cannot exist without a blueprint")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def fabrication_progress(self) -> int:
        return self.fabrication_updates[-1].progress if self.fabrication_updates else 0

    def pointer(self, kind: ArtifactKind) -> ArtifactPointer:
        return self.blueprint if kind == ArtifactKind.BLUEPRINT else self.costing

    def stage(self, label: PaymentStageLabel) -> PaymentStage | None:
        for stage in self.payment_stages:
            if stage.label == label:
                return stage
        return None
