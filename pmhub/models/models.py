import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    String,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    Numeric,
    UniqueConstraint,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base, UTCDateTime, utcnow


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def created_at_col() -> Mapped[datetime]:
    return mapped_column(UTCDateTime, default=utcnow, nullable=False)


def updated_at_col() -> Mapped[datetime]:
    return mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


# Statuses that keep a PM schedule chain open
ACTIVE_SCHEDULE_STATUSES = ("SCHEDULED", "IN_PROGRESS", "OVERDUE")


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # ADMIN|TECHNICIAN|CUSTOMER
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", back_populates="role")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    role_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("roles.id"), nullable=False)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    role = relationship("Role", back_populates="users", lazy="joined")
    company = relationship("Company", back_populates="users")
    subscriptions = relationship("NotificationSubscription", back_populates="user", cascade="all, delete-orphan")

    @property
    def role_name(self) -> Optional[str]:
        return self.role.name if self.role else None

    @property
    def full_name(self) -> str:
        composed = " ".join(p for p in [self.first_name or "", self.last_name or ""] if p).strip()
        return composed or self.email


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    address: Mapped[Optional[str]] = mapped_column(Text)
    detail: Mapped[Optional[str]] = mapped_column(Text)
    external_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)  # id in the upstream company API
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    users = relationship("User", back_populates="company")
    machines = relationship("Machine", back_populates="company")


class Machine(Base):
    __tablename__ = "machines"

    id: Mapped[uuid.UUID] = uuid_pk()
    machine_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), index=True)  # also the PM template machine type
    model: Mapped[Optional[str]] = mapped_column(String(100))
    serial_number: Mapped[Optional[str]] = mapped_column(String(100))
    installation_date: Mapped[Optional[date]] = mapped_column(Date)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)  # ACTIVE|INACTIVE|MAINTENANCE|RETIRED
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="SET NULL"), index=True
    )
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    company = relationship("Company", back_populates="machines")
    parts = relationship("MachinePart", back_populates="machine", cascade="all, delete-orphan", passive_deletes=True)
    documents = relationship("MachineDocument", back_populates="machine", cascade="all, delete-orphan", passive_deletes=True)
    pm_schedules = relationship("PMSchedule", back_populates="machine", cascade="all, delete-orphan", passive_deletes=True)
    repair_works = relationship("RepairWork", back_populates="machine", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (Index("idx_machine_status", "status"),)


class MachineDocument(Base):
    __tablename__ = "machine_documents"

    id: Mapped[uuid.UUID] = uuid_pk()
    machine_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[str] = mapped_column(String(30), default="OTHER", nullable=False)  # MANUAL|DRAWING|CERTIFICATE|WARRANTY|OTHER
    description: Mapped[Optional[str]] = mapped_column(Text)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100))
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    machine = relationship("Machine", back_populates="documents")


class MachinePart(Base):
    __tablename__ = "machine_parts"

    id: Mapped[uuid.UUID] = uuid_pk()
    machine_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    part_code: Mapped[str] = mapped_column(String(100), nullable=False)
    part_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    part_category: Mapped[Optional[str]] = mapped_column(String(100))
    uom: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    # Cached balance, kept equal to the ledger fold by services.inventory
    quantity_on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    min_stock_level: Mapped[Optional[int]] = mapped_column(Integer)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    vendor_name: Mapped[Optional[str]] = mapped_column(String(255))
    cost_per_unit: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    machine = relationship("Machine", back_populates="parts")
    transactions = relationship(
        "InventoryTransaction",
        back_populates="part",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="InventoryTransaction.created_at",
    )

    __table_args__ = (
        UniqueConstraint("machine_id", "part_code", name="uq_machine_part_code"),
    )

    @property
    def is_low_stock(self) -> bool:
        return self.min_stock_level is not None and self.quantity_on_hand <= self.min_stock_level


class InventoryTransaction(Base):
    __tablename__ = "inventory_transactions"

    id: Mapped[uuid.UUID] = uuid_pk()
    part_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("machine_parts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(10), nullable=False)  # IN|OUT|ADJUST
    # Delta for IN/OUT, the new absolute balance for ADJUST
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[str] = mapped_column(String(20), default="MANUAL", nullable=False)  # MANUAL|WORK_ORDER|PURCHASE|ADJUSTMENT
    reference_id: Mapped[Optional[str]] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    part = relationship("MachinePart", back_populates="transactions")
    performer = relationship("User")

    __table_args__ = (
        Index("idx_inv_txn_part_created", "part_id", "created_at"),
        Index("idx_inv_txn_reference", "reference_type", "reference_id"),
    )


class PMTemplate(Base):
    __tablename__ = "pm_templates"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    machine_type: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    frequency_type: Mapped[str] = mapped_column(String(20), default="MONTHLY", nullable=False)  # HOURLY|DAILY|WEEKLY|MONTHLY
    frequency_value: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    items = relationship(
        "PMTemplateItem",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="PMTemplateItem.step_order",
    )
    schedules = relationship("PMSchedule", back_populates="template")


class PMTemplateItem(Base):
    __tablename__ = "pm_template_items"

    id: Mapped[uuid.UUID] = uuid_pk()
    pm_template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    check_item: Mapped[str] = mapped_column(String(500), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    standard_value: Mapped[Optional[str]] = mapped_column(String(255))
    unit: Mapped[Optional[str]] = mapped_column(String(50))
    method: Mapped[Optional[str]] = mapped_column(Text)
    tools_required: Mapped[Optional[str]] = mapped_column(Text)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    has_photo: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_signature: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(Text)

    template = relationship("PMTemplate", back_populates="items")


class PMSchedule(Base):
    __tablename__ = "pm_schedules"

    id: Mapped[uuid.UUID] = uuid_pk()
    schedule_code: Mapped[str] = mapped_column(String(60), unique=True, nullable=False, index=True)
    pm_template_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_templates.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    machine_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="SCHEDULED", nullable=False)  # SCHEDULED|IN_PROGRESS|COMPLETED|SKIPPED|OVERDUE|CANCELLED
    priority: Mapped[str] = mapped_column(String(20), default="MEDIUM", nullable=False)  # LOW|MEDIUM|HIGH|CRITICAL
    estimated_hours: Mapped[Optional[float]] = mapped_column(Float)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    last_done_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    customer_signature_url: Mapped[Optional[str]] = mapped_column(String(500))
    customer_signer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_signed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    previous_schedule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_schedules.id", ondelete="SET NULL")
    )
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    template = relationship("PMTemplate", back_populates="schedules")
    machine = relationship("Machine", back_populates="pm_schedules")
    completer = relationship("User", foreign_keys=[completed_by])
    assignments = relationship("PMScheduleAssignment", back_populates="schedule", cascade="all, delete-orphan")
    results = relationship("PMResult", back_populates="schedule", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_pm_schedule_status_due", "status", "due_date"),
        # At most one open link per schedule chain
        Index(
            "uq_pm_schedule_open_chain",
            "machine_id",
            "pm_template_id",
            unique=True,
            sqlite_where=text("status IN ('SCHEDULED', 'IN_PROGRESS', 'OVERDUE')"),
            postgresql_where=text("status IN ('SCHEDULED', 'IN_PROGRESS', 'OVERDUE')"),
        ),
    )

    @property
    def assigned_user_ids(self) -> List[uuid.UUID]:
        return [a.user_id for a in self.assignments]

    @property
    def effective_status(self) -> str:
        # OVERDUE is reported, never stored by the workflow
        if self.status in ("SCHEDULED", "IN_PROGRESS") and self.due_date and self.due_date < utcnow():
            return "OVERDUE"
        return self.status


class PMScheduleAssignment(Base):
    __tablename__ = "pm_schedule_assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    pm_schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_schedules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    assigned_at: Mapped[datetime] = created_at_col()

    schedule = relationship("PMSchedule", back_populates="assignments")
    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (UniqueConstraint("pm_schedule_id", "user_id", name="uq_pm_schedule_user"),)


class PMResult(Base):
    __tablename__ = "pm_results"

    id: Mapped[uuid.UUID] = uuid_pk()
    pm_schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_schedules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pm_template_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_template_items.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(10), default="PASS", nullable=False)  # PASS|FAIL|NA
    measured_value: Mapped[Optional[str]] = mapped_column(String(255))
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    checked_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    checked_at: Mapped[datetime] = created_at_col()

    schedule = relationship("PMSchedule", back_populates="results")
    template_item = relationship("PMTemplateItem")
    photos = relationship("PMResultPhoto", back_populates="result", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("pm_schedule_id", "pm_template_item_id", name="uq_pm_result_step"),)


class PMResultPhoto(Base):
    __tablename__ = "pm_result_photos"

    id: Mapped[uuid.UUID] = uuid_pk()
    pm_result_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pm_results.id", ondelete="CASCADE"), nullable=False, index=True
    )
    photo_type: Mapped[str] = mapped_column(String(20), default="EVIDENCE", nullable=False)  # BEFORE|AFTER|EVIDENCE|REFERENCE
    file_url: Mapped[str] = mapped_column(String(500), nullable=False)
    file_name: Mapped[Optional[str]] = mapped_column(String(255))
    caption: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = created_at_col()

    result = relationship("PMResult", back_populates="photos")


class RepairWork(Base):
    __tablename__ = "repair_works"

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    machine_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("machines.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(String(20), default="MEDIUM", nullable=False)  # LOW|MEDIUM|HIGH|CRITICAL
    status: Mapped[str] = mapped_column(String(20), default="OPEN", nullable=False)  # OPEN|IN_PROGRESS|COMPLETED|CANCELLED
    reported_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    pm_result_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("pm_results.id", ondelete="SET NULL"))
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    estimated_hours: Mapped[Optional[float]] = mapped_column(Float)
    actual_hours: Mapped[Optional[float]] = mapped_column(Float)
    actual_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    root_cause: Mapped[Optional[str]] = mapped_column(Text)
    resolution: Mapped[Optional[str]] = mapped_column(Text)
    customer_signature_url: Mapped[Optional[str]] = mapped_column(String(500))
    customer_signer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_signed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = created_at_col()
    updated_at: Mapped[datetime] = updated_at_col()

    machine = relationship("Machine", back_populates="repair_works")
    reporter = relationship("User", foreign_keys=[reported_by])
    assignee = relationship("User", foreign_keys=[assigned_to])
    items = relationship(
        "RepairWorkItem",
        back_populates="repair_work",
        cascade="all, delete-orphan",
        order_by="RepairWorkItem.item_order",
    )
    photos = relationship("RepairWorkPhoto", back_populates="repair_work", cascade="all, delete-orphan")
    parts_used = relationship("RepairWorkPart", back_populates="repair_work", cascade="all, delete-orphan")
    assignments = relationship("RepairWorkAssignment", back_populates="repair_work", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_repair_status_machine", "status", "machine_id"),)


class RepairWorkItem(Base):
    __tablename__ = "repair_work_items"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repair_works.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_order: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", nullable=False)  # PENDING|IN_PROGRESS|COMPLETED
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    repair_work = relationship("RepairWork", back_populates="items")


class RepairWorkPhoto(Base):
    __tablename__ = "repair_work_photos"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repair_works.id", ondelete="CASCADE"), nullable=False, index=True
    )
    repair_work_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repair_work_items.id", ondelete="SET NULL")
    )
    photo_type: Mapped[str] = mapped_column(String(20), default="PROGRESS", nullable=False)  # BEFORE|PROGRESS|AFTER
    file_url: Mapped[str] = mapped_column(String(500), nullable=False)
    file_name: Mapped[Optional[str]] = mapped_column(String(255))
    caption: Mapped[Optional[str]] = mapped_column(String(500))
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = created_at_col()

    repair_work = relationship("RepairWork", back_populates="photos")


class RepairWorkPart(Base):
    __tablename__ = "repair_work_parts"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repair_works.id", ondelete="CASCADE"), nullable=False, index=True
    )
    part_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("machine_parts.id", ondelete="RESTRICT"), nullable=False)
    quantity_used: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("inventory_transactions.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = created_at_col()

    repair_work = relationship("RepairWork", back_populates="parts_used")
    part = relationship("MachinePart")


class RepairWorkAssignment(Base):
    __tablename__ = "repair_work_assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    repair_work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repair_works.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    assigned_at: Mapped[datetime] = created_at_col()

    repair_work = relationship("RepairWork", back_populates="assignments")
    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (UniqueConstraint("repair_work_id", "user_id", name="uq_repair_work_user"),)


class NotificationSubscription(Base):
    __tablename__ = "notification_subscriptions"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(String(1000), unique=True, nullable=False)
    p256dh: Mapped[str] = mapped_column(String(255), nullable=False)
    auth: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = created_at_col()

    user = relationship("User", back_populates="subscriptions")


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), default="push", nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[Optional[str]] = mapped_column(Text)
    url: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending|sent|failed|recorded
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = created_at_col()
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    __table_args__ = (Index("idx_notification_user_created", "user_id", "created_at"),)
