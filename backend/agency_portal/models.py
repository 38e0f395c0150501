import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from agency_portal.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CONSULTANT = "CONSULTANT"
    CLIENT = "CLIENT"


class TemplateType(str, enum.Enum):
    STANDARD = "standard"
    CUSTOM = "custom"
    AMENDMENT = "amendment"
    NDA = "nda"
    MAINTENANCE = "maintenance"


class ContractStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SignatureAction(str, enum.Enum):
    REQUESTED = "requested"
    VIEWED = "viewed"
    SIGNED = "signed"
    COUNTERSIGNED = "countersigned"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REMINDER_SENT = "reminder_sent"
    RENEWAL_REMINDER_SENT = "renewal_reminder_sent"
    AMENDED = "amended"
    MATERIALIZED = "materialized"


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(Role), nullable=False)
    # Set only for CLIENT portal users
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    client = relationship("Client", foreign_keys=[client_id])


class Client(Base):
    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    projects = relationship("Project", back_populates="client")


class Project(Base):
    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    project_name = Column(String(500), nullable=False)
    project_type = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    start_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    timeline = Column(String(255), nullable=True)
    price = Column(Float, nullable=True)
    deposit_amount = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Legacy contract mirror. Derived from the contracts table on every
    # transition; the signing token is never copied here.
    contract_signature_requested_at = Column(DateTime, nullable=True)
    contract_signature_expires_at = Column(DateTime, nullable=True)
    contract_signed_at = Column(DateTime, nullable=True)
    contract_signer_name = Column(String(255), nullable=True)
    contract_signer_email = Column(String(255), nullable=True)
    contract_countersigned_at = Column(DateTime, nullable=True)
    contract_countersigner_name = Column(String(255), nullable=True)
    contract_signed_pdf_path = Column(String(1000), nullable=True)

    client = relationship("Client", back_populates="projects")
    contracts = relationship("Contract", back_populates="project", foreign_keys="Contract.project_id")


class ContractTemplate(Base):
    __tablename__ = "contract_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    type = Column(Enum(TemplateType), default=TemplateType.STANDARD, nullable=False)
    content = Column(Text, nullable=False)
    variables = Column(JSONType, default=list)  # Declared placeholder names
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_contract_templates_type_default", "type", "is_default", "is_active"),
        # One active default per type, even when two writers race past the clear-then-set
        Index(
            "uq_contract_templates_active_default",
            "type",
            unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default AND is_active"),
        ),
    )


class Contract(Base):
    __tablename__ = "contracts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(UUID(as_uuid=True), ForeignKey("contract_templates.id"), nullable=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False, index=True)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    parent_contract_id = Column(UUID(as_uuid=True), ForeignKey("contracts.id"), nullable=True)
    created_by_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    content = Column(Text, nullable=False)
    variables = Column(JSONType, default=dict)  # Frozen binding snapshot
    status = Column(Enum(ContractStatus), default=ContractStatus.DRAFT, nullable=False, index=True)

    renewal_at = Column(DateTime, nullable=True)
    renewal_reminder_sent_at = Column(DateTime, nullable=True)
    last_reminder_at = Column(DateTime, nullable=True)
    reminder_count = Column(Integer, default=0, nullable=False)

    # Signing capability
    signature_token = Column(String(64), unique=True, nullable=True, index=True)
    signature_requested_at = Column(DateTime, nullable=True)
    signature_expires_at = Column(DateTime, nullable=True)
    retired_token_digest = Column(String(64), nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)
    viewed_at = Column(DateTime, nullable=True)

    # Client signature
    signer_name = Column(String(255), nullable=True)
    signer_email = Column(String(255), nullable=True)
    signer_ip = Column(String(100), nullable=True)
    signer_user_agent = Column(Text, nullable=True)
    signature_data = Column(Text, nullable=True)
    signed_at = Column(DateTime, nullable=True)

    # Agency countersignature
    countersigner_name = Column(String(255), nullable=True)
    countersigner_email = Column(String(255), nullable=True)
    countersigner_ip = Column(String(100), nullable=True)
    countersigner_user_agent = Column(Text, nullable=True)
    countersignature_data = Column(Text, nullable=True)
    countersigned_at = Column(DateTime, nullable=True)

    signed_pdf_path = Column(String(1000), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="contracts", foreign_keys=[project_id])
    client = relationship("Client")
    template = relationship("ContractTemplate")
    parent = relationship("Contract", remote_side=[id])


class ContractSignatureLog(Base):
    """Append-only trail of contract signing events. See services/audit_log.py."""
    __tablename__ = "contract_signature_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False, index=True)
    contract_id = Column(UUID(as_uuid=True), ForeignKey("contracts.id"), nullable=True, index=True)
    action = Column(Enum(SignatureAction), nullable=False)
    actor_email = Column(String(255), nullable=False)
    actor_ip = Column(String(100), nullable=True)
    actor_user_agent = Column(Text, nullable=True)
    details = Column(JSONType, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
