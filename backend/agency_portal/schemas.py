from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from agency_portal.models import ContractStatus, SignatureAction, TemplateType


# ============= Auth Schemas =============
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# ============= Template Schemas =============
class ContractTemplateCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    type: TemplateType = TemplateType.STANDARD
    content: str = Field(..., min_length=1)
    variables: Optional[List[str]] = None
    is_default: bool = Field(default=False, alias="isDefault")


class ContractTemplateUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[TemplateType] = None
    content: Optional[str] = None
    variables: Optional[List[str]] = None
    is_default: Optional[bool] = Field(default=None, alias="isDefault")


class ContractTemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: TemplateType
    content: str
    variables: List[str] = []
    is_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


# ============= Contract Schemas =============
class ContractCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: UUID = Field(..., alias="projectId")
    client_id: Optional[UUID] = Field(None, alias="clientId")
    content: str = Field(..., min_length=1)
    template_id: Optional[UUID] = Field(None, alias="templateId")
    renewal_at: Optional[datetime] = Field(None, alias="renewalAt")


class ContractFromTemplate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_id: UUID = Field(..., alias="templateId")
    project_id: UUID = Field(..., alias="projectId")
    client_id: Optional[UUID] = Field(None, alias="clientId")
    variables: Optional[Dict[str, Any]] = None
    renewal_at: Optional[datetime] = Field(None, alias="renewalAt")


class ContractUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: Optional[str] = None
    renewal_at: Optional[datetime] = Field(None, alias="renewalAt")


class AmendmentCreate(BaseModel):
    content: Optional[str] = None


class ContractResponse(BaseModel):
    """Operator view. The signing token and raw signature images stay server-side."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: Optional[UUID] = None
    project_id: UUID
    client_id: UUID
    parent_contract_id: Optional[UUID] = None
    content: str
    variables: Dict[str, Any] = {}
    status: ContractStatus
    renewal_at: Optional[datetime] = None
    renewal_reminder_sent_at: Optional[datetime] = None
    last_reminder_at: Optional[datetime] = None
    reminder_count: int = 0
    signature_requested_at: Optional[datetime] = None
    signature_expires_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signed_at: Optional[datetime] = None
    countersigner_name: Optional[str] = None
    countersigner_email: Optional[str] = None
    countersigned_at: Optional[datetime] = None
    signed_pdf_path: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SignatureLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_id: Optional[UUID] = None
    action: SignatureAction
    actor_email: str
    actor_ip: Optional[str] = None
    actor_user_agent: Optional[str] = None
    details: Dict[str, Any] = {}
    created_at: datetime


# ============= Signing Schemas =============
class SignByTokenRequest(BaseModel):
    """Fields are loose on purpose so missing values map to MISSING_SIGNATURE, not a 422."""
    model_config = ConfigDict(populate_by_name=True)

    signer_name: Optional[str] = Field(None, alias="signerName")
    signature_image: Optional[str] = Field(None, alias="signatureImage")
    agreed_to_terms: Any = Field(None, alias="agreedToTerms")


class CountersignRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signer_name: Optional[str] = Field(None, alias="signerName")
    signature_image: Optional[str] = Field(None, alias="signatureImage")


class RequestSignatureResponse(BaseModel):
    contract_id: UUID
    status: ContractStatus
    expires_at: datetime
    signature_url: str
    email_sent: bool


class ContractByTokenResponse(BaseModel):
    contract_id: UUID
    project_id: UUID
    project_name: str
    price: Optional[float] = None
    client_name: str
    client_email: Optional[str] = None
    status: str
    expires_at: Optional[datetime] = None
    contract_pdf_url: str


class SignResponse(BaseModel):
    success: bool = True
    message: str
    signed_at: datetime


class CountersignResponse(BaseModel):
    success: bool = True
    message: str
    countersigned_at: datetime


class SignatureStatusResponse(BaseModel):
    project_id: UUID
    contract_id: Optional[UUID] = None
    status: Optional[ContractStatus] = None
    requested_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    link_active: bool = False
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    signer_ip: Optional[str] = None
    countersigned_at: Optional[datetime] = None
    countersigner_name: Optional[str] = None
    countersigner_email: Optional[str] = None
    signed_pdf_path: Optional[str] = None
    is_fully_signed: bool = False
    reminder_count: int = 0
    log: List[SignatureLogResponse] = []


class MessageResponse(BaseModel):
    success: bool = True
    message: str
