from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, validator
from fastapi import HTTPException, status
from typing import List, Optional
from datetime import datetime
import re

from config import Config
from models import (
    DONATION_STATUSES, INVESTOR_TYPES, APP_ROLES, VERIFICATION_STATUSES
)

PHONE_PATTERN = r'^[\+]?[0-9\s\-\(\)]{10,}$'
CURRENCY_PATTERN = r'^[A-Z]{3}$'


def _required_text(value: str, label: str, max_length: int = 200) -> str:
    if value is None or not value.strip():
        raise ValueError(f'{label} is required')
    if len(value.strip()) > max_length:
        raise ValueError(f'{label} must be less than {max_length} characters')
    return value.strip()


def _required(label: str, allow_missing: bool = False):
    """Validator body for a required text field that may be omitted on updates."""
    def check(cls, v):
        if v is None and allow_missing:
            return None
        return _required_text(v, label)
    return check


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


def validate_form(schema, **fields):
    """Build `schema` from multipart form fields, turning validation errors into a 422."""
    try:
        return schema(**fields)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[error["msg"] for error in e.errors()]
        )


# Accounts

class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    user_type: str

    @validator('password')
    def validate_password(cls, v):
        if len(v) < Config.MIN_PASSWORD_LENGTH:
            raise ValueError(f'Password must be at least {Config.MIN_PASSWORD_LENGTH} characters')
        return v

    @validator('user_type')
    def validate_user_type(cls, v):
        # Admin accounts are never self-registered
        if v not in ('institution', 'investor'):
            raise ValueError('user_type must be institution or investor')
        return v

    @validator('full_name')
    def validate_full_name(cls, v):
        return _optional_text(v)

    @validator('phone')
    def validate_phone(cls, v):
        v = _optional_text(v)
        if v is not None and not re.match(PHONE_PATTERN, v.replace(' ', '')):
            raise ValueError('Please enter a valid phone number')
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @validator('new_password')
    def validate_new_password(cls, v):
        if len(v) < Config.MIN_PASSWORD_LENGTH:
            raise ValueError(f'New password must be at least {Config.MIN_PASSWORD_LENGTH} characters')
        return v


class ProfileSummary(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    verification_status: str

    model_config = ConfigDict(from_attributes=True)


class ProfileOut(ProfileSummary):
    phone: Optional[str] = None
    user_type: str
    is_active: bool
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class MeOut(ProfileOut):
    role: str


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None

    @validator('phone')
    def validate_phone(cls, v):
        v = _optional_text(v)
        if v is not None and not re.match(PHONE_PATTERN, v.replace(' ', '')):
            raise ValueError('Please enter a valid phone number')
        return v


class VerificationUpdate(BaseModel):
    status: str

    @validator('status')
    def validate_status(cls, v):
        if v not in VERIFICATION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(VERIFICATION_STATUSES)}")
        return v


# Directory

class InstitutionCreate(BaseModel):
    institution_name: str
    country: str
    city: str
    address: str
    contact_person: str
    contact_position: Optional[str] = None

    check_name = validator('institution_name', allow_reuse=True)(_required('Institution name'))
    check_country = validator('country', allow_reuse=True)(_required('Country'))
    check_city = validator('city', allow_reuse=True)(_required('City'))
    check_address = validator('address', allow_reuse=True)(_required('Address'))
    check_contact = validator('contact_person', allow_reuse=True)(_required('Contact person'))

    @validator('contact_position')
    def validate_position(cls, v):
        return _optional_text(v)


class InstitutionUpdate(BaseModel):
    institution_name: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    contact_person: Optional[str] = None
    contact_position: Optional[str] = None

    check_name = validator('institution_name', allow_reuse=True)(_required('Institution name', True))
    check_country = validator('country', allow_reuse=True)(_required('Country', True))
    check_city = validator('city', allow_reuse=True)(_required('City', True))
    check_address = validator('address', allow_reuse=True)(_required('Address', True))
    check_contact = validator('contact_person', allow_reuse=True)(_required('Contact person', True))

    @validator('contact_position')
    def validate_position(cls, v):
        return _optional_text(v)


class InstitutionOut(BaseModel):
    id: str
    user_id: str
    institution_name: str
    country: str
    city: str
    address: str
    contact_person: str
    contact_position: Optional[str] = None
    certificate_url: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestorCreate(BaseModel):
    investor_type: str
    company_name: Optional[str] = None

    @validator('investor_type')
    def validate_investor_type(cls, v):
        if v not in INVESTOR_TYPES:
            raise ValueError(f"investor_type must be one of {', '.join(INVESTOR_TYPES)}")
        return v

    @validator('company_name')
    def validate_company_name(cls, v):
        return _optional_text(v)


class InvestorUpdate(BaseModel):
    investor_type: Optional[str] = None
    company_name: Optional[str] = None

    @validator('investor_type')
    def validate_investor_type(cls, v):
        if v is not None and v not in INVESTOR_TYPES:
            raise ValueError(f"investor_type must be one of {', '.join(INVESTOR_TYPES)}")
        return v


class InvestorOut(BaseModel):
    id: str
    user_id: str
    investor_type: str
    company_name: Optional[str] = None
    display_name: str
    certificate_url: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestorListItem(InvestorOut):
    donations_count: int = 0
    total_donated: float = 0.0


# Management tables: only admins may read the owning profile

class InstitutionAdminOut(InstitutionOut):
    profile: Optional[ProfileSummary] = None


class InvestorAdminOut(InvestorOut):
    profile: Optional[ProfileSummary] = None


class SignedUrl(BaseModel):
    url: str
    expires_in: int


# Messaging

class ConversationCreate(BaseModel):
    partner_id: str


class ConversationOut(BaseModel):
    id: str
    institution_id: str
    investor_id: str
    other_party_name: str
    other_party_type: str
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime


class PartnerOut(BaseModel):
    id: str
    name: str
    type: str


class MessageCreate(BaseModel):
    content: str

    @validator('content')
    def validate_content(cls, v):
        if not v.strip():
            raise ValueError('Message content is required')
        if len(v.strip()) > Config.MAX_MESSAGE_LENGTH:
            raise ValueError(f'Message must be at most {Config.MAX_MESSAGE_LENGTH} characters')
        return v.strip()


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_name: Optional[str] = None
    content: str
    read: bool
    created_at: datetime


# Donations

class DonationCreate(BaseModel):
    institution_id: str
    amount: float = Field(..., gt=0)
    currency: str = "USD"
    message: Optional[str] = None
    investor_id: Optional[str] = None  # Admins record donations on behalf of an investor

    @validator('currency')
    def validate_currency(cls, v):
        v = v.strip().upper()
        if not re.match(CURRENCY_PATTERN, v):
            raise ValueError('Currency must be a 3-letter ISO code')
        return v

    @validator('message')
    def validate_message(cls, v):
        return _optional_text(v)


class DonationStatusUpdate(BaseModel):
    status: str

    @validator('status')
    def validate_status(cls, v):
        if v not in DONATION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(DONATION_STATUSES)}")
        return v


class DonationOut(BaseModel):
    id: str
    investor_id: str
    institution_id: str
    amount: float
    currency: str
    status: str
    donation_date: datetime
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DonationStats(BaseModel):
    total: int
    pending: int
    completed: int
    total_amount: float


# Roles

class RoleGrant(BaseModel):
    user_id: str
    role: str

    @validator('role')
    def validate_role(cls, v):
        if v not in APP_ROLES:
            raise ValueError(f"role must be one of {', '.join(APP_ROLES)}")
        return v


class RoleOut(BaseModel):
    id: str
    user_id: str
    role: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProfileList(BaseModel):
    items: List[ProfileOut]
    total: int
