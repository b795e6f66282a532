"""
Database Schemas for TowerTrack

Each Pydantic model represents a collection in MongoDB.
Collection names are plural lowercase (e.g., Agreement -> "agreements").
Request bodies live at the bottom of the module.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Literal

from pydantic import BaseModel, Field, EmailStr, field_validator


class Role(str, Enum):
    USER = "user"
    MEMBER = "member"
    ADMIN = "admin"


AgreementStatus = Literal["pending", "checked", "rejected"]


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    email: EmailStr = Field(..., description="Email address, unique")
    name: str = Field(..., description="Display name")
    role: Role = Field(Role.USER, description="Role for RBAC")


class Apartment(BaseModel):
    """
    Apartments collection schema
    Collection name: "apartments"
    """
    floor_no: int
    block_name: str
    apartment_no: str
    rent: float = Field(..., ge=0)
    image: Optional[str] = None


class Agreement(BaseModel):
    """
    Tenant applications
    Collection name: "agreements"
    """
    user_name: str
    user_email: EmailStr = Field(..., description="One agreement per tenant email")
    floor_no: Optional[int] = None
    block_name: Optional[str] = None
    apartment_no: Optional[str] = None
    rent: Optional[float] = None
    status: AgreementStatus = "pending"


class Notice(BaseModel):
    """
    Notices issued to tenants
    Collection name: "notices"
    """
    user_email: EmailStr
    apartment_id: Optional[str] = None
    reason: Optional[str] = None
    notice_count: int = Field(..., ge=1)
    status: Literal["active"] = "active"


class Coupon(BaseModel):
    """
    Collection name: "coupons"
    """
    code: str = Field(..., min_length=1, description="Unique, stored upper case")
    discount: float = Field(..., gt=0, le=100, description="Percentage off")
    valid_till: Optional[datetime] = None
    description: Optional[str] = None


class Announcement(BaseModel):
    """
    Collection name: "announcements"
    """
    title: str
    description: str


class Payment(BaseModel):
    """
    Completed payments, recorded after the processor confirms them
    Collection name: "payments"
    """
    email: EmailStr
    amount: float = Field(..., gt=0)
    month: Optional[str] = None
    transaction_id: Optional[str] = None
    coupon_code: Optional[str] = None
    apartment_no: Optional[str] = None


class Building(BaseModel):
    """
    Collection name: "buildings"
    """
    name: str
    address: Optional[str] = None
    floors: Optional[int] = Field(None, ge=1)
    image: Optional[str] = None


# ---------------------- Request bodies ----------------------

def _normalise_code(value: str) -> str:
    return value.strip().upper()


class TokenRequest(BaseModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    id_token: Optional[str] = None


class AgreementCreate(BaseModel):
    user_name: str = Field(..., min_length=1)
    user_email: EmailStr
    floor_no: Optional[int] = None
    block_name: Optional[str] = None
    apartment_no: Optional[str] = None
    rent: Optional[float] = Field(None, ge=0)


class AgreementStatusUpdate(BaseModel):
    status: AgreementStatus


class UserCreate(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1)


class RoleUpdate(BaseModel):
    role: Role


class UserRoleUpdate(BaseModel):
    email: EmailStr
    role: Role


class CouponCreate(Coupon):
    @field_validator("code")
    @classmethod
    def upper_code(cls, value: str) -> str:
        return _normalise_code(value)


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1)
    discount: Optional[float] = Field(None, gt=0, le=100)
    valid_till: Optional[datetime] = None
    description: Optional[str] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, value: Optional[str]) -> Optional[str]:
        return _normalise_code(value) if value is not None else None


class CouponValidation(BaseModel):
    code: str = Field(..., min_length=1)


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)

    @field_validator("title", "description")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class PaymentIntentRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Whole currency units")


class NoticeIssue(BaseModel):
    user_email: EmailStr
    apartment_id: Optional[str] = None
    reason: Optional[str] = None
