import enum
import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

ISBN_RE = re.compile(r"^[0-9-]+$")


class TextbookStatus(str, enum.Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    LENT = "lent"


class Condition(str, enum.Enum):
    NEW = "new"
    LIKE_NEW = "like-new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class RequestStatus(str, enum.Enum):
    """
    Lifecycle of a borrow request.

        PENDING -> APPROVED -> COMPLETED -> RETURNED
        PENDING -> REJECTED
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    RETURNED = "returned"


class MessageKind(str, enum.Enum):
    USER = "user"
    SYSTEM = "system"


class AppRole(str, enum.Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    STUDENT = "student"


class ReportStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ReportTarget(str, enum.Enum):
    TEXTBOOK = "textbook"
    USER = "user"
    MESSAGE = "message"


def _blank_to_none(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class ProfileCreate(BaseModel):
    """Sign-up. Names left out are taken from the registry entry."""
    email: str = Field(..., min_length=3, max_length=255)
    student_id_num: str = Field(..., min_length=1, max_length=50)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    graduation_year: Optional[int] = Field(None, ge=1900, le=2200)

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        v = v.strip().lower()
        if v.count("@") != 1 or not v.split("@")[1]:
            raise ValueError("Email must look like name@school-domain")
        return v

    @field_validator("student_id_num", mode="before")
    @classmethod
    def strip_student_id(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def strip_names(cls, v):
        return _blank_to_none(v)


class SchoolCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    domain: str = Field(..., min_length=3, max_length=255)

    @field_validator("domain")
    @classmethod
    def check_domain(cls, v):
        v = v.strip().lower().lstrip("@")
        if "." not in v or "@" in v or " " in v:
            raise ValueError("Domain must look like school.edu")
        return v


class StudentCreate(BaseModel):
    student_id_num: str = Field(..., min_length=1, max_length=50)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    student_email: str = Field(..., min_length=3, max_length=255)

    @field_validator("student_id_num", "first_name", "last_name", mode="before")
    @classmethod
    def strip_fields(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("student_email")
    @classmethod
    def lower_email(cls, v):
        return v.strip().lower()


class StudentActiveUpdate(BaseModel):
    is_active: bool


class TextbookFields(BaseModel):
    author: Optional[str] = Field(None, max_length=100)
    isbn: Optional[str] = None
    edition: Optional[str] = Field(None, max_length=50)
    condition: Optional[Condition] = None
    photo_url: Optional[str] = Field(None, max_length=2048)

    @field_validator("author", "isbn", "edition", "condition", "photo_url", mode="before")
    @classmethod
    def strip_optional(cls, v):
        return _blank_to_none(v)

    @field_validator("isbn")
    @classmethod
    def check_isbn(cls, v):
        if v is None:
            return v
        if len(v) < 10 or len(v) > 17 or not ISBN_RE.match(v):
            raise ValueError("ISBN must be 10-17 characters and contain only numbers and hyphens")
        return v


class TextbookCreate(TextbookFields):
    title: str = Field(..., min_length=1, max_length=200)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v


class TextbookUpdate(TextbookFields):
    title: Optional[str] = Field(None, min_length=1, max_length=200)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v


class RequestCreate(BaseModel):
    textbook_id: int
    location_id: Optional[int] = None
    proposed_time: Optional[str] = None


class ApproveBody(BaseModel):
    location_id: int


class MessageCreate(BaseModel):
    body: str


class LocationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    label: Optional[str] = Field(None, max_length=200)
    school_id: Optional[int] = None


class ReportCreate(BaseModel):
    target_type: ReportTarget
    target_id: int
    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator("reason", mode="before")
    @classmethod
    def strip_reason(cls, v):
        return v.strip() if isinstance(v, str) else v


class ReportStatusUpdate(BaseModel):
    status: ReportStatus


class RoleUpdate(BaseModel):
    role: AppRole


class NotificationCounts(BaseModel):
    incoming_pending_requests: int = 0
    approved_requests_to_pickup: int = 0
    total_pending: int = 0
