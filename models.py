import re
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Dict, List, Optional, Tuple
from datetime import datetime
from uuid import uuid4

from utils import normalize_phone, is_valid_phone

_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def _canonical_phone(value: str) -> str:
    if not is_valid_phone(value):
        raise ValueError(f'Invalid phone number: {value!r}')
    return normalize_phone(value)


class Group(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    theme_color: str = "#38bdf8"
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator('name')
    @classmethod
    def name_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Group name must not be empty')
        return v.strip()

    @field_validator('theme_color')
    @classmethod
    def color_is_hex(cls, v):
        if not _COLOR_RE.match(v):
            raise ValueError('Theme color must look like #rrggbb')
        return v.lower()


class Member(BaseModel):
    name: str
    phone: str
    joined_at: datetime = Field(default_factory=datetime.now)

    @field_validator('name')
    @classmethod
    def name_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Member name must not be empty')
        return v.strip()

    @field_validator('phone')
    @classmethod
    def phone_valid(cls, v):
        return _canonical_phone(v)


class Invitee(BaseModel):
    """Someone who shares expenses with the group without having joined it."""

    phone: str
    name: Optional[str] = None
    invited_at: datetime = Field(default_factory=datetime.now)
    last_notified_at: Optional[datetime] = None

    @field_validator('phone')
    @classmethod
    def phone_valid(cls, v):
        return _canonical_phone(v)

    @field_validator('name')
    @classmethod
    def blank_name_is_none(cls, v):
        if v is None or not v.strip():
            return None
        return v.strip()


class Expense(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    description: str
    amount_minor: int
    payer_phone: str
    # Order matters: the first participants absorb the remainder cents.
    participants: Tuple[str, ...]
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator('description')
    @classmethod
    def description_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Expense description must not be empty')
        return v.strip()

    @field_validator('amount_minor')
    @classmethod
    def amount_positive(cls, v):
        if v <= 0:
            raise ValueError('Amount must be greater than 0')
        return v

    @field_validator('payer_phone')
    @classmethod
    def payer_valid(cls, v):
        return _canonical_phone(v)

    @field_validator('participants')
    @classmethod
    def participants_valid(cls, v):
        if not v:
            raise ValueError('At least one participant is required')
        phones = tuple(_canonical_phone(p) for p in v)
        if len(set(phones)) != len(phones):
            raise ValueError('Duplicate participants in expense')
        return phones


class Settlement(BaseModel):
    """A recommended payment from a debtor to a creditor."""

    model_config = ConfigDict(frozen=True)

    from_phone: str
    to_phone: str
    amount_minor: int


class Balance(BaseModel):
    phone: str
    name: str
    balance_minor: int


class Payment(BaseModel):
    from_phone: str
    from_name: str
    to_phone: str
    to_name: str
    amount_minor: int


class GroupSummary(BaseModel):
    group_id: str
    total_minor: int
    balances: List[Balance]
    payments: List[Payment]


class GroupDetail(BaseModel):
    group: Group
    members: List[Member]
    invitees: List[Invitee]
    expenses: List[Expense]


class GroupCreate(BaseModel):
    name: str
    theme_color: Optional[str] = None


class MemberCreate(BaseModel):
    name: str
    phone: str


class InviteeCreate(BaseModel):
    phone: str
    name: Optional[str] = None


class ExpenseCreate(BaseModel):
    description: str
    amount: str
    payer_phone: str
    participant_phones: List[str]


class GroupDetailsRequest(BaseModel):
    phone: str
    group_id: str


class ExpenseResult(BaseModel):
    expense: Expense
    summary: GroupSummary


class StoreSnapshot(BaseModel):
    groups: Dict[str, Group] = Field(default_factory=dict)
    members: Dict[str, List[Member]] = Field(default_factory=dict)
    invitees: Dict[str, List[Invitee]] = Field(default_factory=dict)
    expenses: Dict[str, List[Expense]] = Field(default_factory=dict)
