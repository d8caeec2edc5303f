from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field

from models import Expense, Settlement


class GroupEvent(BaseModel):
    group_id: str
    occurred_at: datetime = Field(default_factory=datetime.now)


class ExpenseAdded(GroupEvent):
    expense: Expense
    balances: Dict[str, int]
    settlements: List[Settlement]


class ExpenseRemoved(GroupEvent):
    expense_id: str
    balances: Dict[str, int]
    settlements: List[Settlement]


class InviteeAdded(GroupEvent):
    phone: str
