import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, List, Optional
from uuid import uuid4

from jinja2 import Environment, FileSystemLoader
from pydantic import BaseModel, Field, TypeAdapter

from events import ExpenseAdded, ExpenseRemoved, GroupEvent, InviteeAdded
from models import Group, Invitee, Payment, Settlement
from settlement import calculate_summary, display_names, share_of
from storage import GroupRepository
from utils import format_currency, format_phone

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


class SmsDeliveryError(Exception):
    pass


class SmsMessage(BaseModel):
    id: str = Field(default_factory=lambda: f"sms_{uuid4().hex[:12]}")
    phone: str
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    status: str = "sent"


_sms_log = TypeAdapter(List[SmsMessage])


class SmsGateway(ABC):
    @abstractmethod
    def send(self, phone: str, message: str) -> SmsMessage: ...

    @abstractmethod
    def history(self) -> List[SmsMessage]: ...

    @abstractmethod
    def clear(self) -> None: ...


class MockSmsGateway(SmsGateway):
    """Records messages instead of sending them, optionally in a JSON log file."""

    def __init__(self, log_path=None):
        self.log_path = Path(log_path) if log_path else None
        self.messages: List[SmsMessage] = []
        if self.log_path and self.log_path.exists():
            self.messages = _sms_log.validate_json(self.log_path.read_bytes())

    def send(self, phone: str, message: str) -> SmsMessage:
        sms = SmsMessage(phone=phone, message=message)
        self.messages.append(sms)
        try:
            self._save()
        except OSError as e:
            self.messages.pop()
            raise SmsDeliveryError(f"Failed to persist SMS log: {e}") from e

        logger.info("SMS sent to %s", format_phone(phone))
        return sms

    def history(self) -> List[SmsMessage]:
        return list(self.messages)

    def clear(self) -> None:
        self.messages = []
        self._save()

    def _save(self) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_bytes(_sms_log.dump_json(self.messages, indent=2))


class NotificationService:
    """Texts a group's invitees when something happens in the group.

    Invitees are people who take part in expenses without having joined.
    Expense and settlement updates are throttled per invitee; invitations
    are always sent and do not start the throttle window.
    """

    def __init__(self,
                 storage: GroupRepository,
                 gateway: SmsGateway,
                 throttle_seconds: int = 300,
                 currency_symbol: str = "$",
                 clock: Callable[[], datetime] = datetime.now):
        self.storage = storage
        self.gateway = gateway
        self.throttle = timedelta(seconds=throttle_seconds)
        self.clock = clock

        self.env = Environment(loader=FileSystemLoader(str(TEMPLATES_DIR)),
                               trim_blocks=True,
                               lstrip_blocks=True)
        self.env.filters['format_currency'] = lambda m: format_currency(m, currency_symbol)
        self.env.filters['format_phone'] = format_phone

    def handle(self, event: GroupEvent) -> List[SmsMessage]:
        if isinstance(event, ExpenseAdded):
            return self.expense_added(event)
        if isinstance(event, ExpenseRemoved):
            return self.expense_removed(event)
        if isinstance(event, InviteeAdded):
            return self.invitee_added(event)
        raise TypeError(f"Unsupported event: {type(event).__name__}")

    def expense_added(self, event: ExpenseAdded) -> List[SmsMessage]:
        group = self.storage.get_group(event.group_id)
        if group is None:
            logger.warning("Group %s vanished before notifying", event.group_id)
            return []

        names = display_names(self.storage.load_members(group.id),
                              self.storage.load_invitees(group.id))
        expense = event.expense
        payer_name = names.get(expense.payer_phone) or format_phone(expense.payer_phone)

        payments = self._payments(group.id, event.settlements)

        def render(invitee: Invitee) -> str:
            return self._render("sms/new_expense.txt",
                                group=group,
                                expense=expense,
                                payer_name=payer_name,
                                phone=invitee.phone,
                                share_minor=share_of(expense, invitee.phone),
                                balance_minor=event.balances.get(invitee.phone),
                                payments=[p for p in payments
                                          if invitee.phone in (p.from_phone, p.to_phone)])

        return self._notify(group.id, render, throttled=True)

    def expense_removed(self, event: ExpenseRemoved) -> List[SmsMessage]:
        group = self.storage.get_group(event.group_id)
        if group is None:
            logger.warning("Group %s vanished before notifying", event.group_id)
            return []

        payments = self._payments(group.id, event.settlements)
        message = self._render("sms/settlement_update.txt", group=group, payments=payments)

        return self._notify(group.id, lambda invitee: message, throttled=True)

    def invitee_added(self, event: InviteeAdded) -> List[SmsMessage]:
        group = self.storage.get_group(event.group_id)
        if group is None:
            logger.warning("Group %s vanished before notifying", event.group_id)
            return []

        message = self._render("sms/invitation.txt", **self._overview(group))

        return self._notify(group.id, lambda invitee: message,
                            throttled=False, only=[event.phone])

    def send_group_details(self, group_id: str, phone: str) -> Optional[SmsMessage]:
        """Texts the group overview to anyone who asks for it."""
        group = self.storage.get_group(group_id)
        if group is None:
            return None

        message = self._render("sms/group_details.txt", **self._overview(group))
        return self.gateway.send(phone, message)

    def _overview(self, group: Group) -> dict:
        members = self.storage.load_members(group.id)
        invitees = self.storage.load_invitees(group.id)
        expenses = self.storage.load_expenses(group.id)
        summary = calculate_summary(group.id, members, expenses, invitees)

        return dict(group=group,
                    members=members,
                    names=display_names(members, invitees),
                    recent_expenses=list(reversed(expenses[-3:])),
                    total_minor=summary.total_minor,
                    payments=summary.payments)

    def _payments(self, group_id: str, settlements: Iterable[Settlement]) -> List[Payment]:
        names = display_names(self.storage.load_members(group_id),
                              self.storage.load_invitees(group_id))
        return [
            Payment(from_phone=s.from_phone,
                    from_name=names.get(s.from_phone) or format_phone(s.from_phone),
                    to_phone=s.to_phone,
                    to_name=names.get(s.to_phone) or format_phone(s.to_phone),
                    amount_minor=s.amount_minor)
            for s in settlements
        ]

    def _render(self, template: str, **context) -> str:
        return self.env.get_template(template).render(**context).strip()

    def _is_throttled(self, invitee: Invitee, now: datetime) -> bool:
        if invitee.last_notified_at is None:
            return False
        return now - invitee.last_notified_at < self.throttle

    def _notify(self,
                group_id: str,
                render: Callable[[Invitee], str],
                throttled: bool,
                only: Optional[List[str]] = None) -> List[SmsMessage]:
        now = self.clock()
        sent: List[SmsMessage] = []
        notified = set()

        for invitee in self.storage.load_invitees(group_id):
            if only is not None and invitee.phone not in only:
                continue
            if throttled and self._is_throttled(invitee, now):
                logger.info("Skipping %s, notified at %s",
                            format_phone(invitee.phone), invitee.last_notified_at)
                continue

            try:
                sent.append(self.gateway.send(invitee.phone, render(invitee)))
            except SmsDeliveryError as e:
                logger.error("Could not text %s: %s", format_phone(invitee.phone), e)
                continue
            notified.add(invitee.phone)

        # Only throttled updates count towards the throttle window.
        if throttled and notified:
            # Reload so invitees added or removed while sending are respected.
            with self.storage.transaction():
                updated = [
                    i.model_copy(update={"last_notified_at": now}) if i.phone in notified else i
                    for i in self.storage.load_invitees(group_id)
                ]
                self.storage.save_invitees(group_id, updated)

        return sent
