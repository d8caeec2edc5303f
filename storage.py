import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import nullcontext
from pathlib import Path
from threading import RLock
from typing import ContextManager, Dict, List, Optional

from models import Expense, Group, Invitee, Member, StoreSnapshot

logger = logging.getLogger(__name__)


class GroupRepository(ABC):
    """Group-scoped access to members, invitees and expenses."""

    @abstractmethod
    def create_group(self, group: Group) -> Group: ...

    @abstractmethod
    def get_group(self, group_id: str) -> Optional[Group]: ...

    @abstractmethod
    def list_groups(self) -> List[Group]: ...

    @abstractmethod
    def delete_group(self, group_id: str) -> bool: ...

    @abstractmethod
    def load_members(self, group_id: str) -> List[Member]: ...

    @abstractmethod
    def save_members(self, group_id: str, members: List[Member]) -> None: ...

    @abstractmethod
    def load_invitees(self, group_id: str) -> List[Invitee]: ...

    @abstractmethod
    def save_invitees(self, group_id: str, invitees: List[Invitee]) -> None: ...

    @abstractmethod
    def load_expenses(self, group_id: str) -> List[Expense]: ...

    @abstractmethod
    def save_expenses(self, group_id: str, expenses: List[Expense]) -> None: ...

    def group_exists(self, group_id: str) -> bool:
        return self.get_group(group_id) is not None

    def transaction(self) -> ContextManager:
        """Hold this around a load-modify-save sequence."""
        return nullcontext()


class InMemoryStorage(GroupRepository):
    def __init__(self):
        self.groups: Dict[str, Group] = {}
        self.members: Dict[str, List[Member]] = {}
        self.invitees: Dict[str, List[Invitee]] = {}
        self.expenses: Dict[str, List[Expense]] = {}
        # Notifications save from the background threadpool.
        self._lock = RLock()

    def transaction(self) -> ContextManager:
        return self._lock

    def create_group(self, group: Group) -> Group:
        with self._lock:
            self.groups[group.id] = group
            self.members.setdefault(group.id, [])
            self.invitees.setdefault(group.id, [])
            self.expenses.setdefault(group.id, [])
            self._changed()
        return group

    def get_group(self, group_id: str) -> Optional[Group]:
        with self._lock:
            return self.groups.get(group_id)

    def list_groups(self) -> List[Group]:
        with self._lock:
            return sorted(self.groups.values(), key=lambda g: g.created_at)

    def delete_group(self, group_id: str) -> bool:
        with self._lock:
            if self.groups.pop(group_id, None) is None:
                return False
            self.members.pop(group_id, None)
            self.invitees.pop(group_id, None)
            self.expenses.pop(group_id, None)
            self._changed()
        return True

    def load_members(self, group_id: str) -> List[Member]:
        with self._lock:
            return list(self.members.get(group_id, []))

    def save_members(self, group_id: str, members: List[Member]) -> None:
        with self._lock:
            self.members[group_id] = list(members)
            self._changed()

    def load_invitees(self, group_id: str) -> List[Invitee]:
        with self._lock:
            return list(self.invitees.get(group_id, []))

    def save_invitees(self, group_id: str, invitees: List[Invitee]) -> None:
        with self._lock:
            self.invitees[group_id] = list(invitees)
            self._changed()

    def load_expenses(self, group_id: str) -> List[Expense]:
        with self._lock:
            return list(self.expenses.get(group_id, []))

    def save_expenses(self, group_id: str, expenses: List[Expense]) -> None:
        with self._lock:
            self.expenses[group_id] = list(expenses)
            self._changed()

    def _changed(self) -> None:
        pass


class JsonFileStorage(InMemoryStorage):
    """Keeps the whole store in one JSON file, rewritten after every save."""

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            snapshot = StoreSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
            self.groups = dict(snapshot.groups)
            self.members = dict(snapshot.members)
            self.invitees = dict(snapshot.invitees)
            self.expenses = dict(snapshot.expenses)
            logger.info("Loaded %d groups from %s", len(self.groups), self.path)

    def _changed(self) -> None:
        # Called with self._lock held.
        snapshot = StoreSnapshot(
            groups=self.groups,
            members=self.members,
            invitees=self.invitees,
            expenses=self.expenses,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("w",
                                         encoding="utf-8",
                                         dir=self.path.parent,
                                         prefix=self.path.name,
                                         suffix=".tmp",
                                         delete=False) as tmp:
            tmp.write(snapshot.model_dump_json(indent=2))
        try:
            os.replace(tmp.name, self.path)
        except OSError:
            os.unlink(tmp.name)
            raise
        logger.debug("Store written to %s", self.path)
