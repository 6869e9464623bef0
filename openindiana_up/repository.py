"""VM record repositories for openindiana-up."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from openindiana_up.constants import STATUS_RUNNING, VM_STATUSES
from openindiana_up.database import VirtualMachine
from openindiana_up.exceptions import PersistenceError


class IVMRepository(ABC):
    @abstractmethod
    def create(self, vm: VirtualMachine) -> VirtualMachine:
        """Insert a new record; duplicate id, name or MAC is an error."""

    @abstractmethod
    def find(self, name_or_id: str) -> Optional[VirtualMachine]:
        """Look a record up by its name or its id."""

    @abstractmethod
    def list(self, running_only: bool = False) -> List[VirtualMachine]:
        """All records, oldest first, optionally only RUNNING ones."""

    @abstractmethod
    def update(self, vm: VirtualMachine, **fields: Any) -> VirtualMachine:
        """Apply a partial update (status, pid, resources)."""

    @abstractmethod
    def delete(self, vm: VirtualMachine) -> None:
        """Remove a record."""

    @abstractmethod
    def names(self) -> List[str]:
        """Names currently in use."""


class SqlalchemyVMRepository(IVMRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise PersistenceError(f"Failed to {action}: {exc.orig}") from exc

    def create(self, vm: VirtualMachine) -> VirtualMachine:
        self.db.add(vm)
        self._commit(f"save virtual machine {vm.name}")
        self.db.refresh(vm)
        return vm

    def find(self, name_or_id: str) -> Optional[VirtualMachine]:
        matches = (
            self.db.query(VirtualMachine)
            .filter(or_(VirtualMachine.name == name_or_id, VirtualMachine.id == name_or_id))
            .all()
        )
        for vm in matches:
            if vm.id == name_or_id:
                return vm
        return matches[0] if matches else None

    def list(self, running_only: bool = False) -> List[VirtualMachine]:
        query = self.db.query(VirtualMachine)
        if running_only:
            query = query.filter(VirtualMachine.status == STATUS_RUNNING)
        return query.order_by(VirtualMachine.created_at, VirtualMachine.name).all()

    def update(self, vm: VirtualMachine, **fields: Any) -> VirtualMachine:
        if "status" in fields and fields["status"] not in VM_STATUSES:
            raise ValueError(f"Unknown status {fields['status']!r}")
        for key, value in fields.items():
            if not hasattr(VirtualMachine, key):
                raise AttributeError(f"VirtualMachine has no column '{key}'")
            setattr(vm, key, value)
        self._commit(f"update virtual machine {vm.name}")
        self.db.refresh(vm)
        return vm

    def delete(self, vm: VirtualMachine) -> None:
        self.db.delete(vm)
        self._commit(f"remove virtual machine {vm.name}")

    def names(self) -> List[str]:
        return [row[0] for row in self.db.query(VirtualMachine.name).all()]
