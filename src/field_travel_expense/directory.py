"""Employee directory: grade, position, approval chain and active status."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import ApprovalChain


class Employee(BaseModel):
    """Directory record for a field employee or approver."""

    employee_id: str = Field(..., min_length=1, description="Unique employee identifier")
    name: str = Field(..., description="Display name")
    grade: str | None = Field(default=None, description="Grade or designation for policy lookup")
    position: str | None = Field(default=None, description="Position key for rate lookup")
    approval_chain: ApprovalChain | None = Field(
        default=None, description="Configured approvers for this employee's claims"
    )
    active: bool = Field(default=True, description="False once the employee has left")

    model_config = ConfigDict(frozen=True)

    @field_validator("approval_chain", mode="before")
    @classmethod
    def _chain_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, Mapping) and "steps" not in value:
            return ApprovalChain.from_mapping(value)
        return value


class EmployeeDirectory(Protocol):
    def get(self, employee_id: str) -> Employee | None: ...

    def is_active(self, employee_id: str) -> bool: ...


class InMemoryDirectory:
    """Mutable directory used by services, tests and the YAML loader."""

    def __init__(self, employees: Iterable[Employee] = ()) -> None:
        self._lock = threading.Lock()
        self._employees: dict[str, Employee] = {}
        for employee in employees:
            self.add(employee)

    @classmethod
    def from_yaml(cls, content: str) -> InMemoryDirectory:
        data = yaml.safe_load(content) or {}
        records = data.get("employees")
        if not isinstance(records, list):
            raise ValueError("Directory configuration must include an 'employees' list")
        return cls(Employee.model_validate(record) for record in records)

    @classmethod
    def from_file(cls, path: str | Path) -> InMemoryDirectory:
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))

    def add(self, employee: Employee) -> None:
        with self._lock:
            self._employees[employee.employee_id] = employee

    def get(self, employee_id: str) -> Employee | None:
        with self._lock:
            return self._employees.get(employee_id)

    def is_active(self, employee_id: str) -> bool:
        """Unknown identifiers are not active; the claim engine stalls on them."""

        employee = self.get(employee_id)
        return employee is not None and employee.active

    def set_active(self, employee_id: str, active: bool) -> Employee:
        with self._lock:
            employee = self._employees.get(employee_id)
            if employee is None:
                raise KeyError(employee_id)
            updated = employee.model_copy(update={"active": active})
            self._employees[employee_id] = updated
            return updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._employees)


__all__ = ["Employee", "EmployeeDirectory", "InMemoryDirectory"]
