"""Read-only collaborator interfaces consumed by the payroll engine.

Employee master data, attendance/leave facts and identity are owned by other
systems. The engine only reads snapshots through these protocols; the
in-memory implementations back tests and embedded use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol
from uuid import UUID

from payroll_execution.calculators.engine import employed_in
from payroll_execution.calculators.types import EmployeeSnapshot, Period, PeriodFacts
from payroll_execution.exceptions import PermissionDeniedError


class Role:
    SPECIALIST = "specialist"
    MANAGER = "manager"
    FINANCE = "finance"

    ALL = frozenset({SPECIALIST, MANAGER, FINANCE})


@dataclass(frozen=True)
class Actor:
    """Identity of the user performing a mutating call."""

    user_id: UUID
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def require(self, role: str, operation: str) -> None:
        if not self.has_role(role):
            raise PermissionDeniedError(self.user_id, role, operation)

    def require_any(self, roles: Iterable[str], operation: str) -> None:
        roles = tuple(roles)
        if not any(self.has_role(role) for role in roles):
            raise PermissionDeniedError(self.user_id, " or ".join(roles), operation)


class EmployeeDirectory(Protocol):
    async def get_employee(self, employee_id: UUID) -> EmployeeSnapshot | None: ...

    async def list_employees(
        self, entity: str, department: str | None, period: Period
    ) -> list[EmployeeSnapshot]: ...


class PeriodFactsProvider(Protocol):
    async def get_period_facts(self, employee_id: UUID, period: Period) -> PeriodFacts: ...


class InMemoryEmployeeDirectory:
    """Employee directory over a fixed list of snapshots."""

    def __init__(self, employees: Iterable[EmployeeSnapshot] = ()):
        self._employees = {e.employee_id: e for e in employees}

    def add(self, employee: EmployeeSnapshot) -> None:
        self._employees[employee.employee_id] = employee

    async def get_employee(self, employee_id: UUID) -> EmployeeSnapshot | None:
        return self._employees.get(employee_id)

    async def list_employees(
        self, entity: str, department: str | None, period: Period
    ) -> list[EmployeeSnapshot]:
        """Employees of the scope employed for at least one day of the period."""
        return sorted(
            (
                e
                for e in self._employees.values()
                if e.entity == entity
                and (department is None or e.department == department)
                and employed_in(e, period)
            ),
            key=lambda e: str(e.employee_id),
        )


class InMemoryPeriodFacts:
    """Period facts keyed by (employee_id, 'YYYY-MM'); absent means no events."""

    def __init__(self, facts: dict[tuple[UUID, str], PeriodFacts] | None = None):
        self._facts = dict(facts or {})

    def set(self, employee_id: UUID, period: str, facts: PeriodFacts) -> None:
        self._facts[(employee_id, period)] = facts

    async def get_period_facts(self, employee_id: UUID, period: Period) -> PeriodFacts:
        return self._facts.get((employee_id, period.label), PeriodFacts())
