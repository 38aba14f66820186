"""Pytest fixtures for payroll execution tests."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from payroll_execution.calculators.engine import PayCalculator
from payroll_execution.calculators.rule_resolver import (
    RuleSet,
    parse_insurance_rule,
    parse_pay_grade_rule,
    parse_tax_rule,
)
from payroll_execution.calculators.types import (
    EmployeeSnapshot,
    Period,
    RuleBundle,
    RuleKind,
    RuleVersion,
)
from payroll_execution.config import Settings, get_settings
from payroll_execution.database import make_session_factory
from payroll_execution.models import Base
from payroll_execution.services.collaborators import (
    Actor,
    InMemoryEmployeeDirectory,
    InMemoryPeriodFacts,
    Role,
)
from payroll_execution.services.pay_run_service import PayrollRunService
from payroll_execution.services.rule_repository import RuleRepository

# In-memory SQLite shared across sessions through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite://"

PERIOD = Period(2025, 3)
RULES_EFFECTIVE = date(2025, 1, 1)
ENTITY = "ACME"
DEPARTMENT = "OPS"

# Zero below 5000, 10% above
TAX_PAYLOAD: dict[str, Any] = {
    "method": "marginal",
    "exemption": "0",
    "brackets": [
        {"min": "0", "max": "5000", "rate": "0"},
        {"min": "5000", "max": None, "rate": "0.10"},
    ],
}
INSURANCE_PAYLOAD: dict[str, Any] = {
    "brackets": [
        {"min_salary": "0", "max_salary": None, "employee_rate": "0.10", "employer_rate": "0.20"},
    ],
}
GRADE_PAYLOAD: dict[str, Any] = {
    "standard_working_days": 20,
    "allowances": [{"code": "TRANSPORT", "name": "Transport allowance", "amount": "500"}],
}


def make_version(
    kind: RuleKind,
    key: str,
    payload: dict[str, Any],
    effective_start: date = RULES_EFFECTIVE,
    effective_end: date | None = None,
    version: int = 1,
) -> RuleVersion:
    return RuleVersion(
        rule_version_id=uuid4(),
        kind=kind,
        key=key,
        name=f"{kind.value}:{key}",
        version=version,
        effective_start=effective_start,
        effective_end=effective_end,
        payload=payload,
    )


# ===== Pure calculation fixtures =====


@pytest.fixture
def settings() -> Settings:
    return replace(
        get_settings(),
        engine_version="test",
        currency="EGP",
        standard_working_days=22,
        rule_cycle_months=12,
        termination_benefit_cap=Decimal("100000"),
        fanout_concurrency=4,
        fanout_timeout_seconds=5.0,
    )


@pytest.fixture
def rule_versions() -> dict[RuleKind, RuleVersion]:
    return {
        RuleKind.TAX: make_version(RuleKind.TAX, "EG", TAX_PAYLOAD),
        RuleKind.INSURANCE: make_version(RuleKind.INSURANCE, "EG", INSURANCE_PAYLOAD),
        RuleKind.PAY_GRADE: make_version(RuleKind.PAY_GRADE, "G1", GRADE_PAYLOAD),
    }


@pytest.fixture
def rule_set(rule_versions: dict[RuleKind, RuleVersion]) -> RuleSet:
    return RuleSet.of(rule_versions.values())


@pytest.fixture
def bundle(rule_versions: dict[RuleKind, RuleVersion]) -> RuleBundle:
    return RuleBundle(
        tax=parse_tax_rule(rule_versions[RuleKind.TAX]),
        insurance=parse_insurance_rule(rule_versions[RuleKind.INSURANCE]),
        pay_grade=parse_pay_grade_rule(rule_versions[RuleKind.PAY_GRADE]),
    )


@pytest.fixture
def calculator() -> PayCalculator:
    return PayCalculator(standard_working_days=22, engine_version="test")


@pytest.fixture
def make_employee() -> Callable[..., EmployeeSnapshot]:
    """Factory for employee snapshots in the ACME/OPS scope."""

    def _make(base_salary: Decimal | None = Decimal("10000"), **overrides: Any) -> EmployeeSnapshot:
        fields: dict[str, Any] = {
            "employee_id": uuid4(),
            "base_salary": base_salary,
            "pay_grade": "G1",
            "jurisdiction": "EG",
            "hire_date": date(2020, 1, 1),
            "name": "Test Employee",
            "entity": ENTITY,
            "department": DEPARTMENT,
        }
        fields.update(overrides)
        return EmployeeSnapshot(**fields)

    return _make


# ===== Database fixtures =====


@pytest.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


async def seed_rules(session: AsyncSession) -> None:
    repo = RuleRepository(session)
    await repo.add_version(RuleKind.TAX, "EG", TAX_PAYLOAD, effective_start=RULES_EFFECTIVE)
    await repo.add_version(
        RuleKind.INSURANCE, "EG", INSURANCE_PAYLOAD, effective_start=RULES_EFFECTIVE
    )
    await repo.add_version(RuleKind.PAY_GRADE, "G1", GRADE_PAYLOAD, effective_start=RULES_EFFECTIVE)
    await session.commit()


@pytest.fixture
async def seeded_session(session: AsyncSession) -> AsyncSession:
    """Session with the EG tax/insurance and G1 pay grade rules stored."""
    await seed_rules(session)
    return session


# ===== Collaborators and actors =====


@pytest.fixture
def alice(make_employee) -> EmployeeSnapshot:
    return make_employee(Decimal("10000"), name="Alice")


@pytest.fixture
def bob(make_employee) -> EmployeeSnapshot:
    return make_employee(Decimal("6000"), name="Bob")


@pytest.fixture
def directory(alice, bob) -> InMemoryEmployeeDirectory:
    return InMemoryEmployeeDirectory([alice, bob])


@pytest.fixture
def period_facts() -> InMemoryPeriodFacts:
    return InMemoryPeriodFacts()


@pytest.fixture
def specialist() -> Actor:
    return Actor(uuid4(), frozenset({Role.SPECIALIST}))


@pytest.fixture
def manager() -> Actor:
    return Actor(uuid4(), frozenset({Role.MANAGER}))


@pytest.fixture
def finance() -> Actor:
    return Actor(uuid4(), frozenset({Role.FINANCE}))


@pytest.fixture
def run_service(
    seeded_session: AsyncSession,
    directory: InMemoryEmployeeDirectory,
    period_facts: InMemoryPeriodFacts,
    settings: Settings,
) -> PayrollRunService:
    return PayrollRunService(seeded_session, directory, period_facts, settings=settings)


@pytest.fixture
def advance_run(run_service: PayrollRunService, specialist: Actor, manager: Actor, finance: Actor):
    """Drive a fresh run through the lifecycle up to the named stage."""

    async def _advance(stage: str):
        run = await run_service.create_run(specialist, PERIOD.label, ENTITY, DEPARTMENT)
        await run_service.submit_run(run.run_id, specialist)
        if stage == "submitted":
            return run
        await run_service.manager_approve(run.run_id, manager)
        if stage == "approved":
            return run
        await run_service.request_finance_approval(run.run_id, manager)
        if stage == "pending_finance":
            return run
        await run_service.finance_approve(run.run_id, finance)
        return run

    return _advance
