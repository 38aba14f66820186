"""Seed script for sample payroll rules.

Run with:
    python scripts/seed_rules.py

Creates tax, insurance and pay-grade rule versions for the "EG" jurisdiction
and grades G1-G3. Existing rules are left untouched.
"""

from __future__ import annotations

import asyncio
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_execution.calculators.types import RuleKind
from payroll_execution.database import dispose_db, get_session
from payroll_execution.models import PayrollRule
from payroll_execution.services.rule_repository import RuleRepository

EFFECTIVE_START = date(2025, 1, 1)

TAX_RULE: dict[str, Any] = {
    "method": "marginal",
    "exemption": "1250.00",
    "brackets": [
        {"min": "0", "max": "3333.33", "rate": "0"},
        {"min": "3333.33", "max": "5000", "rate": "0.10"},
        {"min": "5000", "max": "6666.67", "rate": "0.15"},
        {"min": "6666.67", "max": "16666.67", "rate": "0.20"},
        {"min": "16666.67", "max": "33333.33", "rate": "0.225"},
        {"min": "33333.33", "max": None, "rate": "0.25"},
    ],
}

INSURANCE_RULE: dict[str, Any] = {
    "brackets": [
        {
            "min_salary": "0",
            "max_salary": "14500",
            "employee_rate": "0.11",
            "employer_rate": "0.1875",
        },
        {
            "min_salary": "14500",
            "max_salary": None,
            "fixed_amount": "1595.00",
            "employer_rate": "0",
        },
    ],
}

PAY_GRADES: dict[str, dict[str, Any]] = {
    "G1": {
        "standard_working_days": 22,
        "allowances": [{"code": "TRANSPORT", "name": "Transport allowance", "amount": "300"}],
    },
    "G2": {
        "standard_working_days": 22,
        "allowances": [
            {"code": "TRANSPORT", "name": "Transport allowance", "amount": "500"},
            {"code": "MEAL", "name": "Meal allowance", "amount": "250"},
        ],
    },
    "G3": {
        "standard_working_days": 20,
        "allowances": [
            {"code": "TRANSPORT", "name": "Transport allowance", "amount": "800"},
            {"code": "HOUSING", "name": "Housing allowance", "amount": "1500"},
        ],
    },
}


async def seed_rule(
    session: AsyncSession,
    kind: RuleKind,
    key: str,
    payload: dict[str, Any],
    rule_name: str,
) -> None:
    result = await session.execute(
        select(PayrollRule).where(PayrollRule.kind == kind.value, PayrollRule.key == key)
    )
    if result.scalar_one_or_none():
        print(f"{kind.value} rule for {key} already exists, skipping...")
        return

    await RuleRepository(session).add_version(
        kind, key, payload, effective_start=EFFECTIVE_START, rule_name=rule_name
    )
    print(f"Created {kind.value} rule for {key}")


async def main() -> None:
    """Seed all sample rules."""
    try:
        async with get_session() as session:
            await seed_rule(session, RuleKind.TAX, "EG", TAX_RULE, "Income tax (EG)")
            await seed_rule(
                session, RuleKind.INSURANCE, "EG", INSURANCE_RULE, "Social insurance (EG)"
            )
            for grade, payload in PAY_GRADES.items():
                await seed_rule(session, RuleKind.PAY_GRADE, grade, payload, f"Pay grade {grade}")
        print("Rule seeding complete")
    finally:
        await dispose_db()


if __name__ == "__main__":
    asyncio.run(main())
