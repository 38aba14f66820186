"""Rule tables backed by payroll_rule / payroll_rule_version."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import date
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_execution.calculators.rule_resolver import RuleSet
from payroll_execution.calculators.types import Period, RuleKind, RuleVersion
from payroll_execution.exceptions import ValidationError
from payroll_execution.models import PayrollRule, PayrollRuleVersion

logger = logging.getLogger(__name__)


def compute_logic_hash(payload: dict[str, Any]) -> str:
    """Compute a deterministic hash of a rule payload."""
    json_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()[:32]


def to_snapshot(rule: PayrollRule, version: PayrollRuleVersion) -> RuleVersion:
    return RuleVersion(
        rule_version_id=version.rule_version_id,
        kind=RuleKind(rule.kind),
        key=rule.key,
        name=rule.rule_name,
        version=version.version,
        effective_start=version.effective_start,
        effective_end=version.effective_end,
        payload=json.loads(json.dumps(version.payload_json)),
    )


class RuleRepository:
    """Versioned configuration rule tables.

    Calculations never read the tables directly: ``load_rule_set`` returns an
    immutable snapshot that is injected into the RuleResolver.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def load_rule_set(self) -> RuleSet:
        """Snapshot every rule version."""
        result = await self.session.execute(
            select(PayrollRule, PayrollRuleVersion).join(
                PayrollRuleVersion, PayrollRule.rule_id == PayrollRuleVersion.rule_id
            )
        )
        return RuleSet.of(to_snapshot(rule, version) for rule, version in result.all())

    async def get_tax_rules(self, jurisdiction: str, period: Period) -> list[RuleVersion]:
        return await self._versions_covering(RuleKind.TAX, jurisdiction, period)

    async def get_insurance_rules(self, jurisdiction: str, period: Period) -> list[RuleVersion]:
        return await self._versions_covering(RuleKind.INSURANCE, jurisdiction, period)

    async def get_pay_grade_rules(self, grade: str, period: Period) -> list[RuleVersion]:
        return await self._versions_covering(RuleKind.PAY_GRADE, grade, period)

    async def _versions_covering(
        self, kind: RuleKind, key: str, period: Period
    ) -> list[RuleVersion]:
        as_of = period.start
        result = await self.session.execute(
            select(PayrollRule, PayrollRuleVersion)
            .join(PayrollRuleVersion, PayrollRule.rule_id == PayrollRuleVersion.rule_id)
            .where(
                PayrollRule.kind == kind.value,
                PayrollRule.key == key,
                PayrollRuleVersion.effective_start <= as_of,
                (
                    PayrollRuleVersion.effective_end.is_(None)
                    | (PayrollRuleVersion.effective_end >= as_of)
                ),
            )
            .order_by(PayrollRuleVersion.effective_start, PayrollRuleVersion.version)
        )
        return [to_snapshot(rule, version) for rule, version in result.all()]

    async def add_version(
        self,
        kind: RuleKind | str,
        key: str,
        payload: dict[str, Any],
        effective_start: date,
        effective_end: date | None = None,
        rule_name: str | None = None,
    ) -> PayrollRuleVersion:
        """Append a new version; existing versions are never modified."""
        kind = RuleKind(kind)
        if effective_end is not None and effective_end < effective_start:
            raise ValidationError("effective_end precedes effective_start", field="effective_end")

        rule = await self.session.scalar(
            select(PayrollRule).where(PayrollRule.kind == kind.value, PayrollRule.key == key)
        )
        if rule is None:
            rule = PayrollRule(kind=kind.value, key=key, rule_name=rule_name or f"{kind.value}:{key}")
            self.session.add(rule)
            await self.session.flush()

        latest = await self.session.scalar(
            select(func.max(PayrollRuleVersion.version)).where(
                PayrollRuleVersion.rule_id == rule.rule_id
            )
        )
        version = PayrollRuleVersion(
            rule_id=rule.rule_id,
            version=(latest or 0) + 1,
            effective_start=effective_start,
            effective_end=effective_end,
            logic_hash=compute_logic_hash(payload),
            payload_json=payload,
        )
        self.session.add(version)
        await self.session.flush()
        logger.info(
            "Added %s rule %s version %d effective %s",
            kind.value, key, version.version, effective_start,
        )
        return version
