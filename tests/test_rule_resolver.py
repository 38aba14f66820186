"""Tests for effective-dated rule resolution."""

import random
from datetime import date
from decimal import Decimal

import pytest

from payroll_execution.calculators.rule_resolver import (
    RuleResolver,
    RuleSet,
    parse_insurance_rule,
    parse_pay_grade_rule,
    parse_tax_rule,
    select_version,
)
from payroll_execution.calculators.types import Period, RuleKind
from payroll_execution.exceptions import ConfigurationMissingError

from conftest import GRADE_PAYLOAD, INSURANCE_PAYLOAD, PERIOD, TAX_PAYLOAD, make_version


class TestSelectVersion:
    def test_no_candidates(self):
        assert select_version([], PERIOD) is None

    def test_version_must_cover_period_start(self):
        future = make_version(RuleKind.TAX, "EG", TAX_PAYLOAD, effective_start=date(2025, 3, 2))
        expired = make_version(
            RuleKind.TAX, "EG", TAX_PAYLOAD,
            effective_start=date(2024, 1, 1), effective_end=date(2025, 2, 28),
        )
        assert select_version([future, expired], PERIOD) is None

    def test_end_date_is_inclusive(self):
        version = make_version(
            RuleKind.TAX, "EG", TAX_PAYLOAD,
            effective_start=date(2024, 1, 1), effective_end=date(2025, 3, 1),
        )
        assert select_version([version], PERIOD) is version

    def test_latest_effective_start_wins(self):
        old = make_version(RuleKind.TAX, "EG", TAX_PAYLOAD, effective_start=date(2024, 1, 1))
        new = make_version(RuleKind.TAX, "EG", TAX_PAYLOAD, effective_start=date(2025, 1, 1), version=2)
        assert select_version([old, new], PERIOD) is new
        assert select_version([new, old], PERIOD) is new

    def test_same_start_highest_version_wins(self):
        versions = [
            make_version(RuleKind.TAX, "EG", TAX_PAYLOAD, version=n) for n in (1, 2, 3)
        ]
        shuffled = versions[:]
        random.Random(7).shuffle(shuffled)
        assert select_version(shuffled, PERIOD).version == 3


class TestParsing:
    def test_parse_tax_rule_sorts_brackets(self):
        payload = {
            "method": "flat",
            "exemption": "100",
            "brackets": [
                {"min": "1000", "max": None, "rate": "0.2"},
                {"min": "0", "max": "1000", "rate": "0.1"},
            ],
        }
        rule = parse_tax_rule(make_version(RuleKind.TAX, "EG", payload))

        assert rule.method == "flat"
        assert rule.exemption == Decimal("100")
        assert [b.min_amount for b in rule.brackets] == [Decimal("0"), Decimal("1000")]
        assert rule.brackets[1].max_amount is None

    def test_parse_tax_rule_rejects_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown tax method"):
            parse_tax_rule(make_version(RuleKind.TAX, "EG", {"method": "progressive"}))

    def test_parse_insurance_rule(self):
        rule = parse_insurance_rule(make_version(RuleKind.INSURANCE, "EG", INSURANCE_PAYLOAD))
        bracket = rule.brackets[0]

        assert bracket.employee_rate == Decimal("0.10")
        assert bracket.employer_rate == Decimal("0.20")
        assert bracket.fixed_amount is None
        assert bracket.max_salary is None

    def test_parse_pay_grade_rule(self):
        rule = parse_pay_grade_rule(make_version(RuleKind.PAY_GRADE, "G1", GRADE_PAYLOAD))

        assert rule.grade == "G1"
        assert rule.standard_working_days == 20
        assert rule.allowances[0].code == "TRANSPORT"
        assert rule.allowances[0].amount == Decimal("500")


class TestRuleResolver:
    def test_resolves_complete_bundle(self, rule_set, rule_versions, make_employee):
        bundle = RuleResolver(rule_set).resolve(make_employee(), PERIOD)

        assert bundle.is_complete
        assert bundle.tax.version is rule_versions[RuleKind.TAX]
        assert bundle.pay_grade.grade == "G1"
        assert len(bundle.versions) == 3

    def test_missing_pay_grade_raises_with_partial_bundle(self, rule_set, make_employee):
        employee = make_employee(pay_grade="G9")

        with pytest.raises(ConfigurationMissingError) as exc_info:
            RuleResolver(rule_set).resolve(employee, PERIOD)

        exc = exc_info.value
        assert exc.missing == ["pay_grade"]
        assert exc.employee_id == employee.employee_id
        assert exc.partial_bundle.tax is not None
        assert exc.partial_bundle.insurance is not None
        assert exc.partial_bundle.pay_grade is None

    def test_other_jurisdiction_misses_tax_and_insurance(self, rule_set, make_employee):
        with pytest.raises(ConfigurationMissingError) as exc_info:
            RuleResolver(rule_set).resolve(make_employee(jurisdiction="SA"), PERIOD)

        assert exc_info.value.missing == ["tax", "insurance"]

    def test_rule_set_is_a_snapshot(self, rule_versions, make_employee):
        """Rules added after the snapshot is taken are not seen."""
        versions = list(rule_versions.values())
        rule_set = RuleSet.of(versions)
        versions.append(
            make_version(RuleKind.TAX, "EG", TAX_PAYLOAD, effective_start=date(2025, 2, 1), version=2)
        )

        bundle = RuleResolver(rule_set).resolve(make_employee(), PERIOD)
        assert bundle.tax.version.version == 1

    def test_period_before_any_rule(self, rule_set, make_employee):
        with pytest.raises(ConfigurationMissingError):
            RuleResolver(rule_set).resolve(make_employee(), Period(2024, 12))
