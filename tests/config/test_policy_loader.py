"""
Tests for approval policy table loading.

Covers:
- The packaged default table -- brackets, chain, direct mutation limit
- compute_checksum -- deterministic, key-order independent
- parse_policy_table -- every structural problem is reported
- get_active_policy -- loads from a path and logs version and checksum
"""

from __future__ import annotations

import copy
from datetime import date
from decimal import Decimal

import pytest
import yaml

from budget_config import get_active_policy
from budget_config.loader import (
    DEFAULT_POLICY_PATH,
    compute_checksum,
    load_policy_table,
    load_yaml_file,
    parse_amount,
    parse_policy_table,
)
from budget_kernel.domain.roles import Role
from budget_kernel.domain.workflow import RequestType
from budget_kernel.exceptions import ConfigurationError, PolicyLoadError


def _minimal() -> dict:
    return {
        "version": 3,
        "effective_from": "2025-01-01",
        "escalation_chain": ["regional_admin", "super_admin"],
        "direct_mutation_limit": "500",
        "brackets": [
            {
                "name": "small",
                "request_type": "special_allocation",
                "min_amount": "0",
                "max_amount": "1000",
                "steps": [{"order": 0, "role": "regional_admin", "is_final": True}],
            },
            {
                "name": "large",
                "request_type": "special_allocation",
                "min_amount": "1000",
                "steps": [
                    {"order": 0, "role": "regional_admin"},
                    {"order": 1, "role": "super_admin", "required_approvers": 2, "is_final": True},
                ],
            },
        ],
    }


def _errors(data: dict) -> list[str]:
    with pytest.raises(PolicyLoadError) as exc_info:
        parse_policy_table(data)
    return exc_info.value.errors


# =========================================================================
# Packaged default table
# =========================================================================


class TestDefaultPolicy:
    def test_loads(self):
        table = load_policy_table()
        assert table.version == 1
        assert table.effective_from == date(2024, 1, 1)
        assert table.escalation_chain == (
            Role.REGIONAL_ADMIN, Role.FINANCE_OFFICER, Role.SUPER_ADMIN,
        )
        assert table.direct_mutation_limit == Decimal("10000")
        assert len(table.checksum) == 64

    def test_bracket_counts(self):
        table = load_policy_table()
        assert len(table.brackets_for(RequestType.BUDGET_INCREASE)) == 3
        assert len(table.brackets_for(RequestType.LARGE_DISBURSEMENT)) == 2
        assert len(table.brackets_for(RequestType.SPECIAL_ALLOCATION)) == 1

    def test_every_bracket_ends_in_final_step(self):
        for bracket in load_policy_table().brackets:
            assert bracket.steps[-1].is_final
            assert sum(1 for s in bracket.steps if s.is_final) == 1

    def test_amounts_are_decimal(self):
        for bracket in load_policy_table().brackets:
            assert isinstance(bracket.min_amount, Decimal)

    def test_same_file_same_checksum(self):
        assert load_policy_table().checksum == load_policy_table(DEFAULT_POLICY_PATH).checksum


# =========================================================================
# Checksum
# =========================================================================


class TestChecksum:
    def test_key_order_independent(self):
        data = _minimal()
        reordered = dict(reversed(list(data.items())))
        assert compute_checksum(data) == compute_checksum(reordered)

    def test_content_sensitive(self):
        data = _minimal()
        changed = copy.deepcopy(data)
        changed["brackets"][1]["steps"][1]["required_approvers"] = 3
        assert compute_checksum(data) != compute_checksum(changed)

    def test_table_carries_checksum_of_source(self):
        data = _minimal()
        assert parse_policy_table(data).checksum == compute_checksum(data)


# =========================================================================
# Validation
# =========================================================================


class TestParsePolicyTable:
    def test_minimal_table(self):
        table = parse_policy_table(_minimal())
        assert table.version == 3
        assert table.direct_mutation_limit == Decimal("500")
        large = table.brackets[1]
        assert large.max_amount is None
        assert large.steps[1].required_approvers == 2

    def test_policy_load_error_is_configuration_error(self):
        data = _minimal()
        data["version"] = 0
        with pytest.raises(ConfigurationError) as exc_info:
            parse_policy_table(data, source="inline")
        assert exc_info.value.code == "POLICY_LOAD_FAILED"
        assert exc_info.value.source == "inline"

    def test_float_amount_refused(self):
        data = _minimal()
        data["brackets"][0]["max_amount"] = 1000.0
        assert any("quoted" in e for e in _errors(data))

    def test_overlap_refused(self):
        data = _minimal()
        data["brackets"][1]["min_amount"] = "900"
        assert any("overlap" in e for e in _errors(data))

    def test_open_bracket_below_another_refused(self):
        data = _minimal()
        del data["brackets"][0]["max_amount"]
        assert any("overlap" in e for e in _errors(data))

    def test_non_contiguous_orders_refused(self):
        data = _minimal()
        data["brackets"][1]["steps"][1]["order"] = 2
        assert any("contiguous" in e for e in _errors(data))

    def test_final_step_must_be_last(self):
        data = _minimal()
        steps = data["brackets"][1]["steps"]
        steps[0]["is_final"] = True
        steps[1]["is_final"] = False
        assert any("must be the last step" in e for e in _errors(data))

    def test_exactly_one_final(self):
        data = _minimal()
        data["brackets"][1]["steps"][0]["is_final"] = True
        assert any("exactly one step must be final" in e for e in _errors(data))

    def test_unknown_role_refused(self):
        data = _minimal()
        data["brackets"][0]["steps"][0]["role"] = "treasurer"
        data["escalation_chain"].append("auditor")
        errors = _errors(data)
        assert any("treasurer" in e for e in errors)
        assert any("auditor" in e for e in errors)

    def test_zero_quorum_refused(self):
        data = _minimal()
        data["brackets"][0]["steps"][0]["required_approvers"] = 0
        assert any("required_approvers" in e for e in _errors(data))

    def test_unknown_request_type_refused(self):
        data = _minimal()
        data["brackets"][0]["request_type"] = "petty_cash"
        assert any("petty_cash" in e for e in _errors(data))

    def test_every_problem_reported(self):
        data = _minimal()
        data["version"] = "one"
        data["direct_mutation_limit"] = "-5"
        data["brackets"][0]["steps"] = []
        errors = _errors(data)
        assert "version must be a positive integer" in errors
        assert "direct_mutation_limit must not be negative" in errors
        assert any("no steps" in e for e in errors)

    def test_no_brackets(self):
        data = _minimal()
        data["brackets"] = []
        assert "no brackets defined" in _errors(data)


class TestParseAmount:
    def test_accepts_strings_and_ints(self):
        assert parse_amount("12.50") == Decimal("12.50")
        assert parse_amount(100) == Decimal("100")

    @pytest.mark.parametrize("value", [1.5, True, "twelve"])
    def test_refuses(self, value):
        with pytest.raises(ValueError):
            parse_amount(value)


# =========================================================================
# Files and get_active_policy
# =========================================================================


class TestLoadFromFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_file(tmp_path / "absent.yaml")

    def test_empty_file_is_invalid(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(PolicyLoadError) as exc_info:
            load_policy_table(path)
        assert exc_info.value.source == str(path)

    def test_get_active_policy_logs_checksum(self, tmp_path, captured_logs):
        path = tmp_path / "policy.yaml"
        path.write_text(yaml.safe_dump(_minimal()))

        table = get_active_policy(path)

        assert table.version == 3
        loaded = [r for r in captured_logs() if r["message"] == "approval_policy_loaded"]
        assert loaded[-1]["policy_version"] == 3
        assert loaded[-1]["policy_checksum"] == table.checksum
        assert loaded[-1]["source"] == str(path)
