"""
Approval Policy Loader (``budget_config.loader``).

Responsibility
--------------
Loads the approval policy table from YAML and parses it into the frozen
``budget_kernel.domain.policy`` dataclasses, validating its structure on the
way in.  The single public entry point for runtime code is
``budget_config.get_active_policy()``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on kernel domain types
and exceptions only; the kernel never imports from here.

Invariants enforced
-------------------
* Every bracket's step orders are contiguous from 0.
* Exactly one step per bracket is final, and it is the last one.
* Quorums are positive; roles are known ``Role`` members.
* Brackets of the same request type do not overlap.
* ``compute_checksum`` produces a deterministic SHA-256 identity that every
  workflow records as ``policy_checksum``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Structural problems -> ``PolicyLoadError`` listing every problem found.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from budget_kernel.domain.policy import ApprovalPolicyTable, PolicyBracket, StepTemplate
from budget_kernel.domain.roles import Role
from budget_kernel.domain.workflow import RequestType
from budget_kernel.exceptions import PolicyLoadError

DEFAULT_POLICY_PATH = Path(__file__).parent / "policies" / "default.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_date(value: Any) -> date:
    """Parse a date from YAML (string or date object)."""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_amount(value: Any) -> Decimal:
    """Parse a monetary amount.  YAML floats are refused."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Amount must be quoted or an integer, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot parse amount from {value!r}") from None


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _parse_step(data: dict[str, Any], errors: list[str], where: str) -> StepTemplate | None:
    try:
        role = Role(data["role"])
    except KeyError:
        errors.append(f"{where}: step missing 'role'")
        return None
    except ValueError:
        errors.append(f"{where}: unknown role {data['role']!r}")
        return None

    quorum = data.get("required_approvers", 1)
    if not isinstance(quorum, int) or isinstance(quorum, bool) or quorum < 1:
        errors.append(f"{where}: required_approvers must be a positive integer")
        return None

    return StepTemplate(
        order=int(data.get("order", 0)),
        role=role,
        required_approvers=quorum,
        is_final=bool(data.get("is_final", False)),
    )


def _parse_bracket(data: dict[str, Any], errors: list[str], index: int) -> PolicyBracket | None:
    where = f"bracket[{index}] {data.get('name', '')}".rstrip()
    try:
        request_type = RequestType(data["request_type"])
    except KeyError:
        errors.append(f"{where}: missing 'request_type'")
        return None
    except ValueError:
        errors.append(f"{where}: unknown request_type {data['request_type']!r}")
        return None

    try:
        min_amount = parse_amount(data.get("min_amount", "0"))
        max_raw = data.get("max_amount")
        max_amount = parse_amount(max_raw) if max_raw is not None else None
    except ValueError as exc:
        errors.append(f"{where}: {exc}")
        return None

    if max_amount is not None and max_amount <= min_amount:
        errors.append(f"{where}: max_amount must exceed min_amount")

    steps: list[StepTemplate] = []
    for step_data in data.get("steps") or []:
        step = _parse_step(step_data, errors, where)
        if step is not None:
            steps.append(step)
    steps.sort(key=lambda s: s.order)

    if not steps:
        errors.append(f"{where}: no steps")
    else:
        orders = [s.order for s in steps]
        if orders != list(range(len(steps))):
            errors.append(f"{where}: step orders must be contiguous from 0, got {orders}")
        finals = [s for s in steps if s.is_final]
        if len(finals) != 1:
            errors.append(f"{where}: exactly one step must be final, found {len(finals)}")
        elif not steps[-1].is_final:
            errors.append(f"{where}: the final step must be the last step")

    return PolicyBracket(
        request_type=request_type,
        min_amount=min_amount,
        max_amount=max_amount,
        steps=tuple(steps),
        name=data.get("name", ""),
    )


def _check_overlaps(brackets: list[PolicyBracket], errors: list[str]) -> None:
    for request_type in RequestType:
        ranges = sorted(
            (b for b in brackets if b.request_type == request_type),
            key=lambda b: b.min_amount,
        )
        for lower, upper in zip(ranges, ranges[1:]):
            if lower.max_amount is None or lower.max_amount > upper.min_amount:
                errors.append(
                    f"{request_type.value}: brackets '{lower.name}' and "
                    f"'{upper.name}' overlap"
                )


def parse_policy_table(data: dict[str, Any], source: str = "<dict>") -> ApprovalPolicyTable:
    """
    Parse and validate an ``ApprovalPolicyTable`` from a dict.

    Raises:
        PolicyLoadError: listing every structural problem found.
    """
    errors: list[str] = []

    version = data.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        errors.append("version must be a positive integer")
        version = 0

    try:
        effective_from = parse_date(data.get("effective_from", "2024-01-01"))
    except ValueError as exc:
        errors.append(str(exc))
        effective_from = date.min

    chain: list[Role] = []
    for raw in data.get("escalation_chain") or []:
        try:
            chain.append(Role(raw))
        except ValueError:
            errors.append(f"escalation_chain: unknown role {raw!r}")
    if len(set(chain)) != len(chain):
        errors.append("escalation_chain: roles must be unique")

    try:
        limit = parse_amount(data.get("direct_mutation_limit", "0"))
        if limit < 0:
            errors.append("direct_mutation_limit must not be negative")
    except ValueError as exc:
        errors.append(f"direct_mutation_limit: {exc}")
        limit = Decimal("0")

    brackets: list[PolicyBracket] = []
    for index, bracket_data in enumerate(data.get("brackets") or []):
        bracket = _parse_bracket(bracket_data, errors, index)
        if bracket is not None:
            brackets.append(bracket)
    if not brackets:
        errors.append("no brackets defined")
    _check_overlaps(brackets, errors)

    if errors:
        raise PolicyLoadError(source, errors)

    return ApprovalPolicyTable(
        version=version,
        effective_from=effective_from,
        escalation_chain=tuple(chain),
        direct_mutation_limit=limit,
        brackets=tuple(brackets),
        checksum=compute_checksum(data),
    )


def load_policy_table(path: Path | str | None = None) -> ApprovalPolicyTable:
    """Load and validate a policy table file (the packaged default if None)."""
    policy_path = Path(path) if path is not None else DEFAULT_POLICY_PATH
    return parse_policy_table(load_yaml_file(policy_path), source=str(policy_path))
