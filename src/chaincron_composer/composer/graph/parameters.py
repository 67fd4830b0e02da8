"""Variable types, parameter schemas and `{{variable}}` references.

Each node kind has a small schema of well-known parameters with a declared
variable type. Literal values are checked when a node is constructed; values that
reference a variable are checked later by the flow resolver, once it is known
which variables are visible to the node.

Reference syntax:
- `{{profit}}` refers to the closest producer of `profit`
- `{{action1.profit}}` refers to the `profit` produced by node `action1`
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum


class VarType(str, Enum):
    NUMERIC = "numeric"
    STRING = "string"
    ADDRESS = "address"
    DURATION = "duration"


class NodeKind(str, Enum):
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    OUTPUT = "output"


@dataclass(frozen=True, slots=True)
class ParamSpec:
    type: VarType
    choices: frozenset[str] | None = None
    # Gas amounts travel as decimal text ("0.002") as well as numbers.
    decimal_text: bool = False


# Static estimate hints understood by the default executor estimates; valid on every kind.
COMMON_PARAMETERS: dict[str, ParamSpec] = {
    "chain": ParamSpec(VarType.STRING),
    "gasEstimate": ParamSpec(VarType.NUMERIC, decimal_text=True),
    "successRate": ParamSpec(VarType.NUMERIC),
    "durationMs": ParamSpec(VarType.NUMERIC),
}

KIND_PARAMETERS: dict[NodeKind, dict[str, ParamSpec]] = {
    NodeKind.TRIGGER: {
        "interval": ParamSpec(VarType.DURATION),
        "schedule": ParamSpec(VarType.STRING),
        "event": ParamSpec(VarType.STRING),
        "token": ParamSpec(VarType.STRING),
        "targetPrice": ParamSpec(VarType.NUMERIC),
    },
    NodeKind.ACTION: {
        "token": ParamSpec(VarType.STRING),
        "protocol": ParamSpec(VarType.STRING),
        "amount": ParamSpec(VarType.NUMERIC),
        "slippage": ParamSpec(VarType.NUMERIC),
        "recipient": ParamSpec(VarType.ADDRESS),
        "contract": ParamSpec(VarType.ADDRESS),
        "targetChain": ParamSpec(VarType.STRING),
        "targetAllocation": ParamSpec(VarType.STRING),
        "message": ParamSpec(VarType.STRING),
        "delay": ParamSpec(VarType.DURATION),
    },
    NodeKind.CONDITION: {
        "threshold": ParamSpec(VarType.NUMERIC),
        "operator": ParamSpec(
            VarType.STRING, choices=frozenset({">", ">=", "<", "<=", "==", "!="})
        ),
        "value": ParamSpec(VarType.NUMERIC),
    },
    NodeKind.OUTPUT: {
        "message": ParamSpec(VarType.STRING),
        "channel": ParamSpec(VarType.STRING),
        "recipient": ParamSpec(VarType.ADDRESS),
    },
}


def parameter_spec(kind: NodeKind, name: str) -> ParamSpec | None:
    """Declared schema entry for parameter `name` on `kind`; None for free-form parameters."""

    declared = KIND_PARAMETERS[kind].get(name)
    if declared is not None:
        return declared
    return COMMON_PARAMETERS.get(name)


_REFERENCE = re.compile(r"\{\{\s*([A-Za-z_][\w-]*)(?:\.([A-Za-z_]\w*))?\s*\}\}")
_WHOLE_REFERENCE = re.compile(rf"^\s*{_REFERENCE.pattern}\s*$")


@dataclass(frozen=True, slots=True)
class VariableRef:
    """A `{{...}}` reference found in a parameter value."""

    name: str
    producer_id: str | None = None
    whole_value: bool = False

    def __str__(self) -> str:
        if self.producer_id is None:
            return self.name
        return f"{self.producer_id}.{self.name}"


def find_references(value: object) -> list[VariableRef]:
    """Return the variable references in a parameter value, in order of appearance."""

    if not isinstance(value, str):
        return []
    whole = _WHOLE_REFERENCE.match(value) is not None
    refs: list[VariableRef] = []
    for match in _REFERENCE.finditer(value):
        first, second = match.group(1), match.group(2)
        if second is None:
            refs.append(VariableRef(name=first, whole_value=whole))
        else:
            refs.append(VariableRef(name=second, producer_id=first, whole_value=whole))
    return refs


def render_references(value: str, lookup: dict[str, object]) -> object:
    """Substitute references in `value` using `lookup` (keys as produced by `str(ref)`).

    A whole-value reference yields the variable's own value (keeping its type);
    embedded references are rendered as text. Unresolved references are left as-is.
    """

    whole = _WHOLE_REFERENCE.match(value)
    if whole is not None:
        ref = find_references(value)[0]
        return lookup.get(str(ref), value)

    def _sub(match: re.Match[str]) -> str:
        first, second = match.group(1), match.group(2)
        key = first if second is None else f"{first}.{second}"
        if key not in lookup:
            return match.group(0)
        return str(lookup[key])

    return _REFERENCE.sub(_sub, value)


_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{16,64}$")
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)\s*$")
_DURATION_UNITS_MS = {"ms": 1, "s": 1_000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}


def parse_duration_ms(value: object) -> int:
    """Parse `"24h"`, `"30m"`, `"15s"`, `"500ms"`, `"7d"` or a millisecond count.

    Raises:
        ValueError: If the value is not a duration.
    """

    if isinstance(value, bool):
        raise ValueError(f"Not a duration: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return value
    if isinstance(value, str):
        match = _DURATION.match(value)
        if match is not None:
            amount = Decimal(match.group(1))
            return int(amount * _DURATION_UNITS_MS[match.group(2)])
    raise ValueError(f"Not a duration: {value!r}")


def literal_matches(value: object, var_type: VarType) -> bool:
    """Whether a literal parameter value has exactly the given variable type."""

    if var_type is VarType.NUMERIC:
        return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)
    if var_type is VarType.STRING:
        return isinstance(value, str)
    if var_type is VarType.ADDRESS:
        return isinstance(value, str) and _ADDRESS.match(value) is not None
    try:
        parse_duration_ms(value)
    except ValueError:
        return False
    return True


def _is_decimal_text(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        return Decimal(value.strip()).is_finite()
    except InvalidOperation:
        return False


def infer_type(value: object) -> VarType:
    """Best-effort type of an untyped workflow variable value."""

    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return VarType.NUMERIC
    if isinstance(value, str):
        if _ADDRESS.match(value):
            return VarType.ADDRESS
        if _DURATION.match(value):
            return VarType.DURATION
    return VarType.STRING


def check_parameters(kind: NodeKind, parameters: dict[str, object]) -> list[str]:
    """Return problems with literal parameter values for a node of `kind`.

    Values containing a whole-value reference are skipped; the flow resolver checks
    their types. Parameters without a schema entry are free-form.
    """

    problems: list[str] = []
    for name, value in parameters.items():
        declared = parameter_spec(kind, name)
        if declared is None:
            continue
        refs = find_references(value)
        if refs and refs[0].whole_value:
            continue
        if refs and declared.type is VarType.STRING:
            # Interpolated text is still a string.
            continue
        if declared.decimal_text and _is_decimal_text(value):
            continue
        if not literal_matches(value, declared.type):
            problems.append(
                f"parameter {name!r} of a {kind.value} node must be {declared.type.value}, "
                f"got {value!r}"
            )
            continue
        if declared.choices is not None and value not in declared.choices:
            allowed = ", ".join(sorted(declared.choices))
            problems.append(f"parameter {name!r} must be one of: {allowed}")
    return problems


_COMPARISONS: dict[str, Callable[[Decimal, Decimal], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def condition_holds(parameters: Mapping[str, object]) -> bool | None:
    """Evaluate a condition node's `value <operator> threshold`.

    `parameters` are expected to have their references rendered already. The
    operator defaults to `>=`. Returns None when there is nothing to compare (no
    `value` or no `threshold`).

    Raises:
        ValueError: If an operand is not numeric or the operator is unknown.
    """

    value, threshold = parameters.get("value"), parameters.get("threshold")
    if value is None or threshold is None:
        return None
    op = parameters.get("operator", ">=")
    compare = _COMPARISONS.get(op) if isinstance(op, str) else None
    if compare is None:
        raise ValueError(f"Unknown condition operator: {op!r}")
    return compare(_operand(value, "value"), _operand(threshold, "threshold"))


def _operand(value: object, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"Condition {name} must be numeric, got {value!r}")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Condition {name} must be numeric, got {value!r}") from None
    if not number.is_finite():
        raise ValueError(f"Condition {name} must be numeric, got {value!r}")
    return number
