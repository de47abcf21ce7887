"""
Validate stage: declarative per-record rules (required fields, field types).

The whole data set is checked before anything is reported, so a failed run
always carries the complete list of violations.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ValidationError
from pipeline.base import ApiData

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "number": _is_number,
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "string": lambda v: isinstance(v, str),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


@dataclass(frozen=True)
class Violation:
    """One failed rule for one record."""
    api: str
    record_index: int
    field: str
    problem: str

    def __str__(self) -> str:
        return f"{self.api}[{self.record_index}].{self.field}: {self.problem}"


@dataclass
class ValidationRules:
    """
    Rule set applied to every record of every API.

    Attributes:
        required: Fields that must be present and not None
        types: Expected type name per field; checked only when the field is present
    """
    required: List[str] = field(default_factory=lambda: ["id", "created_at"])
    types: Dict[str, str] = field(default_factory=lambda: {
        "id": "number",
        "created_at": "string",
        "updated_at": "string",
    })

    def __post_init__(self):
        unknown = sorted(set(self.types.values()) - set(TYPE_CHECKS))
        if unknown:
            raise ValueError(f"Unknown validation types: {', '.join(unknown)}")


@dataclass
class ValidationResult:
    violations: List[Violation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.violations


class Validator:
    """Checks extracted data against a ``ValidationRules`` set."""

    def __init__(self, rules: Optional[ValidationRules] = None):
        self.rules = rules or ValidationRules()

    def check(self, data: ApiData) -> ValidationResult:
        result = ValidationResult()

        for api_name, records in data.items():
            for index, record in enumerate(records):
                if not isinstance(record, dict):
                    result.violations.append(
                        Violation(api_name, index, "*", "record is not an object")
                    )
                    continue

                for name in self.rules.required:
                    if record.get(name) is None:
                        result.violations.append(
                            Violation(api_name, index, name, "required field missing")
                        )

                for name, expected in self.rules.types.items():
                    value = record.get(name)
                    if value is not None and not TYPE_CHECKS[expected](value):
                        result.violations.append(Violation(
                            api_name, index, name,
                            f"expected {expected}, got {type(value).__name__}"
                        ))

        return result

    def validate(self, data: ApiData) -> ApiData:
        """
        Returns the data unchanged when valid.

        Raises:
            ValidationError: With every violation found
        """
        result = self.check(data)
        if not result.is_valid:
            listing = "; ".join(str(v) for v in result.violations)
            raise ValidationError(
                f"{len(result.violations)} validation violation(s): {listing}",
                violations=result.violations,
            )

        logger.info(
            f"Validated {sum(len(records) for records in data.values())} records "
            f"across {len(data)} APIs"
        )
        return data
