"""
Validation report types.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ValidationIssue:
    """Single validation finding."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


@dataclass
class ValidationReport:
    """Errors block activation; warnings are surfaced but do not block."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.errors.append(ValidationIssue(code, message, details or {}))

    def warning(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.warnings.append(ValidationIssue(code, message, details or {}))

    def extend(self, other: "ValidationReport"):
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def error_messages(self) -> List[str]:
        return [issue.message for issue in self.errors]

    def warning_messages(self) -> List[str]:
        return [issue.message for issue in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
        }
