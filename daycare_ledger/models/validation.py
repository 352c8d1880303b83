"""
Validation result models shared by boundary validation and import.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from daycare_ledger.models.keys import utcnow


class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'unlinked')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage validation.

    Stage 1: Schema validation (types, required fields, tagged variants)
    Stage 2: Semantic validation (pricing and linkage checks)
    """

    transaction_id: Optional[str] = Field(
        default=None,
        description="ID of the transaction being validated, if it parsed"
    )
    validated_at: datetime = Field(default_factory=utcnow)

    schema_valid: bool = False
    semantic_valid: bool = False
    is_valid: bool = False

    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(
        default_factory=list,
        description="Warning messages that do not block saving"
    )

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]
