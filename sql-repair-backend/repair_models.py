"""
Result types shared across the SQL repair passes.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class FixResult:
    """
    Output of every repair pass.

    fixed_query is never worse than the input: a pass that finds nothing to
    fix returns its input unchanged. is_valid is only cleared by the
    validate_and_fix_* boundaries when a pass raised internally.
    """
    fixed_query: str
    warnings: List[str] = field(default_factory=list)
    is_valid: bool = True
    original_query: Optional[str] = None

    @property
    def changed(self) -> bool:
        if self.original_query is None:
            return False
        return self.fixed_query != self.original_query


@dataclass
class QueryVerificationResult:
    """Contract returned to callers of QueryValidator.validate()."""
    is_valid: bool
    fixed_query: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "fixed_query": self.fixed_query,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }
