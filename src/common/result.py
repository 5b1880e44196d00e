"""
Operation results returned across every public DevStack boundary.

Callers never see exceptions from public operations; they get an
OperationResult that is either a success payload or an error with context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .exceptions import DevStackError


@dataclass
class OperationResult:
    """
    Discriminated success/failure result.

    Attributes:
        success: True when the operation completed
        data: Success payload (paths, pid, counts, ...)
        error: Human-readable error message on failure
        code: Machine-readable error code on failure
        details: Extra failure context (recent logs, conflicting app, ...)
        cancelled: True when the operation ended because the user cancelled
        warnings: Non-fatal problems encountered along the way
    """
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, warnings: Optional[List[str]] = None, **data: Any) -> "OperationResult":
        return cls(success=True, data=data, warnings=list(warnings or []))

    @classmethod
    def fail(
        cls,
        error: "DevStackError | str",
        cancelled: bool = False,
        **details: Any,
    ) -> "OperationResult":
        if isinstance(error, DevStackError):
            merged = dict(error.details)
            merged.update(details)
            return cls(
                success=False,
                error=error.message,
                code=error.code,
                details=merged,
                cancelled=cancelled,
            )
        return cls(success=False, error=str(error), details=details, cancelled=cancelled)

    @classmethod
    def cancelled_result(cls, app_id: str) -> "OperationResult":
        return cls(
            success=False,
            error="Installation cancelled",
            code="CANCELLED",
            details={"app_id": app_id},
            cancelled=True,
        )

    def __bool__(self) -> bool:
        return self.success

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        if self.success:
            out: Dict[str, Any] = {"success": True, **self.data}
            if self.warnings:
                out["warnings"] = list(self.warnings)
            return out
        out = {"error": self.error, "code": self.code, "details": self.details}
        if self.cancelled:
            out["cancelled"] = True
        return out
