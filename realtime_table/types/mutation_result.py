"""
MutationResult - the value every collection write returns instead of raising
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from realtime_table.errors import classify_error


@dataclass
class MutationResult:
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Any = None) -> "MutationResult":
        return cls(data=data)

    @classmethod
    def failure(cls, exc: BaseException) -> "MutationResult":
        err = classify_error(exc)
        return cls(data=None, error=str(err), error_type=err.error_type)

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "error": self.error}
