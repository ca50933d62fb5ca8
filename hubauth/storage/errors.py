from __future__ import annotations

from typing import Any, Dict, Optional

DUPLICATE = "duplicate"
MISSING_REFERENCE = "missing_reference"


class ConstraintViolation(Exception):
    """A write broke a store rule.

    ``kind`` is ``DUPLICATE`` for uniqueness clashes and ``MISSING_REFERENCE``
    when a referenced tenant, account or role does not exist.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        kind: str = DUPLICATE,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.kind = kind

    @classmethod
    def missing(cls, message: str, **detail: Any) -> "ConstraintViolation":
        return cls(message, detail, kind=MISSING_REFERENCE)


__all__ = ["ConstraintViolation", "DUPLICATE", "MISSING_REFERENCE"]
