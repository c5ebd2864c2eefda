from __future__ import annotations

from dataclasses import dataclass
from typing import Any


# Not frozen: context managers reassign __traceback__ on exceptions passing through them.
@dataclass(eq=False)
class AppError(Exception):
    code: str
    message: str
    status_code: int = 400
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def configuration_error(code: str, message: str, **details: Any) -> AppError:
    return AppError(code=code, message=message, status_code=500, details=details or None)
