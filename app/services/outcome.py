"""Structured results for business operations.

Service functions never raise for expected business conditions (job already
taken, window expired, illegal transition). They return an ``Outcome`` and
the router decides how to surface it. Storage and collaborator faults still
propagate as exceptions.
"""

import enum
from dataclasses import dataclass
from typing import Generic, TypeVar

from fastapi import HTTPException

T = TypeVar("T")


class Rejection(enum.Enum):
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    RACE_LOST = "race_lost"
    EXPIRED = "expired"
    ALREADY_DONE = "already_done"


_STATUS_CODES: dict[Rejection, int] = {
    Rejection.INVALID: 422,
    Rejection.NOT_FOUND: 404,
    Rejection.FORBIDDEN: 403,
    Rejection.CONFLICT: 409,
    Rejection.RACE_LOST: 409,
    Rejection.EXPIRED: 410,
    Rejection.ALREADY_DONE: 409,
}


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    rejection: Rejection | None = None
    detail: str = ""

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def reject(cls, rejection: Rejection, detail: str) -> "Outcome[T]":
        return cls(rejection=rejection, detail=detail)

    @property
    def ok(self) -> bool:
        return self.rejection is None

    @property
    def status_code(self) -> int:
        return 200 if self.rejection is None else _STATUS_CODES[self.rejection]

    def unwrap(self) -> T:
        """Return the value, or raise the HTTP error matching the rejection."""
        if self.rejection is not None:
            raise HTTPException(
                status_code=_STATUS_CODES[self.rejection],
                detail=self.detail,
            )
        return self.value  # type: ignore[return-value]
