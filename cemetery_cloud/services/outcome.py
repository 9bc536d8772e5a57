"""Result value returned by best-effort collaborators instead of raising."""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Outcome:
    ok: bool
    skipped: bool = False
    detail: Optional[str] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(ok=True)

    @classmethod
    def skip(cls, reason: str) -> "Outcome":
        return cls(ok=True, skipped=True, detail=reason)

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        return cls(ok=False, detail=error)
