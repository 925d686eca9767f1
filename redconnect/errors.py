from dataclasses import dataclass
from typing import Any, Optional


class RedConnectError(Exception):
    kind = "error"


class ValidationError(RedConnectError):
    """Rejected input: nothing was changed."""
    kind = "validation"


class InvalidTransition(ValidationError):
    kind = "invalid_transition"


class NotFoundError(RedConnectError):
    kind = "not_found"


class CorruptDataError(RedConnectError):
    """A stored row no longer matches its model. Never defaulted."""
    kind = "corrupt"


@dataclass
class Outcome:
    ok: bool
    kind: str = "ok"
    message: str = ""
    data: Any = None

    @property
    def queued(self) -> bool:
        return self.kind == "queued"

    @classmethod
    def success(cls, message: str = "", data: Any = None) -> "Outcome":
        return cls(True, "ok", message, data)

    @classmethod
    def deferred(cls, message: str, seq: Optional[int] = None) -> "Outcome":
        return cls(True, "queued", message, {"seq": seq})

    @classmethod
    def failure(cls, exc: RedConnectError) -> "Outcome":
        return cls(False, exc.kind, str(exc))
