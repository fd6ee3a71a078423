from dataclasses import dataclass, field
from typing import Any


@dataclass
class Result:
    """Outcome of a public operation: a success flag, a user-facing message and
    any extra payload (``user``, ``entries``, ``id`` ...).

    ``token`` carries a freshly issued session token back to the boundary and
    is never serialised.
    """
    success: bool
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    require_auth: bool = False
    token: str | None = None

    @classmethod
    def ok(cls, message: str, **payload) -> "Result":
        return cls(True, message, payload)

    @classmethod
    def fail(cls, message: str, require_auth: bool = False, **payload) -> "Result":
        return cls(False, message, payload, require_auth=require_auth)

    def to_dict(self) -> dict[str, Any]:
        body = {"success": self.success, "message": self.message, **self.payload}
        if self.require_auth:
            body["requireAuth"] = True
        return body
