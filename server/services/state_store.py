import time
from dataclasses import dataclass, field
from typing import Protocol

from fastapi import Request, Response


class TransientStateStore(Protocol):
    """Short-lived values that must survive one OAuth redirect round-trip."""

    def put(self, key: str, value: str, ttl: int) -> None: ...

    def take_once(self, key: str) -> str | None: ...


def state_key(provider: str) -> str:
    return f"{provider}_auth_state"


def verifier_key(provider: str) -> str:
    return f"{provider}_code_verifier"


class MemoryStateStore:
    """In-process store, used outside the HTTP layer (jobs, tests)."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._values: dict[str, tuple[str, float]] = {}

    def put(self, key: str, value: str, ttl: int) -> None:
        self._values[key] = (value, self._clock() + ttl)

    def take_once(self, key: str) -> str | None:
        entry = self._values.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            return None
        return value

    def __contains__(self, key: str) -> bool:
        return key in self._values


@dataclass
class _CookieOp:
    key: str
    value: str | None
    max_age: int | None


@dataclass
class CookieStateStore:
    """
    Cookie-backed store. Reads come from the inbound request; writes and
    deletions are queued and applied to whichever response is eventually
    returned, since the redirect is built after the orchestrator runs.
    The browser enforces the TTL through max-age.
    """

    request: Request | None = None
    secure: bool = False
    _pending: list[_CookieOp] = field(default_factory=list)
    _taken: set[str] = field(default_factory=set)

    def put(self, key: str, value: str, ttl: int) -> None:
        self._pending.append(_CookieOp(key=key, value=value, max_age=ttl))

    def take_once(self, key: str) -> str | None:
        self._pending.append(_CookieOp(key=key, value=None, max_age=None))
        if key in self._taken or self.request is None:
            return None
        self._taken.add(key)
        return self.request.cookies.get(key)

    def apply(self, response: Response) -> Response:
        for op in self._pending:
            if op.value is None:
                response.delete_cookie(
                    op.key, path="/", secure=self.secure, httponly=True, samesite="lax"
                )
            else:
                response.set_cookie(
                    key=op.key,
                    value=op.value,
                    max_age=op.max_age,
                    path="/",
                    httponly=True,
                    secure=self.secure,
                    samesite="lax",
                )
        self._pending.clear()
        return response
