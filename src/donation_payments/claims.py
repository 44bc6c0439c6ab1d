import threading
from collections.abc import Hashable
from typing import Any


class Claim:
    """An in-flight unit of work owned by exactly one caller."""

    def __init__(self, key: Hashable, token: Any = None):
        self.key = key
        self.token = token
        self.result: Any = None
        self.error: BaseException | None = None
        self._done = threading.Event()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def _finish(self, result: Any, error: BaseException | None) -> None:
        self.result = result
        self.error = error
        self._done.set()


class ClaimTable:
    """Thread-safe table of per-key exclusive claims.

    ``claim`` is an atomic insert-if-absent: the first caller for a key
    becomes the owner, later callers get the owner's Claim to wait on.
    """

    def __init__(self):
        self._claims: dict[Hashable, Claim] = {}
        self._lock = threading.Lock()

    def claim(self, key: Hashable, token: Any = None) -> tuple[Claim, bool]:
        with self._lock:
            existing = self._claims.get(key)
            if existing is not None:
                return existing, False
            claim = Claim(key, token)
            self._claims[key] = claim
            return claim, True

    def resolve(self, claim: Claim, result: Any = None, error: BaseException | None = None) -> None:
        with self._lock:
            if self._claims.get(claim.key) is claim:
                del self._claims[claim.key]
        claim._finish(result, error)

    def in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._claims

    def __len__(self) -> int:
        with self._lock:
            return len(self._claims)
