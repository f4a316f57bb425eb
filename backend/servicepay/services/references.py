# services/references.py
import logging
import secrets
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Set

logger = logging.getLogger("servicepay.references")

_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


class ReferenceGenerator:
    """
    Issues references shaped ``{prefix}_{timestamp}_{random}``.

    Uniqueness is checked against the most recently issued references only
    (a bounded window); the database unique constraint covers the rest.
    """

    def __init__(
        self,
        window: int = 1000,
        max_attempts: int = 10,
        random_length: int = 9,
        clock: Callable[[], float] = time.time,
        token: Optional[Callable[[int], str]] = None,
    ):
        self.window = window
        self.max_attempts = max_attempts
        self.random_length = random_length
        self._clock = clock
        self._token = token or self._random_token
        self._recent: Deque[str] = deque()
        self._issued: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _random_token(length: int) -> str:
        return "".join(secrets.choice(_ALPHABET) for _ in range(length))

    def _remember(self, reference: str) -> None:
        self._recent.append(reference)
        self._issued.add(reference)
        while len(self._recent) > self.window:
            self._issued.discard(self._recent.popleft())

    def generate(self, prefix: str = "pay") -> str:
        with self._lock:
            timestamp = int(self._clock() * 1000)
            for attempt in range(self.max_attempts):
                # Perturb the timestamp on every retry so a stuck clock cannot pin us
                candidate = f"{prefix}_{timestamp + attempt}_{self._token(self.random_length)}"
                if candidate not in self._issued:
                    self._remember(candidate)
                    return candidate
                logger.warning(f"Reference collision on attempt {attempt + 1}: {candidate}")

            fallback = f"{prefix}_{secrets.token_hex(16)}"
            logger.error(f"Reference retries exhausted, issuing random fallback {fallback}")
            self._remember(fallback)
            return fallback

    def __len__(self) -> int:
        return len(self._recent)
