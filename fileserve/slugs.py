import logging
import secrets
import string
from typing import Callable, Iterator, Optional

from .errors import AllocationExhaustedError

SLUG_LENGTH = 8
SLUG_ALPHABET = string.ascii_letters + string.digits
MAX_SLUG_ATTEMPTS = 5

logger = logging.getLogger("fileserve.slugs")


def generate_slug(length: int = SLUG_LENGTH) -> str:
    return "".join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


class SlugAllocator:
    """Mints short random public identifiers within a bounded retry budget.

    The existence check only filters obvious collisions; the store's primary
    key stays the final arbiter, so callers that lose an insert race keep
    drawing from :meth:`candidates` and the failed insert costs an attempt.
    """

    def __init__(
        self,
        length: int = SLUG_LENGTH,
        max_attempts: int = MAX_SLUG_ATTEMPTS,
        generator: Optional[Callable[[int], str]] = None,
    ) -> None:
        self.length = length
        self.max_attempts = max_attempts
        self._generate = generator or generate_slug

    def candidates(self, check_exists: Callable[[str], bool]) -> Iterator[str]:
        for attempt in range(1, self.max_attempts + 1):
            candidate = self._generate(self.length)
            if check_exists(candidate):
                logger.debug("slug_collision attempt=%d", attempt)
                continue
            yield candidate

        logger.error("slug_allocation_exhausted attempts=%d", self.max_attempts)
        raise AllocationExhaustedError(self.max_attempts)

    def allocate(self, check_exists: Callable[[str], bool]) -> str:
        return next(iter(self.candidates(check_exists)))


default_allocator = SlugAllocator()
