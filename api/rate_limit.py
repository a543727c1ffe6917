import os
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from fastapi import FastAPI

# Reads are cheap; triggers start crawls against third-party sites.
READ_LIMIT = os.getenv("READ_RATE_LIMIT", "100/hour")
TRIGGER_LIMIT = os.getenv("TRIGGER_RATE_LIMIT", "30/hour")

limiter = Limiter(key_func=get_remote_address)


def register_rate_limit(app: FastAPI):
    """
    Attach the shared slowapi limiter to the app.

    Routes opt in with ``@limiter.limit(READ_LIMIT)`` or
    ``@limiter.limit(TRIGGER_LIMIT)`` and must accept a ``request: Request``
    argument. Exceeding a limit returns 429.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
