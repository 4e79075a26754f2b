"""Outbound HTTP calls with bounded retries.

Classification of a failed call:

* timeouts, connection errors, 429 and 5xx are transient and retried with
  capped exponential backoff;
* 401/403 trigger one credential refresh (``reauthenticate``) and one more
  try, never a backoff loop;
* any other 4xx is a business rejection and surfaces immediately.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from app.domain.errors import ExternalAuthError, ExternalPermanentError, ExternalTransientError
from shared.core import get_logger

logger = get_logger(__name__)

AUTH_FAILURE_CODES = {401, 403}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0
    sleep: Callable[[float], None] = time.sleep

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def provider_message(response: httpx.Response, limit: int = 200) -> str:
    """The provider's own short message, if any; never the raw body."""
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        for key in ("message", "error", "errorMessage"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value[:limit]
    return f"HTTP {response.status_code}"


def send_with_retry(
    send: Callable[[], httpx.Response],
    *,
    provider: str,
    operation: str,
    policy: RetryPolicy,
    reauthenticate: Optional[Callable[[], None]] = None,
) -> httpx.Response:
    attempt = 0
    reauthenticated = False
    while True:
        attempt += 1
        started = time.monotonic()
        try:
            response = send()
        except httpx.TransportError as e:
            # TimeoutException is a TransportError
            logger.warning(
                f"{provider} {operation} transport failure",
                extra={'extra_fields': {
                    'provider': provider, 'operation': operation,
                    'attempt': attempt, 'error': type(e).__name__,
                }},
            )
            if attempt >= policy.attempts:
                raise ExternalTransientError(
                    f"{provider} is unreachable, please retry later",
                    provider=provider, operation=operation,
                ) from e
            policy.sleep(policy.delay(attempt))
            continue

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"{provider} {operation} returned {response.status_code}",
            extra={'extra_fields': {
                'provider': provider, 'operation': operation, 'attempt': attempt,
                'status_code': response.status_code, 'duration_ms': elapsed_ms,
            }},
        )

        if response.status_code in AUTH_FAILURE_CODES:
            if reauthenticate is not None and not reauthenticated:
                reauthenticated = True
                reauthenticate()
                continue
            raise ExternalAuthError(
                f"{provider} rejected our credentials",
                provider=provider, operation=operation,
            )

        if response.status_code == 429 or response.status_code >= 500:
            if attempt >= policy.attempts:
                raise ExternalTransientError(
                    f"{provider} is unavailable, please retry later",
                    provider=provider, operation=operation,
                    details={'status_code': response.status_code},
                )
            policy.sleep(policy.delay(attempt))
            continue

        if response.status_code >= 400:
            raise ExternalPermanentError(
                provider_message(response),
                provider=provider, operation=operation,
                details={'status_code': response.status_code},
            )

        return response
