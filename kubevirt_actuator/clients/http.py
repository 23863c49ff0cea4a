import time
from typing import Any

import httpx


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float):
        self.attempts = attempts
        self.sleep_sec = sleep_sec


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


class NotFoundError(RequestFailure):
    pass


class AlreadyExistsError(RequestFailure):
    pass


class ConflictError(RequestFailure):
    pass


def _failure_class(method: str, status_code: int | None) -> type[RequestFailure]:
    if status_code == 404:
        return NotFoundError
    if status_code == 409:
        return AlreadyExistsError if method.upper() == "POST" else ConflictError
    return RequestFailure


def _is_retryable(status_code: int | None) -> bool:
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempts = 0
    for attempt in range(1, retry.attempts + 1):
        attempts = attempt
        status_code = None
        response_text = None
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            body = (exc.response.text or "").strip()
            detail = (
                f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
            )
            error_type = exc.__class__.__name__
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if not _is_retryable(status_code):
            break
        if attempt < retry.attempts:
            time.sleep(retry.sleep_sec)
    raise _failure_class(method, status_code)(
        method=method,
        url=url,
        attempts=attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
