import logging
from collections.abc import Callable

import requests

from donation_payments.errors import ErrorKind, PaymentError
from donation_payments.retry import check_budget

logger = logging.getLogger(__name__)

ErrorClassifier = Callable[[int, dict], PaymentError]


def default_classifier(status_code: int, body: dict) -> PaymentError:
    if status_code in (401, 403):
        return PaymentError(
            ErrorKind.AUTHENTICATION_FAILED,
            "processor rejected the API credentials",
            status_code=status_code,
        )
    return PaymentError(
        ErrorKind.UNKNOWN_PROCESSOR_ERROR,
        f"processor returned HTTP {status_code}",
        status_code=status_code,
    )


class ProcessorClient:
    """Thin JSON-over-HTTP client for a processor API with explicit timeouts.

    Inside a ``RetryPolicy.execute`` the timeout shrinks to the time left
    before the policy's deadline.
    """

    def __init__(
        self,
        base_url: str,
        *,
        name: str = "processor",
        timeout_seconds: float = 10,
        session: requests.Session | None = None,
        classifier: ErrorClassifier = default_classifier,
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.classifier = classifier

    def request(
        self,
        method: str,
        path: str,
        *,
        headers: dict | None = None,
        json: dict | None = None,
        data: dict | None = None,
        params: dict | None = None,
        auth: tuple[str, str] | None = None,
    ) -> dict:
        url = f"{self.base_url}{path}"
        remaining = check_budget(f"{self.name} {method} {path}")
        timeout = self.timeout_seconds if remaining is None else min(self.timeout_seconds, remaining)
        try:
            resp = self.session.request(
                method,
                url,
                headers=headers,
                json=json,
                data=data,
                params=params,
                auth=auth,
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            raise PaymentError(ErrorKind.TIMEOUT, f"{self.name} {method} {path} timed out") from None
        except requests.exceptions.ConnectionError:
            raise PaymentError(ErrorKind.NETWORK_ERROR, f"could not connect to {self.name}") from None
        except requests.exceptions.RequestException as e:
            raise PaymentError(ErrorKind.NETWORK_ERROR, f"{self.name} request failed: {type(e).__name__}") from None

        status_code = resp.status_code
        logger.debug("%s %s %s -> %d", self.name, method, path, status_code)

        if 200 <= status_code < 300:
            return self._body(resp)

        if status_code >= 500 or status_code == 429:
            raise PaymentError(
                ErrorKind.PROCESSOR_UNAVAILABLE,
                f"{self.name} is unavailable (HTTP {status_code})",
                status_code=status_code,
            )

        raise self.classifier(status_code, self._body(resp))

    @staticmethod
    def _body(resp: requests.Response) -> dict:
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}


def header_value(headers, name: str) -> str | None:
    """Case-insensitive header lookup over any mapping."""
    if headers is None:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None
