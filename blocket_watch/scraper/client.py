import logging
from dataclasses import dataclass

import requests

from blocket_watch.errors import TransportError
from blocket_watch.retry import NO_RETRY, RetryPolicy


logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "sv-SE,sv;q=0.9,en;q=0.8",
}

DNS_ERROR_MARKERS = (
    "nameresolutionerror",
    "failed to resolve",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


@dataclass(frozen=True)
class FetchResponse:
    status_code: int
    text: str
    url: str


def _is_dns_error(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in DNS_ERROR_MARKERS)


class HttpClient:
    def __init__(
        self,
        *,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._session = session or requests.Session()
        self._timeout = (connect_timeout, read_timeout)
        self._headers = dict(headers or DEFAULT_HEADERS)

    def fetch(self, url: str, *, retry: RetryPolicy | None = None, allow_404: bool = False) -> FetchResponse:
        policy = retry or NO_RETRY
        return policy.call(lambda: self._request_once(url, allow_404=allow_404), description=f"GET {url}")

    def close(self) -> None:
        self._session.close()

    def _request_once(self, url: str, *, allow_404: bool) -> FetchResponse:
        try:
            response = self._session.get(url, headers=self._headers, timeout=self._timeout, allow_redirects=True)
        except requests.Timeout as exc:
            raise TransportError(str(exc), url=url, retryable=True, error_kind="timeout") from exc
        except requests.ConnectionError as exc:
            is_dns = _is_dns_error(exc)
            raise TransportError(
                str(exc),
                url=url,
                retryable=not is_dns,
                error_kind="dns" if is_dns else "connection",
            ) from exc
        except requests.RequestException as exc:
            raise TransportError(str(exc), url=url, retryable=False, error_kind="request") from exc

        status = response.status_code
        if status == 404 and allow_404:
            return FetchResponse(status_code=status, text=response.text, url=str(response.url))

        if status == 429 or status >= 500:
            raise TransportError(
                f"HTTP {status}",
                url=url,
                status_code=status,
                retryable=True,
                error_kind="http_5xx" if status >= 500 else "rate_limited",
            )

        if status >= 400:
            raise TransportError(
                f"HTTP {status}",
                url=url,
                status_code=status,
                retryable=False,
                error_kind="http_4xx",
            )

        current_encoding = (response.encoding or "").lower()
        if response.apparent_encoding and current_encoding in {"", "iso-8859-1", "latin-1", "cp1252"}:
            response.encoding = response.apparent_encoding

        return FetchResponse(status_code=status, text=response.text, url=str(response.url))
