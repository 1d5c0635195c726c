"""HTTP client with retries for data source queries."""
import time
import logging
import requests

logger = logging.getLogger("pulse.http")


class APIError(Exception):
    """API request error with status code and response body."""
    def __init__(self, message, status_code=None, response_body=None, source=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.source = source


class HTTPClient:
    """Thin requests wrapper with bounded retries and a per-call timeout."""

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}
    NON_RETRYABLE_STATUS = {400, 401, 403, 404, 422}

    def __init__(self, base_url, timeout=10, max_retries=1, backoff=0.5, headers=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "PulseAlertMonitor/1.0"})
        if headers:
            self.session.headers.update(headers)

    def get(self, path="", params=None, timeout=None):
        """Make a GET request and return the decoded JSON body."""
        return self._request("GET", path, params, timeout)

    def _request(self, method, path, params=None, timeout=None):
        url = f"{self.base_url}/{path.lstrip('/')}" if path else self.base_url
        timeout = timeout or self.timeout
        deadline = time.monotonic() + timeout

        last_error = None
        for attempt in range(self.max_retries + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                start = time.monotonic()
                resp = self.session.request(method, url, params=params, timeout=remaining)
                latency = int((time.monotonic() - start) * 1000)
                logger.debug(f"{method} {url} -> {resp.status_code} ({latency}ms)")

                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError:
                        raise APIError(f"Invalid JSON from {url}", status_code=200,
                                       response_body=resp.text, source=self.base_url)

                if resp.status_code in self.NON_RETRYABLE_STATUS:
                    raise APIError(
                        f"HTTP {resp.status_code} from {url}",
                        status_code=resp.status_code,
                        response_body=resp.text,
                        source=self.base_url,
                    )

                if resp.status_code in self.RETRYABLE_STATUS:
                    logger.warning(f"Retryable {resp.status_code} from {url} (attempt {attempt + 1})")
                    last_error = APIError(f"HTTP {resp.status_code} from {url}",
                                          status_code=resp.status_code, source=self.base_url)
                else:
                    raise APIError(f"Unexpected HTTP {resp.status_code} from {url}",
                                   status_code=resp.status_code, source=self.base_url)

            except requests.exceptions.RequestException as e:
                logger.warning(f"Request error for {url}: {e} (attempt {attempt + 1})")
                last_error = APIError(str(e), source=self.base_url)

            if attempt < self.max_retries:
                time.sleep(min(self.backoff * (2 ** attempt), max(deadline - time.monotonic(), 0)))

        raise last_error or APIError(f"Deadline exceeded for {url}", source=self.base_url)

    def close(self):
        self.session.close()
