"""
ArcGIS Feature Service HTTP layer.

All Feature Service queries go through this module. It provides:
- Query-string serialization matching what ArcGIS REST endpoints expect
  (None values dropped, booleans as "true"/"false", lists comma-joined,
  dicts as compact JSON)
- "/query" suffixing for layer URLs
- One GET per query through an injected requests.Session
- Translation of the "error" object ArcGIS returns with HTTP 200 into
  QueryError
- Optional retry with backoff on 5xx and timeouts (off by default)
- locator_trace integration for observability

Transport failures (connection errors, timeouts once retries are spent,
HTTP >= 400) propagate as the requests exception that caused them.
"""

import json
import logging
import re
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests

from locator_config import DEFAULT_CONFIG, LocatorConfig
from locator_trace import get_trace
from models import RouteLocatorError

logger = logging.getLogger(__name__)

SERVICE_NAME = "featureservice"

# encodeURIComponent leaves these unescaped in addition to -_.~
_URI_COMPONENT_SAFE = "!*'()"

_QUERY_SUFFIX_RE = re.compile(r"/query/?$")


class QueryError(RouteLocatorError):
    """The "error" payload of a failed ArcGIS Server request.

    ArcGIS reports most query failures with HTTP 200 and a body of
    ``{"error": {"code": ..., "message": ..., "details": [...]}}``.
    Accepts either that whole body or just the inner error object.
    """

    def __init__(self, error_info: Mapping[str, Any]):
        content = error_info.get("error") if "error" in error_info else error_info
        content = content or {}
        self.code: Optional[int] = content.get("code")
        self.details: List[str] = list(content.get("details") or [])
        self.message: Optional[str] = content.get("message")
        super().__init__(self.message)

    def __repr__(self):
        return f"QueryError(code={self.code!r}, message={self.message!r}, details={self.details!r})"


class FeatureServiceResponseError(RouteLocatorError):
    """Raised when a Feature Service returns a body that is not JSON."""

    pass


def check_for_error(obj: Any):
    """Raise QueryError if a parsed query response carries an "error" property."""
    if isinstance(obj, dict) and "error" in obj:
        raise QueryError(obj["error"] or {})


def _to_param_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_to_param_string(v) for v in value)
    if isinstance(value, dict):
        # Geometry objects, layerDefs, spatial references
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def object_to_search(search_params: Mapping[str, Any]) -> str:
    """Convert a mapping into a URL search string (without the leading "?").

    Keys whose value is None are omitted entirely.
    """
    parts = []
    for name, value in search_params.items():
        if value is None:
            continue
        parts.append(
            "=".join(
                quote(str(s), safe=_URI_COMPONENT_SAFE)
                for s in (name, _to_param_string(value))
            )
        )
    return "&".join(parts)


def ensure_query_url(url: str) -> str:
    """Add "/query" to the end of a layer URL if not already present."""
    if not _QUERY_SUFFIX_RE.search(url):
        url += "/query"
    return url


class FeatureServiceHTTPClient:
    """Issues Feature Service queries through one injected requests.Session.

    A client holds no per-query state, so one instance can be shared by
    threads only if the injected session can; by default each client
    owns a fresh session.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        config: LocatorConfig = DEFAULT_CONFIG,
    ):
        self.session = session if session is not None else requests.Session()
        self.timeout = config.timeout
        self.max_retries = config.max_retries
        self.retry_backoff = config.retry_backoff

    def query(
        self,
        url: str,
        params: Mapping[str, Any],
        caller: str = "unknown",
    ) -> Dict[str, Any]:
        """
        GET ``url`` with ``params`` serialized as the query string.

        Args:
            url: Full endpoint URL (callers apply ensure_query_url()).
            params: Query parameters; None values are dropped.
            caller: Label for trace/log attribution (e.g. "route_by_id").

        Returns:
            The parsed JSON body.

        Raises:
            QueryError: the body carried an ArcGIS "error" object.
            FeatureServiceResponseError: the body was not JSON.
            requests.exceptions.RequestException: transport failure or
                HTTP status >= 400.
        """
        full_url = f"{url}?{object_to_search(params)}"
        attempts = 1 + max(0, self.max_retries)

        for attempt in range(attempts):
            try:
                return self._do_request(full_url, caller, retried=attempt > 0)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt + 1 >= attempts:
                    raise
                self._sleep_before_retry(attempt, attempts, caller, e)
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else 0
                if status < 500 or attempt + 1 >= attempts:
                    raise
                self._sleep_before_retry(attempt, attempts, caller, e)

        # Should not reach here: the last attempt always returns or raises
        raise FeatureServiceResponseError(f"Feature Service query failed [caller={caller}]")

    def _sleep_before_retry(self, attempt: int, attempts: int, caller: str, exc: Exception):
        if self.retry_backoff:
            sleep_time = self.retry_backoff[min(attempt, len(self.retry_backoff) - 1)]
        else:
            sleep_time = 0
        logger.warning(
            "Feature Service query failed (attempt %d/%d): %s; sleeping %ss before retry [caller=%s]",
            attempt + 1,
            attempts,
            exc,
            sleep_time,
            caller,
        )
        time.sleep(sleep_time)

    def _do_request(self, full_url: str, caller: str, retried: bool = False) -> Dict[str, Any]:
        """Make a single HTTP request and validate the body."""
        start = time.monotonic()
        trace = get_trace()

        def _record(status_code: int, provider_status: str = ""):
            if trace:
                trace.record_api_call(
                    service=SERVICE_NAME,
                    endpoint=caller,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                    retried=retried,
                )

        logger.info("Feature Service query [caller=%s]: %s", caller, full_url)
        try:
            resp = self.session.get(full_url, timeout=self.timeout)
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise
        except requests.exceptions.RequestException:
            _record(0, "exception")
            raise

        status_code = resp.status_code
        if status_code >= 400:
            _record(status_code, "http_error")
            raise requests.exceptions.HTTPError(
                f"Feature Service HTTP {status_code} [caller={caller}]",
                response=resp,
            )

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise FeatureServiceResponseError(
                f"Feature Service returned non-JSON response (HTTP {status_code}) [caller={caller}]"
            )

        try:
            check_for_error(data)
        except QueryError as e:
            _record(status_code, "query_error")
            logger.info(
                "Feature Service error payload [caller=%s]: code=%s message=%s",
                caller,
                e.code,
                e.message,
            )
            raise

        _record(status_code)
        return data


def feature_service_query(
    url: str,
    params: Mapping[str, Any],
    caller: str = "unknown",
    client: Optional[FeatureServiceHTTPClient] = None,
) -> Dict[str, Any]:
    """Run one query with ``client``, or with a fresh default client."""
    if client is None:
        client = FeatureServiceHTTPClient()
    return client.query(url, params, caller=caller)

