"""Evaluator collaborators: run a rule's expression and return one sample."""
import math
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from utils.http_client import HTTPClient, APIError

logger = logging.getLogger("pulse.evaluator")


class EvaluatorUnavailable(Exception):
    """The evaluator could not produce a sample for a rule."""
    def __init__(self, message, rule_id=None):
        super().__init__(message)
        self.rule_id = rule_id


class EvaluatorTimeout(EvaluatorUnavailable):
    """The evaluator did not answer within the evaluation timeout."""


@dataclass
class Sample:
    """One sampled value. ``value`` is None when the query returned no data."""
    value: Optional[float] = None

    @property
    def has_data(self):
        return self.value is not None


class Evaluator(Protocol):
    def evaluate(self, rule, timeout: float) -> Sample:
        ...


class PrometheusEvaluator:
    """Runs rule expressions as instant queries against Prometheus-compatible APIs.

    The expression is opaque here: it is forwarded as-is and the first value of
    the result is used.
    """

    QUERY_PATH = "/api/v1/query"

    def __init__(self, datasources):
        self.datasources = datasources or {}
        self._clients = {}
        self._lock = threading.Lock()

    def _client(self, name):
        with self._lock:
            if name not in self._clients:
                source = self.datasources.get(name)
                if not source:
                    raise EvaluatorUnavailable(f"Unknown data source {name!r}")
                self._clients[name] = HTTPClient(
                    base_url=source["url"],
                    timeout=source.get("timeout", 10),
                    max_retries=source.get("max_retries", 1),
                    headers=source.get("headers"),
                )
            return self._clients[name]

    def evaluate(self, rule, timeout):
        client = self._client(rule.data_source)
        try:
            data = client.get(self.QUERY_PATH, params={"query": rule.expression}, timeout=timeout)
        except APIError as e:
            raise EvaluatorUnavailable(f"{rule.data_source}: {e}", rule_id=rule.id) from e

        if data.get("status") != "success":
            raise EvaluatorUnavailable(
                f"{rule.data_source}: query failed ({data.get('errorType', 'unknown')}: {data.get('error', '')})",
                rule_id=rule.id,
            )
        return Sample(value=self._parse_result(data.get("data") or {}, rule))

    @staticmethod
    def _parse_result(data, rule):
        result_type = data.get("resultType")
        result = data.get("result")
        if result_type in ("scalar", "string"):
            raw = result[1] if result else None
        elif result_type == "vector":
            if not result:
                return None
            if len(result) > 1:
                logger.debug(f"Rule {rule.id}: {len(result)} series returned, using the first")
            raw = result[0].get("value", [None, None])[1]
        else:
            raise EvaluatorUnavailable(f"Unsupported result type {result_type!r}", rule_id=rule.id)

        if raw is None:
            return None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise EvaluatorUnavailable(f"Non-numeric sample {raw!r}", rule_id=rule.id)
        # Prometheus encodes missing points as NaN
        return None if math.isnan(value) else value

    def close(self):
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()
