"""Tests for the Prometheus evaluator and HTTP client."""
import pytest
import sys
import os
from unittest.mock import MagicMock, patch
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import requests
from models.rules import Rule
from monitor.evaluator import PrometheusEvaluator, EvaluatorUnavailable
from utils.http_client import HTTPClient, APIError

DATASOURCES = {"default": {"url": "http://prom:9090", "timeout": 5, "max_retries": 1}}


def _response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def _vector(*values):
    return {"status": "success", "data": {"resultType": "vector", "result": [
        {"metric": {"instance": f"i{n}"}, "value": [1717243200, v]} for n, v in enumerate(values)
    ]}}


RULE = Rule(id="cpu", name="cpu", expression="avg(cpu)", data_source="default")


class TestPrometheusEvaluator:
    def _evaluate(self, *responses, rule=RULE):
        evaluator = PrometheusEvaluator(DATASOURCES)
        with patch.object(requests.Session, "request", side_effect=list(responses)) as mock_req:
            try:
                return evaluator.evaluate(rule, timeout=2), mock_req
            finally:
                evaluator.close()

    def test_vector_sample(self):
        sample, mock_req = self._evaluate(_response(payload=_vector("85.5")))
        assert sample.value == 85.5
        assert sample.has_data
        args, kwargs = mock_req.call_args
        assert args == ("GET", "http://prom:9090/api/v1/query")
        assert kwargs["params"] == {"query": "avg(cpu)"}

    def test_first_series_is_used(self):
        sample, _ = self._evaluate(_response(payload=_vector("1", "2")))
        assert sample.value == 1.0

    def test_empty_vector_is_no_data(self):
        sample, _ = self._evaluate(_response(payload=_vector()))
        assert sample.value is None
        assert not sample.has_data

    def test_nan_is_no_data(self):
        sample, _ = self._evaluate(_response(payload=_vector("NaN")))
        assert sample.value is None

    def test_scalar_result(self):
        payload = {"status": "success", "data": {"resultType": "scalar", "result": [1717243200, "3"]}}
        sample, _ = self._evaluate(_response(payload=payload))
        assert sample.value == 3.0

    def test_query_error_raises(self):
        payload = {"status": "error", "errorType": "bad_data", "error": "parse error"}
        with pytest.raises(EvaluatorUnavailable, match="bad_data"):
            self._evaluate(_response(payload=payload))

    def test_http_error_is_wrapped(self):
        with pytest.raises(EvaluatorUnavailable) as exc:
            self._evaluate(_response(status=400, text="bad query"))
        assert isinstance(exc.value.__cause__, APIError)
        assert exc.value.rule_id == "cpu"

    def test_unknown_data_source(self):
        rule = Rule(id="x", name="x", expression="up", data_source="missing")
        with pytest.raises(EvaluatorUnavailable, match="missing"):
            PrometheusEvaluator(DATASOURCES).evaluate(rule, timeout=1)

    def test_non_numeric_value(self):
        with pytest.raises(EvaluatorUnavailable, match="Non-numeric"):
            self._evaluate(_response(payload=_vector("abc")))


class TestHTTPClient:
    @patch("utils.http_client.time.sleep")
    def test_retries_on_server_error(self, mock_sleep):
        client = HTTPClient("http://prom:9090", max_retries=1)
        with patch.object(client.session, "request",
                          side_effect=[_response(status=503), _response(payload={"ok": True})]) as mock_req:
            assert client.get("/x") == {"ok": True}
        assert mock_req.call_count == 2
        assert mock_sleep.called

    @patch("utils.http_client.time.sleep")
    def test_gives_up_after_retries(self, mock_sleep):
        client = HTTPClient("http://prom:9090", max_retries=1)
        with patch.object(client.session, "request", side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(APIError, match="refused"):
                client.get("/x")

    def test_client_error_not_retried(self):
        client = HTTPClient("http://prom:9090", max_retries=3)
        with patch.object(client.session, "request", return_value=_response(status=404)) as mock_req:
            with pytest.raises(APIError) as exc:
                client.get("/x")
        assert exc.value.status_code == 404
        assert mock_req.call_count == 1

    def test_invalid_json(self):
        client = HTTPClient("http://prom:9090")
        with patch.object(client.session, "request", return_value=_response(payload=ValueError("bad"), text="<html>")):
            with pytest.raises(APIError, match="Invalid JSON"):
                client.get("/x")
