"""
test_submission_client.py
-------------------------
HealthDoc Builder — ABDM Health Document Records — Test Suite for submission_client.py
---------------------------------------------------------------------------------------
Tests the gateway client against an ``httpx.MockTransport``; no network.

Run:
    pytest tests/test_submission_client.py -v --tb=short

Project: HealthDoc Builder
"""

import asyncio
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from submission_client import BundleSubmissionClient, SubmissionError

_ENDPOINT = "https://gateway.test/api/v5/fhir-bundle"
_BUNDLE = {"resourceType": "Bundle", "id": "HealthDocumentBundle-1", "type": "document", "entry": []}


def _submit(handler, bundle=_BUNDLE, patient=5012):
    async def _run():
        async with BundleSubmissionClient(endpoint=_ENDPOINT, transport=httpx.MockTransport(handler)) as client:
            return await client.submit(bundle, patient)
    return asyncio.run(_run())


def test_submit_posts_bundle_and_patient():
    """The body is {"bundle": ..., "patient": <int>} POSTed to the endpoint."""
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "accepted", "id": "sub-1"})

    result = _submit(handler)
    assert seen["method"] == "POST"
    assert seen["url"] == _ENDPOINT
    assert seen["body"] == {"bundle": _BUNDLE, "patient": 5012}
    assert result == {"status": "accepted", "id": "sub-1"}


def test_submit_does_not_modify_bundle():
    """The submitted Bundle object is left untouched."""
    bundle = json.loads(json.dumps(_BUNDLE))
    _submit(lambda request: httpx.Response(201), bundle=bundle)
    assert bundle == _BUNDLE


def test_submit_empty_success_body():
    """A 2xx with no body returns an empty dict."""
    assert _submit(lambda request: httpx.Response(204)) == {}


def test_submit_error_uses_server_detail():
    """A non-2xx carries the server's detail text."""
    handler = lambda request: httpx.Response(400, json={"detail": "Invalid ABHA address"})
    with pytest.raises(SubmissionError) as exc_info:
        _submit(handler)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Invalid ABHA address"


def test_submit_error_uses_message_key():
    """'message' is used when 'detail' is absent."""
    handler = lambda request: httpx.Response(502, json={"message": "upstream down"})
    with pytest.raises(SubmissionError) as exc_info:
        _submit(handler)
    assert exc_info.value.detail == "upstream down"


def test_submit_error_plain_text_body():
    """Non-JSON error bodies are reported verbatim."""
    with pytest.raises(SubmissionError) as exc_info:
        _submit(lambda request: httpx.Response(500, text="Internal Server Error"))
    assert exc_info.value.detail == "Internal Server Error"


def test_submit_transport_failure_is_status_zero():
    """Connection errors become SubmissionError with status 0."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SubmissionError) as exc_info:
        _submit(handler)
    assert exc_info.value.status_code == 0
    assert "connection refused" in exc_info.value.detail


def test_submit_is_not_retried():
    """A failed submission is attempted exactly once."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with pytest.raises(SubmissionError):
        _submit(handler)
    assert len(calls) == 1


def test_submit_rejects_non_bundle():
    """Only FHIR Bundles are submitted."""
    with pytest.raises(ValueError):
        _submit(lambda request: httpx.Response(200), bundle={"resourceType": "Patient"})


def test_submit_requires_connect():
    """Calling submit() before connect() raises RuntimeError."""
    client = BundleSubmissionClient(endpoint=_ENDPOINT)
    with pytest.raises(RuntimeError):
        asyncio.run(client.submit(_BUNDLE, 1))


def test_defaults_come_from_environment(monkeypatch):
    """SUBMISSION_URL and SUBMISSION_TIMEOUT configure the client."""
    monkeypatch.setenv("SUBMISSION_URL", "https://env.test/bundle")
    monkeypatch.setenv("SUBMISSION_TIMEOUT", "5")
    client = BundleSubmissionClient()
    assert client.endpoint == "https://env.test/bundle"
    assert client.timeout == 5.0
