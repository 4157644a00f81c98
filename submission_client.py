"""
submission_client.py
--------------------
HealthDoc Builder — ABDM Health Document Records — Bundle Submission Client
----------------------------------------------------------------------------
Async client that hands a finished document Bundle to the health-information
exchange gateway.

Wire format (JSON body of a single POST):
    {"bundle": <FHIR Bundle>, "patient": <numeric patient reference>}

Submission is a one-shot operation: failures are reported to the caller with
the server's ``detail`` / ``message`` when the response carries one, and are
never retried here.  The submitted Bundle is not modified.

Usage (async context manager — preferred):
    async with BundleSubmissionClient() as client:
        result = await client.submit(bundle, patient_reference=5012)

Usage (manual lifecycle):
    client = BundleSubmissionClient()
    await client.connect()
    result = await client.submit(bundle, 5012)
    await client.close()

Project: HealthDoc Builder
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from config import get_settings

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """Raised when the gateway is unreachable or answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        self.detail = _extract_detail(body)
        super().__init__(f"Bundle submission failed ({status_code}): {self.detail}")


def _extract_detail(body: str) -> str:
    """Return the server's ``detail`` / ``message`` / ``error`` text, else the raw body."""
    try:
        data = json.loads(body)
    except ValueError:
        return body[:500]
    if isinstance(data, dict):
        for key in ("detail", "message", "error"):
            if data.get(key):
                value = data[key]
                return value if isinstance(value, str) else str(value)
    return body[:500]


class BundleSubmissionClient:
    """
    Async submission client.

    Args:
        endpoint:  URL receiving the bundle.  Defaults to ``SUBMISSION_URL``.
        timeout:   Request timeout in seconds.  Defaults to ``SUBMISSION_TIMEOUT``.
        transport: Optional ``httpx`` transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.endpoint = endpoint or settings.submission_url
        self.timeout = timeout if timeout is not None else settings.submission_timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.debug("submission_client: HTTP transport initialised.")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("submission_client: HTTP transport closed.")

    async def __aenter__(self) -> "BundleSubmissionClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── Public API ───────────────────────────────────────────────────────────

    async def submit(
        self,
        bundle: dict[str, Any],
        patient_reference: Optional[int],
    ) -> dict[str, Any]:
        """
        POST ``{"bundle": bundle, "patient": patient_reference}``.

        Returns:
            The parsed JSON response body (``{}`` when the body is empty or
            not JSON).

        Raises:
            RuntimeError:    if ``connect()`` / ``__aenter__`` was not called.
            ValueError:      if *bundle* is not a FHIR Bundle.
            SubmissionError: on transport failure (status 0) or non-2xx.
        """
        if self._http is None:
            raise RuntimeError(
                "BundleSubmissionClient is not connected. "
                "Use 'async with BundleSubmissionClient() as client:' or call connect() first."
            )
        if bundle.get("resourceType") != "Bundle":
            raise ValueError(
                f"Expected resourceType 'Bundle', got '{bundle.get('resourceType')}'."
            )

        payload = {"bundle": bundle, "patient": patient_reference}
        logger.info(
            "submission_client: POST %s (bundle=%s, entries=%d, patient=%s)",
            self.endpoint, bundle.get("id"), len(bundle.get("entry", [])), patient_reference,
        )
        try:
            resp = await self._http.post(self.endpoint, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("submission_client: request failed — %s", exc)
            raise SubmissionError(0, str(exc)) from exc

        if resp.status_code not in range(200, 300):
            logger.warning(
                "submission_client: gateway rejected bundle %s — HTTP %d.",
                bundle.get("id"), resp.status_code,
            )
            raise SubmissionError(resp.status_code, resp.text)

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}
        logger.info("submission_client: bundle %s accepted (HTTP %d).", bundle.get("id"), resp.status_code)
        return body if isinstance(body, dict) else {"response": body}
