"""
Scholar Tokens — trust-assessment collaborator integration.

Thin async client for the external document-analysis service that scores a
submitted proof. The engine only consumes the verdict: confidence, a
recommended action, extracted fields and fraud indicator labels. Every
transport, HTTP or payload failure is reported as AssessmentUnavailable so
the verification pipeline can degrade to human review.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from pydantic import ValidationError

from scholar_tokens.domain.errors import AssessmentUnavailable
from scholar_tokens.domain.schema import TrustVerdict

logger = logging.getLogger(__name__)


class TrustAssessor(Protocol):
    """Anything that can turn a proof reference into a trust verdict."""

    async def assess(self, document_ref: str, document_type: str) -> TrustVerdict: ...


class TrustAssessmentClient:
    """
    Async REST client for the trust-assessment service.

    Uses httpx with an explicit timeout on every request.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def assess(self, document_ref: str, document_type: str) -> TrustVerdict:
        """
        Request a verdict for a stored document.

        Raises:
            AssessmentUnavailable: Timeout, transport error, non-2xx status
                or a malformed verdict.
        """
        client = await self._ensure_client()
        try:
            resp = await client.post(
                "/v1/assessments",
                json={"document_ref": document_ref, "document_type": document_type},
            )
            resp.raise_for_status()
            verdict = TrustVerdict.model_validate(resp.json())
        except httpx.TimeoutException as exc:
            raise AssessmentUnavailable(
                f"Trust assessment timed out after {self.timeout}s", document_ref=document_ref
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise AssessmentUnavailable(
                f"Trust assessment returned HTTP {exc.response.status_code}",
                document_ref=document_ref,
            ) from exc
        except httpx.HTTPError as exc:
            raise AssessmentUnavailable(
                f"Trust assessment request failed: {exc}", document_ref=document_ref
            ) from exc
        except (ValueError, ValidationError) as exc:
            raise AssessmentUnavailable(
                "Trust assessment returned a malformed verdict", document_ref=document_ref
            ) from exc

        logger.info(
            "Trust verdict: ref=%s type=%s confidence=%.1f action=%s fraud=%d",
            document_ref, document_type, verdict.confidence,
            verdict.recommended_action.value, len(verdict.fraud_indicators),
        )
        return verdict
