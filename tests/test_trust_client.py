"""Tests for the trust-assessment HTTP client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from scholar_tokens.domain.errors import AssessmentUnavailable
from scholar_tokens.domain.schema import RecommendedAction
from scholar_tokens.integrations.trust_client import TrustAssessmentClient


def _assess(handler, api_key="secret"):
    client = TrustAssessmentClient(
        "http://assessor.test/", api_key=api_key, timeout=1.0,
        transport=httpx.MockTransport(handler),
    )

    async def run():
        try:
            return await client.assess("s3://proofs/1.pdf", "transcript")
        finally:
            await client.close()

    return asyncio.run(run())


class TestTrustAssessmentClient:

    def test_parses_verdict(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "confidence": 92.5,
                "recommended_action": "auto_approve",
                "extracted_fields": {"gpa": "3.9"},
                "fraud_indicators": [],
            })

        verdict = _assess(handler)

        assert verdict.confidence == 92.5
        assert verdict.recommended_action == RecommendedAction.AUTO_APPROVE
        assert verdict.extracted_fields == {"gpa": "3.9"}
        assert seen["url"] == "http://assessor.test/v1/assessments"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"document_ref": "s3://proofs/1.pdf", "document_type": "transcript"}

    def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"confidence": 50, "recommended_action": "manual_review"})

        _assess(handler, api_key="")
        assert seen["auth"] is None

    def test_server_error(self):
        with pytest.raises(AssessmentUnavailable):
            _assess(lambda request: httpx.Response(502, text="bad gateway"))

    def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(AssessmentUnavailable):
            _assess(handler)

    def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AssessmentUnavailable):
            _assess(handler)

    @pytest.mark.parametrize("body", [
        "not json",
        json.dumps({"confidence": 150, "recommended_action": "auto_approve"}),
        json.dumps({"confidence": 90, "recommended_action": "approve_everything"}),
    ])
    def test_malformed_verdict(self, body):
        with pytest.raises(AssessmentUnavailable):
            _assess(lambda request: httpx.Response(200, text=body))
