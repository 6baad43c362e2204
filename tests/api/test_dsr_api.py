"""HTTP tests for the public data-subject routes and the business DSR routes."""

from __future__ import annotations

import uuid

import pytest
from conftest import CUSTOMER_EMAIL, CUSTOMER_PHONE, TOKEN_TEMPLATE

from dsr_engine.compliance.entities import ChallengeType, IdentityData, RightType


def _submission(business_id: uuid.UUID, **overrides) -> dict:
    body = {
        "business_id": str(business_id),
        "right_type": "ACCESS",
        "requestor_email": CUSTOMER_EMAIL,
        "identity_data": {"first_name": "Jane", "last_name": "Doe"},
    }
    body.update(overrides)
    return body


class TestHealth:
    @pytest.mark.asyncio
    async def test_liveness(self, client):
        """Test that the liveness probe answers without auth."""
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_readiness_reports_store_and_audit_queue(self, client):
        """Test that readiness reports the in-memory store and the audit backlog."""
        response = await client.get("/health/ready")

        body = response.json()
        assert body["status"] == "ready"
        assert body["database"] == "in_memory"
        assert body["pending_audit_events"] == 0

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        """Test that a well-formed inbound request id is returned."""
        response = await client.get("/health/live", headers={"X-Request-ID": "req_abc123"})
        assert response.headers["X-Request-ID"] == "req_abc123"


class TestPublicIntake:
    @pytest.mark.asyncio
    async def test_submit_request(self, client, business, customer, dispatcher):
        """Test that a submission returns the receipt and sends the token."""
        response = await client.post("/api/v1/requests", json=_submission(business.id))

        assert response.status_code == 200
        body = response.json()
        assert body["verification_required"] is True
        assert [c["type"] for c in body["challenges"]] == ["TOKEN"]
        assert dispatcher.secret_for(TOKEN_TEMPLATE)

    @pytest.mark.asyncio
    async def test_invalid_email_is_structured_error(self, client, business):
        """Test that a malformed email comes back as VALIDATION_FAILED with the field."""
        response = await client.post("/api/v1/requests", json=_submission(business.id, requestor_email="nope"))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "VALIDATION_FAILED"
        assert body["details"]["field"] == "requestor_email"

    @pytest.mark.asyncio
    async def test_malformed_body_uses_same_envelope(self, client):
        """Test that schema errors use the service error envelope."""
        response = await client.post("/api/v1/requests", json={"right_type": "ACCESS"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_FAILED"
        assert response.json()["details"]["errors"]

    @pytest.mark.asyncio
    async def test_unknown_business(self, client):
        """Test that a request for an unknown business is 404."""
        response = await client.post("/api/v1/requests", json=_submission(uuid.uuid4()))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_full_verification_over_http(self, client, business, customer, dispatcher):
        """Test that token and knowledge challenge verify an erasure request."""
        receipt = (
            await client.post("/api/v1/requests", json=_submission(business.id, right_type="ERASURE"))
        ).json()

        token_response = await client.post(
            "/api/v1/verify-identity", json={"verification_token": dispatcher.secret_for(TOKEN_TEMPLATE)}
        )
        assert token_response.status_code == 200
        pending = token_response.json()["pending_challenges"]
        assert [c["type"] for c in pending] == [ChallengeType.KNOWLEDGE.value]

        answer = await client.post(
            f"/api/v1/verification/{receipt['verification_id']}/challenges/{pending[0]['id']}",
            json={"response": CUSTOMER_PHONE[-4:]},
        )

        assert answer.status_code == 200
        assert answer.json()["verified"] is True
        assert answer.json()["request_id"] == receipt["request_id"]

    @pytest.mark.asyncio
    async def test_unknown_token_rejected(self, client):
        """Test that an unknown token is a 400."""
        response = await client.post("/api/v1/verify-identity", json={"verification_token": "bogus"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_withdraw(self, client, business, customer):
        """Test that the requestor can withdraw and a stranger cannot."""
        receipt = (await client.post("/api/v1/requests", json=_submission(business.id))).json()
        url = f"/api/v1/requests/{receipt['request_id']}/withdraw"

        stranger = await client.post(url, json={"requestor_email": "someone@example.org"})
        assert stranger.status_code == 404

        response = await client.post(url, json={"requestor_email": CUSTOMER_EMAIL, "reason": "changed my mind"})
        assert response.status_code == 200
        assert response.json()["status"] == "WITHDRAWN"

    @pytest.mark.asyncio
    async def test_restart_unknown_request(self, client):
        """Test that restarting verification of an unknown request is 404."""
        response = await client.post(f"/api/v1/requests/{uuid.uuid4()}/restart-verification")
        assert response.status_code == 404


class TestBusinessAuth:
    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, client, business):
        """Test that business routes require a bearer token."""
        response = await client.get(f"/api/v1/business/{business.id}/requests")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token_is_401(self, client, business):
        """Test that an undecodable token is rejected."""
        response = await client.get(
            f"/api/v1/business/{business.id}/requests", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_other_business_is_403(self, client, business, make_token):
        """Test that a token for one business cannot read another."""
        headers = {"Authorization": f"Bearer {make_token(uuid.uuid4())}"}
        response = await client.get(f"/api/v1/business/{business.id}/requests", headers=headers)
        assert response.status_code == 403


class TestBusinessRequests:
    @pytest.mark.asyncio
    async def test_list_and_get_request(self, client, business, auth_headers, verified_request):
        """Test that requests are listed and returned with their transitions."""
        request_id = await verified_request(RightType.ACCESS)

        listing = await client.get(f"/api/v1/business/{business.id}/requests", headers=auth_headers)
        assert listing.json()["count"] == 1

        detail = await client.get(f"/api/v1/business/{business.id}/requests/{request_id}", headers=auth_headers)
        body = detail.json()
        assert body["status"] == "VERIFIED"
        assert [t["to_status"] for t in body["transitions"]] == ["PENDING_VERIFICATION", "VERIFIED"]

    @pytest.mark.asyncio
    async def test_get_unknown_request(self, client, business, auth_headers):
        """Test that an unknown request id is 404."""
        response = await client.get(f"/api/v1/business/{business.id}/requests/{uuid.uuid4()}", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_processing_needs_approval(self, client, business, auth_headers, verified_request):
        """Test that fulfilment without business approval is refused."""
        request_id = await verified_request(RightType.ACCESS)

        response = await client.post(
            f"/api/v1/business/{business.id}/requests/{request_id}/process-access",
            json={"business_approval": False},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INSUFFICIENT_APPROVAL"

    @pytest.mark.asyncio
    async def test_process_access(self, client, business, auth_headers, verified_request):
        """Test that an approved access request returns the export."""
        request_id = await verified_request(RightType.ACCESS)

        response = await client.post(
            f"/api/v1/business/{business.id}/requests/{request_id}/process-access",
            json={"business_approval": True},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "COMPLETED"
        assert body["data"]["record_count"] == 1
        assert body["data"]["export"]["records"][0]["profile"]["email"] == CUSTOMER_EMAIL

    @pytest.mark.asyncio
    async def test_process_erasure(self, client, business, auth_headers, verified_request):
        """Test that erasure over HTTP returns a certificate that verifies."""
        request_id = await verified_request(RightType.ERASURE)

        response = await client.post(
            f"/api/v1/business/{business.id}/requests/{request_id}/process-erasure",
            json={"business_approval": True},
            headers=auth_headers,
        )

        assert response.status_code == 200
        certificate_id = response.json()["data"]["certificate_id"]
        certificate = await client.get(
            f"/api/v1/business/{business.id}/deletion-certificates/{certificate_id}", headers=auth_headers
        )
        assert certificate.json()["signature_valid"] is True
        assert certificate.json()["gdpr_request_id"] == str(request_id)

    @pytest.mark.asyncio
    async def test_process_portability_as_csv(self, client, business, customer, auth_headers, verified_request):
        """Test that the export format is selectable in the request body."""
        request_id = await verified_request(RightType.PORTABILITY)

        response = await client.post(
            f"/api/v1/business/{business.id}/requests/{request_id}/process-portability",
            json={"business_approval": True, "export_format": "CSV"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["export_format"] == "CSV"
        assert data["export"]["format"] == "text/csv"
        assert f"{customer.id},profile.email,{CUSTOMER_EMAIL}" in data["content"]

    @pytest.mark.asyncio
    async def test_wrong_handler_is_400(self, client, business, auth_headers, verified_request):
        """Test that calling the wrong handler for a right is refused."""
        request_id = await verified_request(RightType.ACCESS)

        response = await client.post(
            f"/api/v1/business/{business.id}/requests/{request_id}/process-portability",
            json={"business_approval": True},
            headers=auth_headers,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_extend_deadline(self, client, business, auth_headers, verified_request):
        """Test that a deadline can be extended within the ceiling only."""
        request_id = await verified_request(RightType.ACCESS)
        url = f"/api/v1/business/{business.id}/requests/{request_id}/extend-deadline"

        extended = await client.post(url, json={"days": 30, "reason": "complex request"}, headers=auth_headers)
        assert extended.status_code == 200
        assert extended.json()["extension_reason"] == "complex request"

        too_far = await client.post(url, json={"days": 31, "reason": "again"}, headers=auth_headers)
        assert too_far.status_code == 400
        assert "latest_allowed" in too_far.json()["details"]

    @pytest.mark.asyncio
    async def test_reject_request(self, client, business, auth_headers, verified_request):
        """Test that a rejected request is terminal."""
        request_id = await verified_request(RightType.ACCESS)
        url = f"/api/v1/business/{business.id}/requests/{request_id}/reject"

        rejected = await client.post(url, json={"reason": "manifestly unfounded"}, headers=auth_headers)
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "REJECTED"
        assert rejected.json()["rejection_reason"] == "manifestly unfounded"

        again = await client.post(url, json={"reason": "again"}, headers=auth_headers)
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_workflow_status(self, client, business, auth_headers, verified_request):
        """Test that workflow status lists pending requests and metrics."""
        await verified_request(RightType.ACCESS)

        response = await client.get(f"/api/v1/business/{business.id}/workflow-status", headers=auth_headers)

        body = response.json()
        assert len(body["pending"]) == 1
        assert body["overdue"] == []
        assert body["metrics"]["total_requests"] == 1

    @pytest.mark.asyncio
    async def test_document_review(self, client, registry, business, dpo_headers, dispatcher):
        """Test that a reviewer approves a document challenge over HTTP."""
        receipt = (
            await registry.intake.submit_request(
                business.id,
                RightType.ERASURE,
                "stranger@example.org",
                IdentityData(first_name="Jane", last_name="Doe"),
            )
        ).unwrap()
        document = next(c for c in receipt.challenges if c.type == ChallengeType.DOCUMENT)
        await registry.intake.verify_identity(dispatcher.secret_for(TOKEN_TEMPLATE))

        response = await client.post(
            f"/api/v1/business/{business.id}/verification/{receipt.verification_id}/challenges/{document.id}/review",
            json={"approved": True},
            headers=dpo_headers,
        )

        assert response.status_code == 200
        assert response.json()["verified"] is True
