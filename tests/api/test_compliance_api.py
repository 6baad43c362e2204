"""HTTP tests for retention, secure deletion and governance routes."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from dsr_engine.compliance.entities import RightType, utcnow


def _policy_body(**overrides) -> dict:
    body = {
        "name": "Customer records",
        "data_category": "CUSTOMER_PII",
        "entity_types": ["CUSTOMER"],
        "retention_period": 24,
        "retention_unit": "MONTHS",
        "action_after_retention": "ANONYMIZE",
        "legal_basis": "Legitimate interest - customer service",
    }
    body.update(overrides)
    return body


@pytest.fixture
async def stale_customer(registry, business):
    return await registry.directory.register_customer(
        business.id,
        email="old@example.com",
        first_name="Olga",
        created_at=utcnow() - timedelta(days=3 * 365 + 10),
    )


class TestRetentionPolicies:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client, business, auth_headers):
        """Test that a created policy is listed for its business."""
        base = f"/api/v1/business/{business.id}/retention-policies"

        created = await client.post(base, json=_policy_body(), headers=auth_headers)
        assert created.status_code == 201
        assert created.json()["is_active"] is True

        listing = await client.get(base, headers=auth_headers)
        assert listing.json()["count"] == 1
        assert listing.json()["policies"][0]["name"] == "Customer records"

    @pytest.mark.asyncio
    async def test_invalid_policy_lists_errors(self, client, business, auth_headers):
        """Test that every validation problem is returned at once."""
        response = await client.post(
            f"/api/v1/business/{business.id}/retention-policies",
            json=_policy_body(retention_period=0, legal_basis=" "),
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_FAILED"
        assert len(response.json()["details"]["errors"]) == 2

    @pytest.mark.asyncio
    async def test_assess_and_run_job(self, client, business, auth_headers, dpo_headers, stale_customer):
        """Test that assessment creates a gated job that the DPO approves and runs."""
        base = f"/api/v1/business/{business.id}"
        policy = (await client.post(f"{base}/retention-policies", json=_policy_body(), headers=auth_headers)).json()

        assessment = await client.post(f"{base}/retention-policies/{policy['id']}/assess", headers=auth_headers)
        assert assessment.status_code == 200
        assert assessment.json()["affected_records"] == 1
        job_id = assessment.json()["actions"][0]["job_id"]

        jobs = await client.get(f"{base}/lifecycle-jobs", headers=auth_headers)
        assert jobs.json()["count"] == 1

        refused = await client.post(f"{base}/lifecycle-jobs/{job_id}/approve", headers=auth_headers)
        assert refused.status_code == 403

        approved = await client.post(f"{base}/lifecycle-jobs/{job_id}/approve", headers=dpo_headers)
        assert approved.status_code == 200
        assert approved.json()["approved_by"] == "dpo@acme.test"

        executed = await client.post(f"{base}/lifecycle-jobs/{job_id}/execute", headers=auth_headers)
        assert executed.status_code == 200
        assert executed.json()["status"] == "COMPLETED"
        assert executed.json()["processed_count"] == 1

    @pytest.mark.asyncio
    async def test_dry_run_assessment(self, client, business, auth_headers, stale_customer):
        """Test that a dry-run assessment reports without creating jobs."""
        base = f"/api/v1/business/{business.id}"
        policy = (await client.post(f"{base}/retention-policies", json=_policy_body(), headers=auth_headers)).json()

        assessment = await client.post(
            f"{base}/retention-policies/{policy['id']}/assess", json={"dry_run": True}, headers=auth_headers
        )

        assert assessment.json()["dry_run"] is True
        assert assessment.json()["jobs_created"] == 0
        assert (await client.get(f"{base}/lifecycle-jobs", headers=auth_headers)).json()["count"] == 0

    @pytest.mark.asyncio
    async def test_cancel_job(self, client, business, auth_headers, stale_customer):
        """Test that a cancelled job cannot be executed."""
        base = f"/api/v1/business/{business.id}"
        policy = (await client.post(f"{base}/retention-policies", json=_policy_body(), headers=auth_headers)).json()
        job_id = (
            await client.post(f"{base}/retention-policies/{policy['id']}/assess", headers=auth_headers)
        ).json()["actions"][0]["job_id"]

        cancelled = await client.post(f"{base}/lifecycle-jobs/{job_id}/cancel", headers=auth_headers)
        assert cancelled.json()["status"] == "CANCELLED"

        executed = await client.post(f"{base}/lifecycle-jobs/{job_id}/execute", headers=auth_headers)
        assert executed.status_code == 409

    @pytest.mark.asyncio
    async def test_deactivate_policy(self, client, business, auth_headers):
        """Test that a policy can be deactivated."""
        base = f"/api/v1/business/{business.id}/retention-policies"
        policy = (await client.post(base, json=_policy_body(), headers=auth_headers)).json()

        response = await client.post(f"{base}/{policy['id']}/deactivate", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["is_active"] is False

    @pytest.mark.asyncio
    async def test_data_inventory(self, client, business, auth_headers, customer):
        """Test that the inventory covers each category and carries a score."""
        response = await client.get(f"/api/v1/business/{business.id}/data-inventory", headers=auth_headers)

        body = response.json()
        assert response.status_code == 200
        assert body["categories"]["CUSTOMER_PII"]["total_records"] == 1
        assert "AUDIT_LOGS" in body["categories"]
        assert body["compliance_score"] == 100


class TestSecureDeletion:
    @pytest.mark.asyncio
    async def test_schedule_and_execute(self, client, business, auth_headers, customer):
        """Test that an executed deletion returns a verifiable certificate."""
        base = f"/api/v1/business/{business.id}"
        scheduled = await client.post(
            f"{base}/secure-deletion",
            json={"scope": "CUSTOMER_COMPLETE", "target_entity_ids": [str(customer.id)], "legal_basis": "Art. 17"},
            headers=auth_headers,
        )
        assert scheduled.status_code == 201
        deletion_id = scheduled.json()["id"]

        executed = await client.post(f"{base}/secure-deletion/{deletion_id}/execute", headers=auth_headers)
        assert executed.status_code == 200
        run = executed.json()
        assert run["status"] == "COMPLETED"
        assert run["processed"] == 1

        certificate = await client.get(
            f"{base}/deletion-certificates/{run['certificate']['id']}", headers=auth_headers
        )
        assert certificate.json()["signature_valid"] is True
        assert certificate.json()["records_deleted"] == 1

        listing = await client.get(f"{base}/secure-deletion", headers=auth_headers)
        assert listing.json()["count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_target_rejected(self, client, business, auth_headers):
        """Test that unknown targets are listed in the error details."""
        stranger = str(uuid.uuid4())
        response = await client.post(
            f"/api/v1/business/{business.id}/secure-deletion",
            json={"scope": "CUSTOMER_COMPLETE", "target_entity_ids": [stranger], "legal_basis": "Art. 17"},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["details"]["missing_ids"] == [stranger]

    @pytest.mark.asyncio
    async def test_approval_reserved_to_dpo(self, client, business, auth_headers, dpo_headers, customer):
        """Test that a gated deletion waits for the DPO."""
        base = f"/api/v1/business/{business.id}"
        deletion_id = (
            await client.post(
                f"{base}/secure-deletion",
                json={
                    "scope": "CUSTOMER_PII_ONLY",
                    "target_entity_ids": [str(customer.id)],
                    "legal_basis": "Art. 17",
                    "requires_approval": True,
                },
                headers=auth_headers,
            )
        ).json()["id"]

        blocked = await client.post(f"{base}/secure-deletion/{deletion_id}/execute", headers=auth_headers)
        assert blocked.status_code == 400
        assert blocked.json()["code"] == "INSUFFICIENT_APPROVAL"

        refused = await client.post(f"{base}/secure-deletion/{deletion_id}/approve", headers=auth_headers)
        assert refused.status_code == 403

        approved = await client.post(f"{base}/secure-deletion/{deletion_id}/approve", headers=dpo_headers)
        assert approved.json()["approved_by"] == "dpo@acme.test"

        executed = await client.post(f"{base}/secure-deletion/{deletion_id}/execute", headers=auth_headers)
        assert executed.json()["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, client, business, auth_headers, customer):
        """Test that a cancelled deletion cannot be cancelled again."""
        base = f"/api/v1/business/{business.id}"
        deletion_id = (
            await client.post(
                f"{base}/secure-deletion",
                json={"scope": "CUSTOMER_COMPLETE", "target_entity_ids": [str(customer.id)], "legal_basis": "Art. 17"},
                headers=auth_headers,
            )
        ).json()["id"]

        first = await client.post(f"{base}/secure-deletion/{deletion_id}/cancel", headers=auth_headers)
        assert first.json()["status"] == "CANCELLED"

        second = await client.post(f"{base}/secure-deletion/{deletion_id}/cancel", headers=auth_headers)
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_certificate(self, client, business, auth_headers):
        """Test that an unknown certificate is 404 with the error envelope."""
        response = await client.get(
            f"/api/v1/business/{business.id}/deletion-certificates/{uuid.uuid4()}", headers=auth_headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestGovernance:
    @pytest.mark.asyncio
    async def test_compliance_report(self, client, business, auth_headers):
        """Test that a report is generated for the requested period."""
        now = utcnow()
        response = await client.post(
            f"/api/v1/business/{business.id}/compliance-reports",
            json={
                "report_type": "GDPR_COMPLIANCE",
                "period_start": (now - timedelta(days=30)).isoformat(),
                "period_end": (now + timedelta(minutes=5)).isoformat(),
            },
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["overall_status"] == "COMPLIANT"
        assert response.json()["report_type"] == "GDPR_COMPLIANCE"

    @pytest.mark.asyncio
    async def test_inverted_report_period(self, client, business, auth_headers):
        """Test that a period ending before it starts is refused."""
        now = utcnow()
        response = await client.post(
            f"/api/v1/business/{business.id}/compliance-reports",
            json={"period_start": now.isoformat(), "period_end": (now - timedelta(days=1)).isoformat()},
            headers=auth_headers,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_verify_audit_integrity(self, client, business, auth_headers, verified_request):
        """Test that an untouched chain verifies."""
        await verified_request(RightType.ACCESS)

        response = await client.post(f"/api/v1/business/{business.id}/audit-integrity/verify", headers=auth_headers)

        body = response.json()
        assert response.status_code == 200
        assert body["verified"] is True
        assert body["total_events"] > 0
        assert body["integrity_score"] == 100

    @pytest.mark.asyncio
    async def test_correlated_events(self, client, business, auth_headers, verified_request):
        """Test that a request's events are returned as one ordered trail."""
        request_id = await verified_request(RightType.ACCESS)

        response = await client.get(f"/api/v1/business/{business.id}/events/{request_id}", headers=auth_headers)

        body = response.json()
        assert body["event_count"] == len(body["events"]) > 0
        assert all(e["correlation_id"] == str(request_id) for e in body["events"])
        sequences = [t["sequence"] for t in body["timeline"]]
        assert sequences == sorted(sequences)
