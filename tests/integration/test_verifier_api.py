from __future__ import annotations

from fastapi.testclient import TestClient

from services.verification.collectors import StepOutcome
from services.verification.models import StepType


class FakeCollector:
    def __init__(self, confidence):
        self.confidence = confidence

    def collect(self, certificate):
        return StepOutcome(result="INCONCLUSIVE", confidence=self.confidence)


def _escalated(client, confidence=0.65):
    cert_id = client.post(
        "/certificates",
        json={"certificateType": "CLASS_10", "issuerType": "CBSE", "certificateData": {"name": "Asha Rao"}},
    ).json()["id"]
    v = client.post(
        "/verifications",
        params={"wait": True},
        json={"certificateId": cert_id, "verificationType": "FORENSIC"},
    ).json()
    assert v["result"] == "REQUIRES_MANUAL_REVIEW"
    return cert_id, v


def test_review_lifecycle(wiring):
    w = wiring({StepType.RISK_ANALYSIS: FakeCollector(0.65)})
    with TestClient(w.app) as client:
        cert_id, v = _escalated(client)

        queue = client.get("/verifier/queue", params={"status": "PENDING"}).json()
        assert queue["pagination"]["total"] == 1
        review = queue["reviews"][0]
        assert review["verificationId"] == v["id"]
        assert review["priority"] == "MEDIUM"

        r = client.post(f"/verifier/reviews/{review['id']}/assign", json={"verifierId": "verifier-a"})
        assert r.status_code == 200
        assert r.json()["status"] == "ASSIGNED"

        r = client.post(f"/verifier/reviews/{review['id']}/assign", json={"verifierId": "verifier-b"})
        assert r.status_code == 409

        r = client.post(f"/verifier/reviews/{review['id']}/start", json={"verifierId": "verifier-a"})
        assert r.json()["status"] == "IN_PROGRESS"

        r = client.post(
            f"/verifier/reviews/{review['id']}/submit",
            json={"verifierId": "verifier-b", "decision": "APPROVED"},
        )
        assert r.status_code == 409

        r = client.post(
            f"/verifier/reviews/{review['id']}/submit",
            json={"verifierId": "verifier-a", "decision": "APPROVED", "comments": "checked original", "confidenceOverride": 0.9},
        )
        assert r.status_code == 200
        assert r.json()["status"] == "COMPLETED"
        assert r.json()["decision"] == "APPROVED"

        verification = client.get(f"/verifications/{v['id']}").json()
        assert verification["result"] == "VERIFIED"
        assert verification["confidenceScore"] == 0.9
        assert client.get(f"/certificates/{cert_id}").json()["status"] == "VERIFIED"


def test_next_review_and_request_validation(wiring):
    w = wiring({StepType.RISK_ANALYSIS: FakeCollector(0.75)})
    with TestClient(w.app) as client:
        _escalated(client)

        r = client.post("/verifier/next", json={"verifierId": "verifier-a"})
        assert r.status_code == 200
        review = r.json()["review"]
        assert review["assignedTo"] == "verifier-a"
        assert review["priority"] == "LOW"

        assert client.post("/verifier/next", json={"verifierId": "verifier-b"}).json() == {"review": None}

        r = client.post(
            f"/verifier/reviews/{review['id']}/submit",
            json={"verifierId": "verifier-a", "decision": "MAYBE"},
        )
        assert r.status_code == 422

        r = client.post(
            f"/verifier/reviews/{review['id']}/submit",
            json={"verifierId": "verifier-a", "decision": "NEEDS_MORE_INFO"},
        )
        assert r.status_code == 200

        reopened = client.get("/verifier/queue", params={"status": "PENDING"}).json()["reviews"]
        assert len(reopened) == 1
        assert reopened[0]["id"] != review["id"]
        assert client.get(f"/verifier/reviews/{review['id']}").json()["decision"] == "NEEDS_MORE_INFO"
        assert client.get("/verifier/reviews/unknown").status_code == 404
