from __future__ import annotations

import pytest

from apps.api.app_factory import create_app
from services.ingestion.documents import DocumentRepository
from services.ingestion.orchestrator import DocumentOrchestrator
from services.ingestion.storage import LocalStorage
from services.matching.documents import DocumentMatcher
from services.verification.engine import VerificationEngine
from services.verification.review_queue import ReviewQueue
from services.verification.store import VerificationStore


class FakeCelery:
    def __init__(self):
        self.sent = []

    def send_task(self, name: str, args=None, kwargs=None):
        class R:
            id = "fake-task-id-123"
        self.sent.append((name, args, kwargs))
        return R()


class Wiring:
    """Everything create_app needs, built on fakes and a tmp storage root."""

    def __init__(self, root, collectors=None, step_timeout_s=5.0):
        self.celery = FakeCelery()
        self.storage = LocalStorage(root_dir=str(root))
        self.repository = DocumentRepository(self.storage)
        self.orchestrator = DocumentOrchestrator(
            repository=self.repository,
            storage=self.storage,
            dispatcher=self.celery,
        )
        self.matcher = DocumentMatcher(orchestrator=self.orchestrator)
        self.store = VerificationStore()
        self.review_queue = ReviewQueue(store=self.store)
        self.engine = VerificationEngine(
            store=self.store,
            collectors=collectors or {},
            review_queue=self.review_queue,
            step_timeout_s=step_timeout_s,
        )
        self.app = create_app(
            orchestrator=self.orchestrator,
            matcher=self.matcher,
            engine=self.engine,
            store=self.store,
            review_queue=self.review_queue,
        )


@pytest.fixture
def wiring(tmp_path):
    def build(collectors=None, step_timeout_s=5.0):
        return Wiring(tmp_path, collectors=collectors, step_timeout_s=step_timeout_s)

    return build
