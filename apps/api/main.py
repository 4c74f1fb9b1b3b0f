# apps/api/main.py
from __future__ import annotations

from apps.api.app_factory import create_app
from apps.common.logs import configure_logging
from apps.common.settings import load_settings
from apps.workers.celery_app import celery_app
from services.ingestion.documents import DocumentRepository
from services.ingestion.orchestrator import DocumentOrchestrator, UploadLimits
from services.ingestion.storage import LocalStorage
from services.matching.documents import DocumentMatcher
from services.policy import load_policies
from services.verification.collectors import HttpEvidenceCollector
from services.verification.engine import VerificationEngine
from services.verification.review_queue import ReviewQueue
from services.verification.store import VerificationStore

configure_logging()

settings = load_settings()
policies = load_policies(settings.thresholds_path)

storage = LocalStorage(root_dir=str(settings.storage_root))
orchestrator = DocumentOrchestrator(
    repository=DocumentRepository(storage),
    storage=storage,
    dispatcher=celery_app,
    limits=UploadLimits(max_upload_bytes=settings.max_upload_bytes),
)
matcher = DocumentMatcher(
    orchestrator=orchestrator,
    match_policy=policies.matching,
    signature_policy=policies.signature,
)

store = VerificationStore()
review_queue = ReviewQueue(store=store, policy=policies.verification)
engine = VerificationEngine(
    store=store,
    collectors={
        step_type: HttpEvidenceCollector(step_type, url, timeout_s=settings.step_timeout_s)
        for step_type, url in settings.collector_urls.items()
    },
    review_queue=review_queue,
    policy=policies.verification,
    match_policy=policies.matching,
    step_timeout_s=settings.step_timeout_s,
)

app = create_app(
    orchestrator=orchestrator,
    matcher=matcher,
    engine=engine,
    store=store,
    review_queue=review_queue,
)
