from __future__ import annotations

from functools import lru_cache

from apps.common.settings import load_settings
from services.extraction.gateway_client import GatewayExtractor
from services.ingestion.documents import DocumentRepository
from services.ingestion.processor import DocumentProcessor
from services.ingestion.storage import LocalStorage


@lru_cache(maxsize=1)
def get_processor() -> DocumentProcessor:
    settings = load_settings()

    storage = LocalStorage(root_dir=str(settings.storage_root))
    extractor = GatewayExtractor(settings.gateway_url, timeout_s=settings.gateway_timeout_s)

    return DocumentProcessor(
        repository=DocumentRepository(storage),
        storage=storage,
        extractor=extractor,
    )
