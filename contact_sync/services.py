"""
Service container.

Builds every long-lived component once, wires them together explicitly and
tears them down in reverse order. The API lifespan and the CLI each own one
container; tests build one around an in-memory store and fakes.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .adapters.graph_client import GraphClient
from .adapters.openai_classifier import OpenAIClassifier
from .analysis_client import AnalysisClient
from .background import BackgroundSupervisor
from .batch_persistence import BatchPersistence
from .config import Settings
from .crypto import CredentialCipher, cipher_from_key
from .interfaces import Classifier, SyncStore
from .key_pool import RetryingKeyPool
from .message_cache import MessageCache
from .orchestrator import SourceFactory, SyncOrchestrator
from .pipeline_cache import PipelineCache
from .stage_matcher import DowngradePolicy

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    store: SyncStore
    supervisor: BackgroundSupervisor
    cipher: Optional[CredentialCipher]
    key_pool: RetryingKeyPool
    classifier: Classifier
    analysis_client: AnalysisClient
    message_cache: MessageCache
    pipeline_cache: PipelineCache
    persistence: BatchPersistence
    orchestrator: SyncOrchestrator

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[SyncStore] = None,
        classifier: Optional[Classifier] = None,
        source_factory: Optional[SourceFactory] = None,
    ) -> "ServiceContainer":
        """Wire the component graph. Unspecified collaborators get production defaults."""
        settings = settings or Settings.from_env()
        if store is None:
            from .db.postgres_store import PostgresSyncStore
            store = PostgresSyncStore(settings.database_url)

        supervisor = BackgroundSupervisor("contact-sync")
        cipher = cipher_from_key(settings.credential_encryption_key)
        key_pool = RetryingKeyPool(
            store,
            supervisor,
            cipher=cipher,
            override_key=settings.classifier_api_key,
            cache_ttl=settings.key_pool_cache_ttl_seconds,
            debounce=settings.key_pool_debounce_seconds,
        )
        classifier = classifier or OpenAIClassifier(settings.classifier_base_url, settings.classifier_model)
        analysis_client = AnalysisClient(classifier, key_pool)
        message_cache = MessageCache(settings.message_cache_ttl_seconds, settings.message_cache_max_entries)
        pipeline_cache = PipelineCache(store, ttl_seconds=settings.pipeline_cache_ttl_seconds)
        persistence = BatchPersistence(
            store,
            pipeline_cache,
            DowngradePolicy(
                enabled=settings.downgrade_protection,
                min_score_margin=settings.downgrade_min_score_margin,
            ),
        )
        orchestrator = SyncOrchestrator(
            store=store,
            source_factory=source_factory or GraphClient,
            analysis_client=analysis_client,
            message_cache=message_cache,
            pipeline_cache=pipeline_cache,
            persistence=persistence,
            supervisor=supervisor,
            settings=settings,
        )

        logger.info(
            f"Service container ready (model={settings.classifier_model}, "
            f"batch={settings.batch_size}, fetch={settings.fetch_concurrency}, "
            f"analysis={settings.analysis_concurrency})"
        )
        return cls(
            settings=settings,
            store=store,
            supervisor=supervisor,
            cipher=cipher,
            key_pool=key_pool,
            classifier=classifier,
            analysis_client=analysis_client,
            message_cache=message_cache,
            pipeline_cache=pipeline_cache,
            persistence=persistence,
            orchestrator=orchestrator,
        )

    async def aclose(self, timeout: float = 5.0) -> None:
        """Stop background work, then release network clients."""
        await self.supervisor.shutdown(timeout=timeout)
        aclose = getattr(self.classifier, "aclose", None)
        if aclose is not None:
            await aclose()
        self.message_cache.clear()
        self.pipeline_cache.clear()
        logger.info("Service container closed")
