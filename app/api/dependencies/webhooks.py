"""Webhook pipeline dependencies.

Built once per process from settings. Tests replace ``get_ingress`` through
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from app.config.settings import settings
from app.db.session import get_session_factory
from app.persistence.health_state import HealthStateStore
from app.persistence.raw_webhooks import RawWebhookStore
from app.queue.factory import build_queue
from app.webhooks.ingress import WebhookIngress
from app.webhooks.signature import WebhookSignatureVerifier


@lru_cache(maxsize=1)
def get_ingress() -> WebhookIngress:
    session_factory = get_session_factory()
    return WebhookIngress(
        verifier=WebhookSignatureVerifier.from_settings(settings),
        raw_store=RawWebhookStore(session_factory),
        state_store=HealthStateStore(session_factory),
        queue=build_queue(settings),
    )


def get_provider_names() -> set[str]:
    return settings.provider_names
