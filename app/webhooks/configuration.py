"""Webhook URLs to register with the provider, and a startup sanity report."""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from app.config.settings import Settings


@dataclass(frozen=True)
class WebhookUrls:
    health_data: str
    notifications: str
    health: str


@dataclass
class WebhookConfigReport:
    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.missing


def webhook_urls(base_url: str, provider: str = "rook") -> WebhookUrls:
    base = base_url.rstrip("/")
    return WebhookUrls(
        health_data=f"{base}/webhooks/{provider}/health-data",
        notifications=f"{base}/webhooks/{provider}/notifications",
        health=f"{base}/webhooks/{provider}/health",
    )


def validate_webhook_configuration(settings: Settings) -> WebhookConfigReport:
    report = WebhookConfigReport()
    if not settings.webhook_base_url:
        report.missing.append("WEBHOOK_BASE_URL")
    if not settings.rook_secret_hash_key:
        report.missing.append("ROOK_SECRET_HASH_KEY")

    base_url = settings.webhook_base_url.lower()
    if "localhost" in base_url or "127.0.0.1" in base_url:
        report.warnings.append("WEBHOOK_BASE_URL points at localhost; the provider cannot reach it")
    if settings.webhook_signature_bypass:
        if settings.is_production:
            report.warnings.append("WEBHOOK_SIGNATURE_BYPASS is set but ignored in production")
        else:
            report.warnings.append("WEBHOOK_SIGNATURE_BYPASS is enabled; webhooks are not authenticated")
    return report


def log_webhook_configuration(settings: Settings) -> WebhookConfigReport:
    report = validate_webhook_configuration(settings)
    if report.is_valid:
        logger.info("[WEBHOOK_CONFIG] Configuration is valid")
    else:
        logger.error(f"[WEBHOOK_CONFIG] Missing required settings: {', '.join(report.missing)}")
    for warning in report.warnings:
        logger.warning(f"[WEBHOOK_CONFIG] {warning}")

    if settings.webhook_base_url:
        for provider in sorted(settings.provider_names):
            urls = webhook_urls(settings.webhook_base_url, provider)
            logger.info(
                f"[WEBHOOK_CONFIG] {provider}: health data={urls.health_data} "
                f"notifications={urls.notifications} health={urls.health}"
            )
    return report
