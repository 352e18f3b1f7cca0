"""
Webhook Ingestion
Signature-verified, idempotent application of provider webhooks
"""
from app.services.ingestion.webhook import WebhookOutcome, WebhookPipeline, is_valid_app_key

__all__ = [
    "WebhookOutcome",
    "WebhookPipeline",
    "is_valid_app_key",
]
