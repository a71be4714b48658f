from app.webhooks.models import Webhook, WebhookDelivery

__all__ = ["Webhook", "WebhookDelivery"]
