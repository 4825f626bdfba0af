"""
Webhook Handlers

Maps a webhook type tag to the coroutine that applies its domain-side
effects. Handlers receive the stored payload, must be idempotent, and
raise to put the job on the retry path.
"""
from typing import Any, Awaitable, Callable, Iterator

import structlog

from app.models.webhook import WebhookType

logger = structlog.get_logger()

WebhookHandler = Callable[[Any], Awaitable[None]]


class WebhookHandlerRegistry:
    """Registry of webhook handlers keyed by type tag."""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}

    def register(self, webhook_type: str, handler: WebhookHandler) -> None:
        """Register (or replace) the handler for a webhook type."""
        if not webhook_type or not webhook_type.strip():
            raise ValueError("webhook_type must be a non-empty string")
        self._handlers[webhook_type] = handler

    def handler(self, webhook_type: str) -> Callable[[WebhookHandler], WebhookHandler]:
        """
        Decorator form of register().

        Usage:
            @registry.handler("github")
            async def process_github_webhook(payload):
                ...
        """
        def decorator(func: WebhookHandler) -> WebhookHandler:
            self.register(webhook_type, func)
            return func
        return decorator

    def get(self, webhook_type: str) -> WebhookHandler | None:
        return self._handlers.get(webhook_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, webhook_type: object) -> bool:
        return webhook_type in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.types())


async def process_stripe_webhook(payload: Any) -> None:
    """
    Stripe events: subscription lifecycle and payment intents.

    Billing logic plugs in here.
    """
    event_type = payload.get("type") if isinstance(payload, dict) else None
    logger.info("stripe_webhook_processed", event_type=event_type)


async def process_youtube_webhook(payload: Any) -> None:
    """YouTube publish-status and channel update notifications."""
    logger.info("youtube_webhook_processed", payload=payload)


async def process_a2e_webhook(payload: Any) -> None:
    """A2E avatar/video completion events."""
    logger.info("a2e_webhook_processed", payload=payload)


def build_default_registry() -> WebhookHandlerRegistry:
    """Registry with the built-in stripe, youtube and a2e handlers."""
    registry = WebhookHandlerRegistry()
    registry.register(WebhookType.STRIPE.value, process_stripe_webhook)
    registry.register(WebhookType.YOUTUBE.value, process_youtube_webhook)
    registry.register(WebhookType.A2E.value, process_a2e_webhook)
    return registry
