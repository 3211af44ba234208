"""FastAPI dependencies for gateway access.

Built once per process and overridable in tests via `app.dependency_overrides`.
"""
from __future__ import annotations

from functools import lru_cache

from config.settings import settings
from cashier.gateway.base import Gateway, GatewayConfig, build_gateway
from cashier.services.webhooks import WebhookDispatcher, build_dispatcher


@lru_cache(maxsize=1)
def get_gateway_config() -> GatewayConfig:
    return GatewayConfig.from_settings(settings)


@lru_cache(maxsize=1)
def get_gateway() -> Gateway:
    return build_gateway(get_gateway_config())


@lru_cache(maxsize=1)
def get_dispatcher() -> WebhookDispatcher:
    return build_dispatcher(settings.APP_URL)
