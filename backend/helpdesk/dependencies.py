"""FastAPI dependencies for the clients built once in ``create_app``."""
from fastapi import Request

from helpdesk.config import Settings
from helpdesk.errors import ProviderError
from helpdesk.services.notifications import Notifier
from helpdesk.services.shopify import ShopifyClient
from helpdesk.services.storage import SupabaseObjectStorage


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_shopify(request: Request) -> ShopifyClient:
    client = request.app.state.shopify
    if client is None:
        raise ProviderError("Shopify is not configured (SHOPIFY_SHOP_DOMAIN / SHOPIFY_ACCESS_TOKEN)")
    return client


def get_storage(request: Request) -> SupabaseObjectStorage:
    return request.app.state.storage


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier
