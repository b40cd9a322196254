"""Service container shared by the API routes."""

from dataclasses import dataclass

from fastapi import Request

from src.config import Settings
from src.gateway.gateway import ApiKeyGateway
from src.scheduler.generator import DailyTaskGenerator
from src.storage.store import PlannerStore
from src.webhooks.dispatcher import WebhookDispatcher


@dataclass
class Services:
    """Long-lived services built once per application."""

    settings: Settings
    store: PlannerStore
    dispatcher: WebhookDispatcher
    generator: DailyTaskGenerator
    gateway: ApiKeyGateway

    @classmethod
    def build(cls, settings: Settings, store: PlannerStore) -> "Services":
        """Wire the services around an initialized store.

        The generator hands its task events to the dispatcher.
        """
        dispatcher = WebhookDispatcher(store, settings)
        return cls(
            settings=settings,
            store=store,
            dispatcher=dispatcher,
            generator=DailyTaskGenerator(store, settings, emit=dispatcher.dispatch_event),
            gateway=ApiKeyGateway(store, settings),
        )


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services are not initialized")
    return services
