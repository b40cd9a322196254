"""FastAPI routes for the study planner automation layer.

This module contains:
- Application factory and default app instance
- Automation function endpoints
- Service container used by the endpoints
"""

from src.api.dependencies import Services, get_services
from src.api.functions import (
    DailySchedulerResponse,
    ErrorResponse,
    PermissionErrorResponse,
    SendWebhookRequest,
)
from src.api.routes import app, create_app

__all__ = [
    # Request models
    "SendWebhookRequest",
    # Response models
    "DailySchedulerResponse",
    "ErrorResponse",
    "PermissionErrorResponse",
    # Services
    "Services",
    "get_services",
    # App factory and instance
    "app",
    "create_app",
]
