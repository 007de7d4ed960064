"""Outbound message delivery: templates, gateway and executor."""

from .executor import ActionExecutor, ActionResult
from .gateway import GatewayResponse, HttpMessagingGateway, MessagingGateway, RecordingGateway
from .templates import (
    MessageTemplate,
    StaticTemplateCatalog,
    TemplateCatalog,
    interpolate,
    render_template,
)

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "GatewayResponse",
    "HttpMessagingGateway",
    "MessageTemplate",
    "MessagingGateway",
    "RecordingGateway",
    "StaticTemplateCatalog",
    "TemplateCatalog",
    "interpolate",
    "render_template",
]
