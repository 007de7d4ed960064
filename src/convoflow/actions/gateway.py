"""Messaging gateway protocol and its HTTP client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..core.config import GatewayConfig
from ..core.logger import get_logger

logger = get_logger("gateway")


class SendStatus:
    """Gateway send statuses."""

    SENT = "sent"
    REJECTED = "rejected"


@dataclass(frozen=True)
class GatewayResponse:
    """Outcome of one send attempt."""

    status: str
    error_class: str | None = None
    message_id: str | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.SENT

    @classmethod
    def sent(cls, message_id: str | None = None) -> GatewayResponse:
        return cls(status=SendStatus.SENT, message_id=message_id)

    @classmethod
    def rejected(cls, error_class: str, detail: str | None = None) -> GatewayResponse:
        return cls(status=SendStatus.REJECTED, error_class=error_class, detail=detail)


class MessagingGateway(Protocol):
    """Outbound side of the conversation layer."""

    def send_message(self, conversation_id: str, payload: dict[str, Any]) -> GatewayResponse: ...


class HttpMessagingGateway:
    """Gateway that posts payloads to an HTTP messaging service.

    Failures are never raised; they come back as rejected responses whose
    ``error_class`` the action executor classifies.

    Example:
        ```python
        from convoflow.core.config import GatewayConfig

        with HttpMessagingGateway(GatewayConfig(base_url="https://chat.example.com/api")) as gw:
            gw.send_message("conv-1", {"type": "text", "text": "Hello"})
        ```
    """

    def __init__(self, config: GatewayConfig, client: httpx.Client | None = None):
        """Initialize the gateway client.

        Args:
            config: Gateway configuration
            client: Pre-built HTTP client (mainly for tests)
        """
        if not config.base_url:
            raise ValueError("gateway.base_url is required for the HTTP gateway")
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = client or httpx.Client(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout,
            headers=headers,
        )

    def __enter__(self) -> HttpMessagingGateway:
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def send_message(self, conversation_id: str, payload: dict[str, Any]) -> GatewayResponse:
        path = self.config.messages_path.format(conversation_id=conversation_id)
        try:
            response = self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timeout for conversation %s: %s", conversation_id, exc)
            return GatewayResponse.rejected("timeout", str(exc))
        except httpx.TransportError as exc:
            logger.warning("Gateway unreachable for conversation %s: %s", conversation_id, exc)
            return GatewayResponse.rejected("network", str(exc))

        body = self._json_body(response)

        if response.status_code == 429:
            return GatewayResponse.rejected("rate_limited", body.get("message"))
        if response.status_code >= 500:
            return GatewayResponse.rejected("server_error", f"HTTP {response.status_code}")
        if response.status_code >= 400:
            error_class = body.get("errorClass") or body.get("error_class") or "invalid_request"
            return GatewayResponse.rejected(str(error_class), body.get("message"))

        if body.get("status") == SendStatus.REJECTED:
            error_class = body.get("errorClass") or body.get("error_class") or "unknown"
            return GatewayResponse.rejected(str(error_class), body.get("message"))

        message_id = body.get("messageId") or body.get("message_id") or body.get("id")
        logger.debug("Gateway accepted message for conversation %s", conversation_id)
        return GatewayResponse.sent(str(message_id) if message_id is not None else None)

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


class RecordingGateway:
    """In-process gateway that keeps every payload it receives.

    Used by the test harness, the ``serve`` command when no gateway URL is
    configured, and tests. ``fail_with`` queues error classes that the next
    sends are rejected with.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail_with: list[str] = []

    def send_message(self, conversation_id: str, payload: dict[str, Any]) -> GatewayResponse:
        if self.fail_with:
            return GatewayResponse.rejected(self.fail_with.pop(0))
        self.sent.append((conversation_id, dict(payload)))
        return GatewayResponse.sent(f"msg-{len(self.sent)}")

    def texts(self, conversation_id: str | None = None) -> list[str]:
        """Rendered text of the sent payloads, optionally for one conversation."""
        return [
            str(payload.get("text", ""))
            for conv, payload in self.sent
            if conversation_id is None or conv == conversation_id
        ]
