"""Turns send effects into gateway calls with retry classification."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..core.config import DeliveryConfig
from ..core.exceptions import SendError, TerminalSendError, TransientSendError
from ..core.logger import get_logger
from .gateway import GatewayResponse, MessagingGateway
from .templates import TemplateCatalog, interpolate, render_template

if TYPE_CHECKING:
    from ..engine.events import SendMessage

logger = get_logger("actions")

DEFAULT_RETRYABLE = frozenset({"rate_limited", "network", "timeout", "server_error"})


@dataclass
class ActionResult:
    """Outcome of delivering one ``SendMessage`` effect."""

    success: bool
    retryable: bool = False
    error_class: str | None = None
    error: str | None = None
    attempts: int = 0
    payload: dict[str, Any] | None = None
    message_id: str | None = None

    def as_error(self) -> SendError | None:
        """Exception describing the failure, or None on success."""
        if self.success:
            return None
        error_class = self.error_class or "unknown"
        message = self.error or error_class
        if self.retryable:
            return TransientSendError(message, error_class=error_class)
        return TerminalSendError(message, error_class=error_class)


@dataclass
class _Attempt:
    response: GatewayResponse
    error: str | None = None


class ActionExecutor:
    """Delivers send effects through a messaging gateway.

    Retryable failures (rate limits, network trouble, gateway errors) are
    retried in place with capped exponential backoff; the run does not move
    while this happens. Anything else is reported as terminal on the first
    attempt.
    """

    def __init__(
        self,
        gateway: MessagingGateway,
        catalog: TemplateCatalog,
        delivery: DeliveryConfig | None = None,
        missing_variable_policy: str = "empty",
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the executor.

        Args:
            gateway: Outbound messaging gateway
            catalog: Template lookup for ``send_template`` steps
            delivery: Retry policy and retryable error classes
            missing_variable_policy: ``empty`` or ``fail`` for unknown ``{{names}}``
            sleep: Backoff sleep function
        """
        self.gateway = gateway
        self.catalog = catalog
        self.delivery = delivery or DeliveryConfig()
        self.missing_variable_policy = missing_variable_policy
        self._sleep = sleep

    @property
    def retryable_classes(self) -> frozenset[str]:
        return frozenset(self.delivery.retryable_error_classes or DEFAULT_RETRYABLE)

    def is_retryable(self, error_class: str | None) -> bool:
        return error_class in self.retryable_classes

    def build_payload(self, effect: SendMessage) -> dict[str, Any]:
        """Render the gateway payload for an effect.

        Raises:
            TerminalSendError: If the template or a required variable is missing
        """
        policy = self.missing_variable_policy

        if effect.kind == "template":
            rendered = render_template(
                self.catalog,
                effect.template_id or "",
                effect.template_variables,
                effect.variables,
                policy,
            )
            return {
                "type": "template",
                "templateId": rendered.template.id,
                "templateName": rendered.template.name or rendered.template.id,
                "language": rendered.template.language,
                "variables": rendered.values,
                "text": rendered.text,
            }

        payload: dict[str, Any] = {
            "type": "text",
            "text": interpolate(effect.text or "", effect.variables, policy),
        }
        if effect.buttons:
            payload["type"] = "buttons"
            payload["buttons"] = [
                {"id": button["id"], "text": interpolate(button["text"], effect.variables, policy)}
                for button in effect.buttons
            ]
        return payload

    def _attempt(self, conversation_id: str, payload: dict[str, Any]) -> _Attempt:
        try:
            response = self.gateway.send_message(conversation_id, payload)
        except SendError as exc:
            return _Attempt(GatewayResponse.rejected(exc.error_class, str(exc)), str(exc))
        return _Attempt(response, response.detail)

    def execute(self, effect: SendMessage) -> ActionResult:
        """Deliver one send effect, retrying retryable failures."""
        try:
            payload = self.build_payload(effect)
        except SendError as exc:
            logger.warning(
                "Cannot build message for step %s in conversation %s: %s",
                effect.step_id,
                effect.conversation_id,
                exc,
            )
            return ActionResult(
                success=False,
                retryable=exc.retryable,
                error_class=exc.error_class,
                error=str(exc),
            )

        retry = self.delivery.retry
        delay = retry.backoff_seconds
        attempt = 0

        while True:
            attempt += 1
            outcome = self._attempt(effect.conversation_id, payload)
            response = outcome.response

            if response.ok:
                logger.info(
                    "Sent %s message for step %s to conversation %s (attempt %s)",
                    effect.kind,
                    effect.step_id,
                    effect.conversation_id,
                    attempt,
                )
                return ActionResult(
                    success=True,
                    attempts=attempt,
                    payload=payload,
                    message_id=response.message_id,
                )

            error_class = response.error_class or "unknown"
            retryable = self.is_retryable(error_class)
            error = outcome.error or f"gateway rejected message: {error_class}"

            if not retryable or attempt >= retry.max_attempts:
                log = logger.warning if retryable else logger.error
                log(
                    "Send for step %s in conversation %s failed after %s attempt(s): %s",
                    effect.step_id,
                    effect.conversation_id,
                    attempt,
                    error_class,
                )
                return ActionResult(
                    success=False,
                    retryable=retryable,
                    error_class=error_class,
                    error=error,
                    attempts=attempt,
                    payload=payload,
                )

            sleep_for = min(delay, retry.max_backoff_seconds)
            logger.warning(
                "Send attempt %s/%s for step %s failed: %s. Retrying in %.2fs",
                attempt,
                retry.max_attempts,
                effect.step_id,
                error_class,
                sleep_for,
            )
            self._sleep(sleep_for)
            delay = max(delay * retry.backoff_multiplier, retry.backoff_seconds)
