"""Trigger dispatch from conversation events to runs."""

from .dispatcher import ConversationStarted, DispatchReport, MessageReceived, TriggerDispatcher

__all__ = ["ConversationStarted", "DispatchReport", "MessageReceived", "TriggerDispatcher"]
