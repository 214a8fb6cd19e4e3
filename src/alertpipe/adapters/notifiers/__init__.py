"""Notification receivers."""

from alertpipe.adapters.notifiers.webhook import WebhookNotifier, build_payload

__all__ = ["WebhookNotifier", "build_payload"]
