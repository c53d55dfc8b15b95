"""
Notification Service
====================
Delivers human-readable pipeline events.

Delivery contract:
    - Every event is ALWAYS written to the operational log
    - Each configured webhook channel is then tried once, concurrently
    - Channels are independent: one failing channel never affects another
    - At-most-once, no retry; events carry an idempotency key
      (execution id + status) so a receiver can drop duplicates

Channels:
    - DISCORD_WEBHOOK_URL        → one Discord channel
    - NOTIFICATION_CHANNELS_FILE → YAML list of extra channels:

        channels:
          - type: discord
            webhook_url: https://discord.com/api/webhooks/...
          - type: slack
            webhook_url: https://hooks.slack.com/services/...
            channel: "#ci"
            username: CI Bot
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx
import yaml

from pipeline_tracker.core.config import (
    DISCORD_WEBHOOK_URL,
    NOTIFICATION_CHANNELS_FILE,
    SIDE_EFFECT_TIMEOUT_SECONDS,
)
from pipeline_tracker.core.constants import (
    EMOJI_BELL,
    EMOJI_FAILURE,
    EMOJI_STARTED,
    EMOJI_SUCCESS,
)
from pipeline_tracker.models.execution import Execution, ExecutionStatus

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    message: str
    execution_id: Optional[int] = None
    status: Optional[str] = None

    @property
    def idempotency_key(self) -> Optional[str]:
        if self.execution_id is None or not self.status:
            return None
        return f"{self.execution_id}:{self.status}"


def completion_message(student_name: str, build_number: Optional[int], status: ExecutionStatus) -> str:
    emoji = EMOJI_SUCCESS if status == ExecutionStatus.SUCCESS else EMOJI_FAILURE
    return f"{emoji} {student_name} build #{build_number} {status.value}"


def started_message(student_name: str, repo_url: str) -> str:
    return f"{EMOJI_STARTED} Pipeline started for {student_name} ({repo_url})"


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------
class WebhookChannel:
    kind = "webhook"

    def __init__(self, webhook_url: str, name: str = "") -> None:
        self.webhook_url = webhook_url
        self.name = name or self.kind

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        return {"text": event.message}

    async def send(self, client: httpx.AsyncClient, event: NotificationEvent) -> bool:
        headers = {}
        if event.idempotency_key:
            headers["X-Idempotency-Key"] = event.idempotency_key
        response = await client.post(
            self.webhook_url, json=self.build_payload(event), headers=headers
        )
        if 200 <= response.status_code < 300:
            logger.debug("%s notification sent successfully", self.name)
            return True
        logger.warning("Failed to send %s notification: HTTP %d", self.name, response.status_code)
        return False


class DiscordChannel(WebhookChannel):
    kind = "discord"

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        return {"content": event.message}


class SlackChannel(WebhookChannel):
    kind = "slack"

    def __init__(
        self,
        webhook_url: str,
        name: str = "",
        channel: str = "",
        username: str = "",
        icon_emoji: str = "",
    ) -> None:
        super().__init__(webhook_url, name)
        self.channel = channel
        self.username = username
        self.icon_emoji = icon_emoji

    def build_payload(self, event: NotificationEvent) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": event.message}
        if self.channel:
            payload["channel"] = self.channel
        if self.username:
            payload["username"] = self.username
        if self.icon_emoji:
            payload["icon_emoji"] = self.icon_emoji
        return payload


_CHANNEL_TYPES = {
    "discord": DiscordChannel,
    "slack": SlackChannel,
}


def load_channels_file(path: str) -> List[WebhookChannel]:
    """Parse a YAML channels file. Invalid entries are logged and skipped."""
    if not path:
        return []
    if not os.path.exists(path):
        logger.warning("Notification channels file not found: %s", path)
        return []

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error("Could not read notification channels file %s: %s", path, e)
        return []

    channels: List[WebhookChannel] = []
    entries = data.get("channels", []) if isinstance(data, dict) else []
    for index, entry in enumerate(entries or []):
        if not isinstance(entry, dict):
            logger.warning("Skipping channel #%d: not a mapping", index)
            continue
        kind = str(entry.get("type", "")).lower()
        channel_cls = _CHANNEL_TYPES.get(kind)
        webhook_url = entry.get("webhook_url")
        if channel_cls is None or not webhook_url:
            logger.warning("Skipping channel #%d: unsupported type or missing webhook_url", index)
            continue
        options = {
            k: str(v) for k, v in entry.items()
            if k in ("name", "channel", "username", "icon_emoji") and v
        }
        if channel_cls is not SlackChannel:
            options = {k: v for k, v in options.items() if k == "name"}
        channels.append(channel_cls(webhook_url, **options))
    return channels


def build_default_channels(
    discord_webhook_url: str = DISCORD_WEBHOOK_URL,
    channels_file: str = NOTIFICATION_CHANNELS_FILE,
) -> List[WebhookChannel]:
    channels: List[WebhookChannel] = []
    if discord_webhook_url:
        channels.append(DiscordChannel(discord_webhook_url))
    channels.extend(load_channels_file(channels_file))
    return channels


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class NotificationService:
    """
    Fan-out of pipeline events to the operational log and webhook channels.
    """

    def __init__(
        self,
        channels: Optional[List[WebhookChannel]] = None,
        timeout: float = SIDE_EFFECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.channels = list(channels) if channels is not None else build_default_channels()
        self.timeout = timeout
        self._transport = transport

    async def notify(self, event: Union[NotificationEvent, str]) -> int:
        """
        Record ``event`` and forward it to every channel.

        Returns the number of channels that accepted it. Never raises.
        """
        if isinstance(event, str):
            event = NotificationEvent(message=event)

        # Always-on operational log
        logger.info("%s NOTIFICATION: %s", EMOJI_BELL, event.message)

        if not self.channels:
            return 0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            results = await asyncio.gather(
                *(self._deliver(client, channel, event) for channel in self.channels)
            )
        return sum(1 for delivered in results if delivered)

    async def _deliver(
        self, client: httpx.AsyncClient, channel: WebhookChannel, event: NotificationEvent
    ) -> bool:
        try:
            return await channel.send(client, event)
        except Exception as e:
            logger.error("Error sending %s notification: %s", channel.name, e)
            return False

    async def pipeline_started(self, execution: Execution) -> int:
        return await self.notify(NotificationEvent(
            message=started_message(execution.student_name, execution.repository_url),
            execution_id=execution.id,
            status=ExecutionStatus.PENDING.value,
        ))

    async def pipeline_completed(self, execution: Execution) -> int:
        return await self.notify(NotificationEvent(
            message=completion_message(
                execution.student_name, execution.build_number, execution.status
            ),
            execution_id=execution.id,
            status=execution.status.value,
        ))
