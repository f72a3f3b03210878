"""
Operator Alert Service.

WHAT:
    Notifies operators when a conversion is dead-lettered, and sends the
    periodic queue summary.
    Channels: Slack (incoming webhook) and Email (Resend). Both optional.

WHY:
    Dead conversions mean an affiliate is not getting paid; somebody has to
    look at them. Alerting is best-effort: nothing here may raise into the
    queue or the worker loop.

DESIGN:
    - Every call always leaves a log line (ERROR for failures, INFO for summaries)
    - With no channel configured calls return AlertResult(sent=False, reason="not_configured")
    - Channel exceptions are logged and reported as reason="send_failed"

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
    - Slack Incoming Webhooks: https://api.slack.com/messaging/webhooks
"""

from __future__ import annotations

import html
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx
import resend

from orderbridge.models import utcnow

if TYPE_CHECKING:
    from orderbridge.services.conversion_queue import QueueStats

logger = logging.getLogger(__name__)


@dataclass
class AlertResult:
    """
    Outcome of an alert.

    Attributes:
        sent: True if at least one channel delivered
        reason: not_configured | send_failed when nothing was delivered
        channels: Channels that delivered (slack, email)
        errors: Per-channel error messages
    """

    sent: bool
    reason: Optional[str] = None
    channels: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class AlertService:
    """
    Usage:
        service = AlertService.from_settings()
        await service.notify_permanent_failure(job_id, payload, error, attempts)
    """

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        resend_api_key: Optional[str] = None,
        alert_email: Optional[str] = None,
        from_email: str = "orderbridge alerts <alerts@marketin.io>",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.slack_webhook_url = slack_webhook_url
        self.alert_email = alert_email
        self.from_email = from_email
        self._transport = transport

        self.resend_client = None
        if resend_api_key and alert_email:
            resend.api_key = resend_api_key
            self.resend_client = resend

    @classmethod
    def from_settings(cls) -> "AlertService":
        from orderbridge.deps import get_settings

        settings = get_settings()
        return cls(
            slack_webhook_url=settings.SLACK_ALERT_WEBHOOK_URL,
            resend_api_key=settings.RESEND_API_KEY,
            alert_email=settings.ALERT_EMAIL,
            from_email=settings.ALERT_FROM_EMAIL,
        )

    @property
    def configured_channels(self) -> List[str]:
        channels = []
        if self.slack_webhook_url:
            channels.append("slack")
        if self.resend_client:
            channels.append("email")
        return channels

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def notify_permanent_failure(
        self,
        job_id: str,
        payload: Any,
        error: str,
        attempts: int,
    ) -> AlertResult:
        """Alert that a conversion job was dead-lettered."""
        timestamp = utcnow().isoformat()
        logger.error(
            f"[ALERT] Conversion failed permanently: {job_id} after {attempts} attempt(s): {error}",
            extra={"job_id": job_id, "attempts": attempts, "timestamp": timestamp},
        )

        payload_text = _pretty(payload)
        subject = f"[Market!N Alert] Conversion Send Failed: {job_id}"
        text = (
            "Conversion Send Failed\n\n"
            f"Job ID: {job_id}\n"
            f"Error: {error}\n"
            f"Attempts: {attempts}\n"
            f"Timestamp: {timestamp}\n\n"
            f"Payload:\n{payload_text}\n\n"
            "This conversion needs manual intervention. "
            "See the conversion_failures table for details."
        )
        body_html = (
            "<h2>Conversion Send Failed</h2>"
            f"<p><strong>Job ID:</strong> {html.escape(job_id)}</p>"
            f"<p><strong>Error:</strong> {html.escape(str(error))}</p>"
            f"<p><strong>Attempts:</strong> {attempts}</p>"
            f"<p><strong>Timestamp:</strong> {timestamp}</p>"
            "<h3>Payload:</h3>"
            f'<pre style="background: #f4f4f4; padding: 10px; overflow: auto;">{html.escape(payload_text)}</pre>'
            '<p style="color: #666; font-size: 12px;">'
            "This conversion needs manual intervention. "
            "See the conversion_failures table for details.</p>"
        )
        slack_payload = {
            "text": f":rotating_light: Conversion send failed: `{job_id}`",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": (
                            f":rotating_light: *Conversion send failed*\n"
                            f"*Job:* `{job_id}`\n*Attempts:* {attempts}\n*Error:* {error}"
                        ),
                    },
                },
            ],
        }
        return await self._dispatch(subject, text, body_html, slack_payload)

    async def notify_periodic_summary(self, stats: "QueueStats") -> AlertResult:
        """Send the queue summary (daily by default)."""
        queue = dict(stats.queue)
        dead = queue.get("dead", 0)
        logger.info(
            f"[ALERT] Queue summary: {queue}, failures in last 24h: {stats.failures_24h}",
            extra={"queue": queue, "failures_24h": stats.failures_24h},
        )
        if dead:
            logger.warning(f"[ALERT] {dead} dead conversion job(s) need manual intervention")

        lines = [
            f"Pending: {queue.get('pending', 0)}",
            f"Processing: {queue.get('processing', 0)}",
            f"Completed: {queue.get('completed', 0)}",
            f"Failed (retrying): {queue.get('failed', 0)}",
            f"Dead (needs attention): {dead}",
            f"Failures in last 24h: {stats.failures_24h}",
        ]
        warning = "There are dead jobs requiring manual intervention!" if dead else ""

        subject = "[Market!N] Daily Conversion Queue Summary"
        text = "Daily Queue Summary\n\n" + "\n".join(lines) + (f"\n\n{warning}" if warning else "")
        body_html = (
            "<h2>Daily Conversion Queue Summary</h2>"
            f"<p><strong>Date:</strong> {utcnow().isoformat()}</p>"
            "<ul>" + "".join(f"<li>{line}</li>" for line in lines) + "</ul>"
            + (f'<p style="color: red;"><strong>{warning}</strong></p>' if warning else "")
        )
        slack_payload = {"text": "*Conversion queue summary*\n" + "\n".join(lines) + (f"\n:warning: {warning}" if warning else "")}
        return await self._dispatch(subject, text, body_html, slack_payload)

    async def test_configuration(self) -> Dict[str, Any]:
        """Report which channels are configured (no message is sent)."""
        channels = self.configured_channels
        return {
            "configured": bool(channels),
            "channels": channels,
            "alertEmail": self.alert_email if self.resend_client else None,
            "message": "Alert channels configured" if channels else "No alert channel configured",
        }

    # =========================================================================
    # CHANNELS
    # =========================================================================

    async def _dispatch(self, subject: str, text: str, body_html: str, slack_payload: Dict[str, Any]) -> AlertResult:
        if not self.configured_channels:
            logger.warning("[ALERT] No alert channel configured, skipping notification")
            return AlertResult(sent=False, reason="not_configured")

        result = AlertResult(sent=False)
        if self.slack_webhook_url:
            error = await self._send_slack(slack_payload)
            if error:
                result.errors["slack"] = error
            else:
                result.channels.append("slack")
        if self.resend_client:
            error = self._send_email(subject, text, body_html)
            if error:
                result.errors["email"] = error
            else:
                result.channels.append("email")

        result.sent = bool(result.channels)
        if not result.sent:
            result.reason = "send_failed"
        return result

    async def _send_slack(self, payload: Dict[str, Any]) -> Optional[str]:
        """Post to the Slack webhook. Returns an error message, None on success."""
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                response = await client.post(self.slack_webhook_url, json=payload)
        except httpx.TimeoutException:
            logger.error("[ALERT] Slack webhook timeout")
            return "Request timeout"
        except httpx.RequestError as e:
            logger.error(f"[ALERT] Failed to send Slack message: {e}")
            return str(e)

        if response.status_code == 200:
            logger.info("[ALERT] Slack message sent")
            return None
        error_msg = f"Slack API error: {response.status_code} - {response.text}"
        logger.error(f"[ALERT] {error_msg}")
        return error_msg

    def _send_email(self, subject: str, text: str, body_html: str) -> Optional[str]:
        """Send through Resend. Returns an error message, None on success."""
        try:
            response = self.resend_client.Emails.send({
                "from": self.from_email,
                "to": [self.alert_email],
                "subject": subject,
                "html": body_html,
                "text": text,
            })
        except Exception as e:
            logger.exception(f"[ALERT] Failed to send email: {e}")
            return str(e)

        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        logger.info(f"[ALERT] Email sent: {subject} to {self.alert_email}, id={message_id}")
        return None


def _pretty(payload: Any) -> str:
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return payload
    try:
        return json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError):
        return str(payload)
