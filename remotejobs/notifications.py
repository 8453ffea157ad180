"""Notification system for remote job-step events.

Supports SNS, Linear API and log channels for alerting on stale sentinel
files, Undefined polls and finished job steps.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import boto3
import httpx
from botocore.exceptions import ClientError

from remotejobs.config import Settings
from remotejobs.remote_monitor import STALE_JOBSTATUS, STALE_LOCK, StaleFileNotice

LOGGER = logging.getLogger("remotejobs.notifications")

# Linear priority per event type; other event types never open an issue
# 1=urgent, 2=high, 3=normal, 4=low
LINEAR_PRIORITIES = {
    "error": 2,
    "failure": 2,
    STALE_LOCK: 3,
    STALE_JOBSTATUS: 3,
}

# Detail keys rendered as Key=Value lines, in the order of the status files
DETAIL_KEYS = (
    ("file_name", "FileName"),
    ("age_hours", "AgeHours"),
    ("threshold_hours", "ThresholdHours"),
    ("comp_code", "CompCode"),
    ("eval_code", "EvalCode"),
)

ISSUE_CREATE = """
mutation CreateIssue($input: IssueCreateInput!) {
    issueCreate(input: $input) {
        success
        issue { identifier url }
    }
}
"""


@dataclass
class NotificationEvent:
    """Job-step event to be notified."""
    job: int
    step: int
    job_step: str
    event_type: str  # completion, failure, error, stale_lock, stale_jobstatus
    state: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    priority: str = "normal"
    remote_host: Optional[str] = None

    @property
    def label(self) -> str:
        return self.event_type.replace("_", " ")

    def detail_lines(self) -> List[str]:
        """Known details as Key=Value lines."""
        return [f"{key}={self.details[name]}" for name, key in DETAIL_KEYS if self.details.get(name) is not None]


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    @abstractmethod
    def send(self, event: NotificationEvent) -> bool:
        """Send notification for an event.

        Returns:
            True if sent successfully, False otherwise
        """


class LogNotificationChannel(NotificationChannel):
    """Write notifications to the log."""

    def send(self, event: NotificationEvent) -> bool:
        level = logging.WARNING if event.event_type in LINEAR_PRIORITIES else logging.INFO
        LOGGER.log(level, "[%s] %s (%s): %s", event.event_type, event.job_step, event.state, event.message)
        return True


def _string_attribute(value: Any) -> Dict[str, str]:
    return {"DataType": "String", "StringValue": str(value)}


def _number_attribute(value: Any) -> Dict[str, str]:
    return {"DataType": "Number", "StringValue": str(value)}


class SNSNotificationChannel(NotificationChannel):
    """Publish job-step events to an AWS SNS topic.

    Subscribers can filter on the job, step, event_type and state message
    attributes; stale-file events also carry file_name and age_hours.
    """

    def __init__(
        self,
        topic_arn: str,
        region: str,
        profile: Optional[str] = None,
    ):
        session_kwargs = {"region_name": region}
        if profile:
            session_kwargs["profile_name"] = profile

        session = boto3.Session(**session_kwargs)
        self.sns = session.client("sns")
        self.topic_arn = topic_arn

    @staticmethod
    def subject(event: NotificationEvent) -> str:
        host = f" on {event.remote_host}" if event.remote_host else ""
        # SNS subject limit
        return f"Job {event.job} step {event.step} {event.label}{host}"[:100]

    @staticmethod
    def body(event: NotificationEvent) -> str:
        lines = [
            f"Job={event.job}",
            f"Step={event.step}",
            f"JobStep={event.job_step}",
            f"Event={event.event_type}",
            f"State={event.state}",
        ]
        if event.remote_host:
            lines.append(f"RemoteHost={event.remote_host}")
        lines.extend(event.detail_lines())
        lines.extend(["", event.message])
        return "\n".join(lines)

    @staticmethod
    def attributes(event: NotificationEvent) -> Dict[str, Dict[str, str]]:
        attributes = {
            "job": _number_attribute(event.job),
            "step": _number_attribute(event.step),
            "event_type": _string_attribute(event.event_type),
            "state": _string_attribute(event.state),
            "priority": _string_attribute(event.priority),
        }
        if event.remote_host:
            attributes["remote_host"] = _string_attribute(event.remote_host)
        if event.details.get("file_name"):
            attributes["file_name"] = _string_attribute(event.details["file_name"])
        if event.details.get("age_hours") is not None:
            attributes["age_hours"] = _number_attribute(event.details["age_hours"])
        return attributes

    def send(self, event: NotificationEvent) -> bool:
        try:
            self.sns.publish(
                TopicArn=self.topic_arn,
                Subject=self.subject(event),
                Message=self.body(event),
                MessageAttributes=self.attributes(event),
            )
        except ClientError as e:
            LOGGER.error("Failed to publish %s for %s to SNS: %s", event.event_type, event.job_step, e)
            return False
        LOGGER.info("Published %s for %s to SNS", event.event_type, event.job_step)
        return True


class LinearNotificationChannel(NotificationChannel):
    """Open Linear issues for job steps that need attention."""

    api_url = "https://api.linear.app/graphql"

    def __init__(
        self,
        api_key: str,
        team_id: str,
        project_id: Optional[str] = None,
    ):
        self.api_key = api_key
        self.team_id = team_id
        self.project_id = project_id

    @staticmethod
    def title(event: NotificationEvent) -> str:
        title = f"Job {event.job} step {event.step}: {event.label}"
        if event.remote_host:
            title += f" on {event.remote_host}"
        return title

    @staticmethod
    def description(event: NotificationEvent) -> str:
        rows = [("Job step", event.job_step), ("State", event.state)]
        if event.remote_host:
            rows.append(("Remote host", event.remote_host))
        rows.extend((key, value) for key, value in (line.split("=", 1) for line in event.detail_lines()))

        table = ["| Field | Value |", "| --- | --- |"]
        table.extend(f"| {name} | `{value}` |" for name, value in rows)
        return "\n".join([event.message, "", *table])

    def issue_input(self, event: NotificationEvent) -> Dict[str, Any]:
        issue: Dict[str, Any] = {
            "teamId": self.team_id,
            "title": self.title(event),
            "description": self.description(event),
            "priority": 1 if event.priority == "urgent" else LINEAR_PRIORITIES[event.event_type],
        }
        if self.project_id:
            issue["projectId"] = self.project_id
        return issue

    def send(self, event: NotificationEvent) -> bool:
        """Create a Linear issue for failures, errors and stale sentinel files."""
        if event.event_type not in LINEAR_PRIORITIES:
            return True

        try:
            with httpx.Client() as client:
                response = client.post(
                    self.api_url,
                    json={"query": ISSUE_CREATE, "variables": {"input": self.issue_input(event)}},
                    headers={"Authorization": self.api_key, "Content-Type": "application/json"},
                    timeout=10.0,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            LOGGER.error("Failed to create Linear issue for %s: %s", event.job_step, e)
            return False

        created = (data.get("data") or {}).get("issueCreate") or {}
        if not created.get("success"):
            LOGGER.error("Linear rejected the issue for %s: %s", event.job_step, data)
            return False
        issue = created["issue"]
        LOGGER.info("Created Linear issue %s for %s: %s", issue["identifier"], event.job_step, issue["url"])
        return True


class NotificationManager:
    """Fan events out to every channel, optionally limited to some event types."""

    def __init__(self, event_types: Optional[Iterable[str]] = None):
        self.channels: List[NotificationChannel] = []
        # Empty = all events
        self.event_types = frozenset(event_types or ())

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)
        LOGGER.info("Added notification channel: %s", channel.__class__.__name__)

    def notify(self, event: NotificationEvent) -> int:
        """Send the event to every channel.

        Returns:
            Number of channels that successfully sent notification
        """
        if self.event_types and event.event_type not in self.event_types:
            LOGGER.debug("Not notifying %s for %s", event.event_type, event.job_step)
            return 0

        success_count = 0
        for channel in self.channels:
            try:
                if channel.send(event):
                    success_count += 1
            except Exception as e:
                LOGGER.error(
                    "Notification channel %s failed: %s",
                    channel.__class__.__name__,
                    e,
                )

        return success_count


def notice_to_event(notice: StaleFileNotice, remote_host: Optional[str] = None) -> NotificationEvent:
    """Convert a stale-file notice raised by the monitor into an event."""
    return NotificationEvent(
        job=notice.job,
        step=notice.step,
        job_step=f"Job{notice.job}_Step{notice.step}",
        event_type=notice.kind,
        state="Running",
        message=notice.message,
        details={
            "file_name": notice.file_name,
            "age_hours": notice.age_hours,
            "threshold_hours": notice.threshold_hours,
        },
        priority="high",
        remote_host=remote_host,
    )


def build_notification_manager(settings: Settings) -> NotificationManager:
    """Create a manager with a log channel plus SNS and Linear when configured."""
    manager = NotificationManager(event_types=settings.enabled_notification_event_types())
    manager.add_channel(LogNotificationChannel())
    if settings.sns_topic_arn:
        manager.add_channel(
            SNSNotificationChannel(
                topic_arn=settings.sns_topic_arn,
                region=settings.aws_region,
                profile=settings.aws_profile,
            )
        )
    if settings.linear_api_key and settings.linear_team_id:
        manager.add_channel(
            LinearNotificationChannel(api_key=settings.linear_api_key, team_id=settings.linear_team_id)
        )
    return manager
