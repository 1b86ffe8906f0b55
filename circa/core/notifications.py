#!/usr/bin/env python

"""
    Notification dispatch for Circa.

    Delivery is best effort. Notices raised during an operation wait in an
    `Outbox` until the operation has committed and released its locks, and
    a failed delivery is logged rather than surfaced to the caller.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import enum
import logging
import httpx
from typing import NamedTuple
from fastapi.encoders import jsonable_encoder
from circa.configs import NOTIFY_URL, NOTIFY_TIMEOUT, CIRCA_HTTP_HEADERS
from circa.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    ITEM_ISSUED = "ItemIssued"
    ITEM_ALLOCATED = "ItemAllocated"
    QUEUE_SKIPPED = "QueueSkipped"
    DUE_REMINDER = "DueReminder"
    FINE_APPLIED = "FineApplied"
    RENEWAL_APPROVED = "RenewalApproved"
    RENEWAL_REJECTED = "RenewalRejected"


class Notice(NamedTuple):
    recipient_id: str
    kind: NotificationKind
    payload: dict


class Notifier:
    """Accepts `(recipient_id, kind, payload)`; raises ExternalServiceError."""

    def send(self, recipient_id, kind, payload):
        raise NotImplementedError


class LogNotifier(Notifier):

    def send(self, recipient_id, kind, payload):
        logger.info(f"Notice {kind.value} for {recipient_id}: {payload}")


class HttpNotifier(Notifier):

    HTTP_HEADERS = CIRCA_HTTP_HEADERS

    def __init__(self, url=NOTIFY_URL, timeout=NOTIFY_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def send(self, recipient_id, kind, payload):
        body = {
            'recipient_id': recipient_id,
            'template': kind.value,
            'payload': jsonable_encoder(payload),
        }
        try:
            with httpx.Client() as client:
                response = client.post(
                    self.url, json=body, headers=self.HTTP_HEADERS, timeout=self.timeout
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Failed to deliver {kind.value} to {recipient_id}: {e}"
            )


def default_notifier():
    return HttpNotifier() if NOTIFY_URL else LogNotifier()


def deliver(notifier, notice):
    """Sends one notice; returns False instead of raising when it fails."""
    try:
        notifier.send(notice.recipient_id, notice.kind, notice.payload)
        return True
    except ExternalServiceError as e:
        logger.warning(f"Notification not delivered: {e.message}")
    except Exception:
        logger.warning(f"Notification {notice.kind.value} for {notice.recipient_id} failed",
                       exc_info=True)
    return False


class Outbox:
    """Collects notices during an operation and sends them on a clean exit."""

    def __init__(self, notifier):
        self.notifier = notifier
        self.notices = []

    def add(self, recipient_id, kind, payload=None):
        self.notices.append(Notice(recipient_id, kind, payload or {}))

    def flush(self):
        notices, self.notices = self.notices, []
        return sum(1 for notice in notices if deliver(self.notifier, notice))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.flush()
        else:
            self.notices = []
        return False
