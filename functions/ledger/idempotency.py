"""
Webhook event claims.

An event id is claimed with a conditional write before any handler runs, so
two deliveries of the same event never process concurrently. Claims end in
one of three ways: completed (kept for EVENT_RETENTION_DAYS), failed (terminal,
never reprocessed) or released (deleted so the next delivery can retry).
A claim left in "processing" by a crashed worker can be taken over once its
lease expires; ledger reference keys keep the replay from double-applying.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from botocore.exceptions import ClientError

from ledger.aws_clients import get_dynamodb
from ledger.constants import (
    EVENT_CLAIM_LEASE_SECONDS,
    EVENT_RETENTION_DAYS,
    THROTTLING_ERRORS,
    WEBHOOK_EVENTS_TABLE,
)
from ledger.errors import TransientStoreError
from ledger.models import EventClaim

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


class IdempotencyStore:
    def __init__(
        self,
        dynamodb=None,
        table_name: str = WEBHOOK_EVENTS_TABLE,
        lease_seconds: int = EVENT_CLAIM_LEASE_SECONDS,
    ):
        self._dynamodb = dynamodb
        self.table_name = table_name
        self.lease_seconds = lease_seconds

    def _table(self):
        return (self._dynamodb or get_dynamodb()).Table(self.table_name)

    def claim(self, event_id: str, event_type: str, customer_id: Optional[str] = None) -> Optional[EventClaim]:
        """Atomically claim an event for processing.

        Returns:
            EventClaim if this worker should process the event
            None if it was already completed, failed or is being processed
        """
        now = time.time()
        token = str(uuid.uuid4())
        try:
            self._table().put_item(
                Item={
                    "pk": event_id,
                    "sk": event_type,
                    "status": PROCESSING,
                    "claim_token": token,
                    "claimed_at": int(now),
                    "customer_id": customer_id or "unknown",
                    "ttl": int((datetime.now(timezone.utc) + timedelta(days=EVENT_RETENTION_DAYS)).timestamp()),
                },
                ConditionExpression="attribute_not_exists(pk) OR (#status = :processing AND claimed_at < :stale)",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":processing": PROCESSING,
                    ":stale": int(now) - self.lease_seconds,
                },
            )
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code == "ConditionalCheckFailedException":
                return None
            if code in THROTTLING_ERRORS:
                raise TransientStoreError(f"Event claim throttled: {code}") from e
            raise

        return EventClaim(event_id=event_id, event_type=event_type, token=token)

    def get_status(self, event_id: str, event_type: str) -> Optional[str]:
        response = self._table().get_item(Key={"pk": event_id, "sk": event_type}, ConsistentRead=True)
        item = response.get("Item")
        return item.get("status") if item else None

    def mark_completed(self, claim: EventClaim, outcome: str = "applied") -> None:
        """Record successful processing. Raises ClientError so the caller can retry."""
        self._finish(claim, COMPLETED, outcome=outcome)

    def mark_failed(self, claim: EventClaim, error: str) -> None:
        """Record a terminal failure (best-effort)."""
        try:
            self._finish(claim, FAILED, error=error[:1000])
        except ClientError as e:
            logger.error(f"Failed to record terminal failure for event {claim.event_id}: {e}")

    def release(self, claim: EventClaim) -> None:
        """Delete our claim so the next delivery can reprocess the event (best-effort)."""
        try:
            self._table().delete_item(
                Key={"pk": claim.event_id, "sk": claim.event_type},
                ConditionExpression="claim_token = :token",
                ExpressionAttributeValues={":token": claim.token},
            )
            logger.info(f"Released event claim for {claim.event_id} to allow retry")
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"Claim for {claim.event_id} was taken over, not releasing")
                return
            logger.error(f"Failed to release event claim {claim.event_id}: {e}")

    def _finish(self, claim: EventClaim, status: str, **fields) -> None:
        names = {"#status": "status"}
        values = {
            ":status": status,
            ":token": claim.token,
            ":processed_at": datetime.now(timezone.utc).isoformat(),
        }
        sets = ["#status = :status", "processed_at = :processed_at"]
        for name, value in fields.items():
            sets.append(f"#{name} = :{name}")
            names[f"#{name}"] = name
            values[f":{name}"] = value

        self._table().update_item(
            Key={"pk": claim.event_id, "sk": claim.event_type},
            UpdateExpression="SET " + ", ".join(sets),
            ConditionExpression="claim_token = :token",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
