"""
CloudWatch Metrics Helper

Custom metrics for credit grants, clawbacks and webhook outcomes.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from ledger.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "CreditLedger")


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Args:
        metric_name: Name of the metric
        value: Metric value (default: 1.0)
        unit: Unit of measurement (Count, Seconds, ...)
        dimensions: Optional dimensions for filtering metrics

    Example:
        emit_metric("CreditsGranted", 1000, dimensions={"Source": "invoice"})
    """
    try:
        metric_data = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
        }

        if dimensions:
            metric_data["Dimensions"] = [
                {"Name": k, "Value": v} for k, v in dimensions.items()
            ]

        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[metric_data],
        )

        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )

    except Exception as e:
        # Metrics never fail the event
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_webhook_outcome(outcome: str, event_type: str) -> None:
    """Emit one WebhookOutcome datapoint per processed delivery."""
    emit_metric(
        "WebhookOutcome",
        dimensions={
            "Outcome": outcome,
            "EventType": event_type[:250],
        },
    )
