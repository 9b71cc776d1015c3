import os
import time
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

SPLUNK_REALM = os.getenv("SPLUNK_REALM", "us1")
SPLUNK_ACCESS_TOKEN = os.getenv("SPLUNK_ACCESS_TOKEN", "")


async def send_reconciliation_event(
    payment_method: str,
    reference: str,
    reason: str,
    properties: Optional[dict] = None,
) -> bool:
    """Flag a captured payment that could not be fulfilled for manual follow-up."""
    if not SPLUNK_ACCESS_TOKEN:
        logger.warning(
            f"SPLUNK_ACCESS_TOKEN not set, reconciliation event not sent: {reason}",
            extra={"payment_method": payment_method, "reference": reference},
        )
        return False

    url = f"https://ingest.{SPLUNK_REALM}.signalfx.com/v2/event"

    payload = [{
        "category": "USER_DEFINED",
        "eventType": "payment_reconciliation_required",
        "dimensions": {
            "service": "cryptolotto",
            "environment": os.getenv("DEPLOYMENT_ENV", "production"),
            "payment_method": payment_method,
        },
        "properties": {"reference": reference, "reason": reason, **(properties or {})},
        "timestamp": int(time.time() * 1000),
    }]

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "X-SF-Token": SPLUNK_ACCESS_TOKEN},
            )
    except httpx.HTTPError as e:
        logger.error(f"Error sending reconciliation event: {e}", extra={"reference": reference})
        return False

    if response.status_code in (200, 202):
        logger.info("Sent reconciliation event", extra={"payment_method": payment_method, "reference": reference})
        return True

    logger.warning(f"Failed to send reconciliation event: {response.status_code}", extra={"reference": reference})
    return False
