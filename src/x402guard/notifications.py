"""Owner notifications for payments waiting on approval."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from .account import PendingPayment

logger = logging.getLogger(__name__)


class ApprovalNotifier(Protocol):
    def payment_queued(self, pending: PendingPayment) -> None: ...


class WebhookNotifier:
    """POSTs a JSON notice to the owner's webhook when a payment is queued.

    Delivery is best effort: a failed POST is logged and never affects
    account state, which has already been committed.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client

    def payment_queued(self, pending: PendingPayment) -> None:
        body = {
            "event": "payment_queued",
            "account_id": pending.account_id,
            "payment_id": pending.payment_id,
            "to": pending.to,
            "amount": str(pending.amount),
            "endpoint_id": pending.endpoint_id,
            "expiry": pending.expiry,
        }
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=body, timeout=self.timeout)
            else:
                response = httpx.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Failed to deliver approval notice for %s/%s to %s: %s",
                pending.account_id, pending.payment_id, self.url, exc,
            )
            return
        logger.info("Approval notice delivered for %s/%s", pending.account_id, pending.payment_id)
