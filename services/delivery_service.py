"""
Outbound delivery transport. Posts job results to the integration target.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

RESPONSE_BODY_LIMIT = 2000


@dataclass
class DeliveryResult:
    ok: bool
    status_code: Optional[int] = None
    body: Optional[str] = None
    error: Optional[str] = None


class HttpDeliveryTransport:
    """Blocking transport built on requests; run it via asyncio.to_thread."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def deliver(
        self,
        target_url: str,
        method: str,
        headers: Optional[Dict[str, str]],
        payload: Any,
        timeout: float,
    ) -> DeliveryResult:
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        try:
            resp = self.session.request(
                method.upper(), target_url, json=payload, headers=request_headers, timeout=timeout
            )
        except requests.RequestException as e:
            logger.warning(f"[DELIVERY] {method} {target_url} failed: {e}")
            return DeliveryResult(ok=False, error=str(e))

        body = resp.text[:RESPONSE_BODY_LIMIT] if resp.text else None
        if not resp.ok:
            logger.warning(f"[DELIVERY] {method} {target_url} returned HTTP {resp.status_code}")
            return DeliveryResult(ok=False, status_code=resp.status_code, body=body,
                                  error=f"HTTP {resp.status_code}")
        return DeliveryResult(ok=True, status_code=resp.status_code, body=body)
