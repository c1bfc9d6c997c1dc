# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - API Client

HTTP client for the InstantWin REST API (instantwin.server).
"""

from typing import Any, List, Optional

import requests


class APIError(Exception):
    """API call failed."""
    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"API Error {status} ({code}): {message}")


class APIClient:
    """
    Client for the InstantWin API.

    Usage:
        api = APIClient("http://127.0.0.1:8090")
        ticket = api.purchase(1, "0xBuyer...", 42, 100)
        api.resolve(ticket["ticket_id"], signature_hex)
    """

    def __init__(self, url: str = "http://127.0.0.1:8090", timeout: int = 30):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def _call(self, method: str, path: str, payload: Optional[dict] = None,
              params: Optional[dict] = None) -> Any:
        try:
            response = requests.request(
                method,
                f"{self.url}{path}",
                json=payload,
                params=params,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise APIError(-1, "connection_failed", str(e))

        try:
            result = response.json()
        except ValueError:
            raise APIError(response.status_code, "invalid_response", response.text[:200])

        if response.status_code >= 400:
            raise APIError(response.status_code,
                           result.get("error", "unknown"),
                           result.get("message", ""))
        return result

    # ═══════════════════════════════════════════════════════════════════════
    # ISSUERS
    # ═══════════════════════════════════════════════════════════════════════

    def register_issuer(self, public_key: str, ticket_price: int, prize_amount: int,
                        odds_denominator: int, timeout_window: int, deposit: int,
                        controller: str = "") -> dict:
        return self._call("POST", "/api/issuers", {
            "public_key": public_key,
            "ticket_price": ticket_price,
            "prize_amount": prize_amount,
            "odds_denominator": str(odds_denominator),
            "timeout_window": timeout_window,
            "deposit": deposit,
            "controller": controller,
        })

    def list_issuers(self) -> List[dict]:
        return self._call("GET", "/api/issuers")["issuers"]

    def get_issuer(self, issuer_id: int) -> dict:
        return self._call("GET", f"/api/issuers/{issuer_id}")

    def withdraw(self, issuer_id: int, amount: int, caller: str) -> dict:
        return self._call("POST", f"/api/issuers/{issuer_id}/withdraw",
                          {"amount": amount, "caller": caller})

    def list_tickets(self, issuer_id: int, status: str = "", buyer: str = "") -> List[dict]:
        params = {}
        if status:
            params["status"] = status
        if buyer:
            params["buyer"] = buyer
        return self._call("GET", f"/api/issuers/{issuer_id}/tickets", params=params)["tickets"]

    # ═══════════════════════════════════════════════════════════════════════
    # TICKETS
    # ═══════════════════════════════════════════════════════════════════════

    def purchase(self, issuer_id: int, buyer: str, ticket_number: int, payment: int) -> dict:
        return self._call("POST", "/api/tickets", {
            "issuer_id": issuer_id,
            "buyer": buyer,
            "ticket_number": str(ticket_number),
            "payment": payment,
        })

    def get_ticket(self, ticket_id: str) -> dict:
        return self._call("GET", f"/api/tickets/{ticket_id}")

    def resolve(self, ticket_id: str, signature: str) -> dict:
        return self._call("POST", f"/api/tickets/{ticket_id}/resolve", {"signature": signature})

    def refund(self, ticket_id: str) -> dict:
        return self._call("POST", f"/api/tickets/{ticket_id}/refund", {})
