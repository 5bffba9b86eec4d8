"""In-memory Open Banking server and helpers for httpx.MockTransport."""

from typing import Dict, List, Optional, Set
from urllib.parse import parse_qs

import httpx


API_PREFIX = "/open-banking/v3.1/aisp"


def ob_transaction(
    transaction_id: Optional[str],
    amount: str,
    indicator: str = "Debit",
    booked: str = "2024-01-15T10:30:00+00:00",
    information: Optional[str] = "Coffee Shop",
    **extra
) -> Dict:
    record = {
        "AccountId": extra.pop("account_id", "acc-1"),
        "CreditDebitIndicator": indicator,
        "Status": "Booked",
        "BookingDateTime": booked,
        "Amount": {"Amount": amount, "Currency": "GBP"},
    }
    if transaction_id is not None:
        record["TransactionId"] = transaction_id
    if information is not None:
        record["TransactionInformation"] = information
    record.update(extra)
    return record


def ob_account(account_id: str, nickname: Optional[str] = None, subtype: str = "CurrentAccount") -> Dict:
    return {
        "AccountId": account_id,
        "Currency": "GBP",
        "AccountType": "Personal",
        "AccountSubType": subtype,
        "Nickname": nickname or f"Account {account_id}",
        "Account": [{
            "SchemeName": "UK.OBIE.SortCodeAccountNumber",
            "Identification": f"40400{account_id[-1]}12345678",
            "Name": "Mr A Customer",
        }],
    }


class FakeBank:
    """
    Minimal AISP + token endpoint.

    Every request is recorded in .requests. Status attributes switch the
    individual endpoints into failure modes.
    """

    def __init__(self):
        self.accounts: List[Dict] = [ob_account("acc-1", "Main Account")]
        self.balances: Dict[str, List[Dict]] = {
            "acc-1": [{
                "AccountId": "acc-1",
                "CreditDebitIndicator": "Credit",
                "Type": "InterimAvailable",
                "DateTime": "2024-01-20T00:00:00+00:00",
                "Amount": {"Amount": "1520.40", "Currency": "GBP"},
            }]
        }
        self.transactions: Dict[str, List[Dict]] = {
            "acc-1": [
                ob_transaction("tx-1", "12.50", "Debit", information="Tesco Supermarket"),
                ob_transaction("tx-2", "2500.00", "Credit", information="Salary ACME Ltd"),
                ob_transaction("tx-3", "7.20", "Debit", information="Uber trip"),
            ]
        }
        self.token_status = 200
        self.refresh_status = 200
        self.test_status = 200
        self.revoke_status = 200
        self.accounts_status = 200
        self.failing_transaction_accounts: Set[str] = set()
        self.rotate_refresh_token = True
        self.requests: List[httpx.Request] = []
        self.issued = 0
        self.refresh_calls = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def resource_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(API_PREFIX)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/token/revoke":
            return httpx.Response(self.revoke_status, json={} if self.revoke_status < 400 else {"error": "server_error"})

        if path == "/token":
            return self._token(request)

        if not path.startswith(API_PREFIX):
            return httpx.Response(404, json={"message": "Not found"})

        resource = path[len(API_PREFIX):].strip("/").split("/")

        if resource == ["accounts"]:
            if request.method == "HEAD":
                return httpx.Response(self.test_status)
            if self.accounts_status != 200:
                return httpx.Response(self.accounts_status, json=self._ob_error("UK.OBIE.Resource.Unauthorized"))
            return httpx.Response(200, json={"Data": {"Account": self.accounts}, "Links": {}, "Meta": {}})

        if len(resource) == 3 and resource[2] == "balances":
            return httpx.Response(200, json={"Data": {"Balance": self.balances.get(resource[1], [])}})

        if len(resource) == 3 and resource[2] == "transactions":
            account_id = resource[1]
            if account_id in self.failing_transaction_accounts:
                return httpx.Response(403, json=self._ob_error("UK.OBIE.Resource.ConsentMismatch"))
            return httpx.Response(200, json={"Data": {"Transaction": self.transactions.get(account_id, [])}})

        return httpx.Response(404, json={"message": "Not found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
            if self.refresh_status != 200:
                return httpx.Response(
                    self.refresh_status,
                    json={"error": "invalid_grant", "error_description": "Refresh token revoked"}
                )
            self.issued += 1
            body = {"access_token": f"access-{self.issued}", "token_type": "Bearer", "expires_in": 3600}
            if self.rotate_refresh_token:
                body["refresh_token"] = f"refresh-{self.issued}"
            return httpx.Response(200, json=body)

        if self.token_status != 200:
            return httpx.Response(
                self.token_status,
                json={"error": "invalid_grant", "error_description": "Authorization code expired"}
            )
        self.issued += 1
        return httpx.Response(200, json={
            "access_token": f"access-{self.issued}",
            "refresh_token": f"refresh-{self.issued}",
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "accounts",
        })

    @staticmethod
    def _ob_error(code: str) -> Dict:
        return {
            "Code": "403 Forbidden",
            "Message": "Request rejected",
            "Errors": [{"ErrorCode": code, "Message": "Consent does not cover this resource", "Path": "AccountId"}],
        }


class RecordingSleep:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
