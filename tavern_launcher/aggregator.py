"""
API key aggregation.

Pools every funded API key on the user's account behind the launcher's /v1
endpoint. Requests are forwarded upstream with keys rotated round-robin;
keys the upstream rejects are quarantined and skipped until every key has
been rejected, at which point the quarantine is cleared and rotation starts
over.
"""

import json
import logging
from dataclasses import dataclass, field

import httpx

from .config import config
from .logs import LogBuffer

logger = logging.getLogger(__name__)

ORDERS_PATH = "/api/general/orders"
QUARANTINE_STATUSES = {401, 403, 429}
BODYLESS_METHODS = {"GET", "HEAD"}


@dataclass
class ApiKey:
    """An upstream credential and its last known balance."""

    key: str
    balance: float = 0.0

    @property
    def masked(self) -> str:
        return f"{self.key[:8]}..."


@dataclass
class UpstreamReply:
    """What the proxy hands back to the caller."""

    status_code: int
    content: bytes
    content_type: str = "application/json"

    @property
    def headers(self) -> dict[str, str]:
        return {"Access-Control-Allow-Origin": "*"}

    @classmethod
    def error(cls, status_code: int, message: str) -> "UpstreamReply":
        return cls(status_code, json.dumps({"error": message}).encode())


@dataclass
class KeyPool:
    """Ordered keys with a quarantine set and a rotation cursor."""

    keys: list[ApiKey] = field(default_factory=list)
    quarantined: set[str] = field(default_factory=set)
    cursor: int = 0

    def load(self, keys: list[ApiKey]):
        self.keys = list(keys)
        self.quarantined.clear()
        self.cursor = 0

    def clear(self):
        self.load([])

    def live(self) -> list[ApiKey]:
        return [k for k in self.keys if k.key not in self.quarantined]

    def next_key(self) -> ApiKey | None:
        """
        Round-robin over the keys that are not quarantined.

        The cursor advances before selecting, so a fresh pool [k1, k2, k3]
        yields k2, k3, k1. It is taken modulo the live subset's current size,
        so it wraps when that subset shrinks. With nothing live the quarantine
        is cleared and the first key is returned.
        """
        live = self.live()
        if not live:
            self.quarantined.clear()
            return self.keys[0] if self.keys else None
        self.cursor = (self.cursor + 1) % len(live)
        return live[self.cursor]

    def quarantine(self, key: ApiKey):
        if any(k.key == key.key for k in self.keys):
            self.quarantined.add(key.key)

    def __len__(self) -> int:
        return len(self.keys)


def parse_orders(payload: dict) -> list[ApiKey] | None:
    """Extract funded keys from an orders response; None if the response is unusable."""
    if not isinstance(payload, dict) or payload.get("code") != 200:
        return None
    orders = payload.get("msg")
    if not isinstance(orders, list) or not orders:
        return None

    keys = []
    for order in orders:
        if not isinstance(order, dict) or not order.get("api_key"):
            continue
        try:
            balance = float(order.get("balance") or 0)
        except (TypeError, ValueError):
            balance = 0.0
        if balance > 0:
            keys.append(ApiKey(key=str(order["api_key"]), balance=balance))
    return keys


class ApiAggregator:
    """Key pool plus the forwarding proxy."""

    def __init__(
        self,
        logs: LogBuffer,
        account_url: str = None,
        upstream_url: str = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.logs = logs
        self.account_url = (account_url or config.account_api_url).rstrip("/")
        self.upstream_url = (upstream_url or config.upstream_api_url).rstrip("/")
        self._transport = transport
        self.pool = KeyPool()
        self.running = False
        self._token: str | None = None
        self._user_info: dict | None = None

    async def start(self, token: str, user_info: dict) -> tuple[bool, str]:
        """Fetch the account's funded keys and start serving."""
        if self.running and len(self.pool) > 0:
            return True, "Aggregation is already running"

        user_data = {
            "userId": user_info.get("userId") or user_info.get("uid"),
            "userEmail": user_info.get("userEmail"),
            "password": user_info.get("password"),
            "invitationCode": user_info.get("invitationCode"),
        }
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self.account_url}{ORDERS_PATH}",
                    headers={"Authorization": f"Bearer {token}"},
                    json={"userData": json.dumps(user_data), "page": 1},
                    timeout=config.account_timeout,
                )
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch API keys: {e}")
            return False, f"Failed to fetch API keys: {e}"

        keys = parse_orders(payload)
        if keys is None:
            return False, "Failed to fetch API keys"
        if not keys:
            return False, "No usable API keys (insufficient balance)"

        self.pool.load(keys)
        self.running = True
        self._token = token
        self._user_info = user_info
        self.logs.add(f"API aggregation started with {len(keys)} key(s)")
        return True, "Aggregation started"

    def stop(self) -> tuple[bool, str]:
        if not self.running:
            return True, "Aggregation is not running"
        self.running = False
        self.pool.clear()
        self._token = None
        self._user_info = None
        self.logs.add("API aggregation stopped")
        return True, "Aggregation stopped"

    def status(self) -> dict:
        return {
            "running": self.running,
            "port": config.port,
            "keys_count": len(self.pool),
            "quarantined_count": len(self.pool.quarantined),
            "endpoint": "/v1" if self.running else None,
        }

    async def proxy(self, method: str, path: str, body: bytes = b"", content_type: str = None) -> UpstreamReply:
        """Forward one request upstream with the next key in rotation."""
        if not self.running or len(self.pool) == 0:
            return UpstreamReply.error(503, "API aggregation is not running")

        key = self.pool.next_key()
        if key is None:
            return UpstreamReply.error(500, "No API key available")

        headers = {"Authorization": f"Bearer {key.key}"}
        if content_type:
            headers["Content-Type"] = content_type
        method = method.upper()

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.upstream_url}{path}",
                    headers=headers,
                    content=None if method in BODYLESS_METHODS else body,
                    timeout=config.upstream_timeout,
                )
        except httpx.HTTPError as e:
            self.pool.quarantine(key)
            logger.error(f"Upstream request with key {key.masked} failed: {e}")
            return UpstreamReply.error(502, f"Proxy request failed: {e}")

        if response.status_code in QUARANTINE_STATUSES:
            self.pool.quarantine(key)
            self.logs.add(f"API key {key.masked} rejected ({response.status_code}), skipping it", "error")

        return UpstreamReply(
            status_code=response.status_code,
            content=response.content,
            content_type=response.headers.get("content-type") or "application/json",
        )
