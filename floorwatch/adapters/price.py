from __future__ import annotations

import urllib.parse
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import aiohttp

from floorwatch.core.deals import to_decimal
from floorwatch.errors import TransientError

_FLOOR_KEYS = ("lowest_ask", "lowestAsk", "low_ask", "floor", "floor_price", "floorPrice")


def extract_floor_price(payload: Any) -> Decimal | None:
    if isinstance(payload, list):
        payload = payload[0] if payload and isinstance(payload[0], dict) else None
    if not isinstance(payload, dict):
        return None
    for key in _FLOOR_KEYS:
        price = to_decimal(payload.get(key))
        if price is not None and price > 0:
            return price
    # Some providers nest the quote under "data"/"edition".
    for nested_key in ("data", "edition"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict | list):
            price = extract_floor_price(nested)
            if price is not None:
                return price
    return None


class EditionFloorAdapter:
    """Reads the lowest ask for an edition from a JSON price endpoint."""

    DEFAULT_URL_TEMPLATE = "https://api.floorwatch.local/v1/editions/{group_id}/floor"

    def __init__(
        self,
        *,
        url_template: str = DEFAULT_URL_TEMPLATE,
        timeout_seconds: float = 4.0,
        session_factory: Callable[[], Any] | None = None,
    ) -> None:
        if "{group_id}" not in url_template:
            raise ValueError("floor url_template must contain {group_id}")
        self.url_template = url_template
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self._session_factory = session_factory

    def build_url(self, group_id: str) -> str:
        return self.url_template.format(group_id=urllib.parse.quote(str(group_id).strip(), safe=""))

    async def get_floor_price(self, group_id: str) -> Decimal | None:
        if self._session_factory is None:
            session_cm = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        else:
            session_cm = self._session_factory()

        try:
            async with session_cm as session:
                async with session.get(self.build_url(group_id)) as response:
                    if response.status == 404:
                        return None
                    if response.status >= 400:
                        raise TransientError(f"floor_http_error:{response.status}")
                    payload = await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise TransientError(f"floor_network_error:{exc}") from exc

        return extract_floor_price(payload)
