from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

import aiohttp

from floorwatch.core.types import RawEvent
from floorwatch.errors import InvalidRangeError, LedgerRequestError, TransientError

_USER_AGENT = "floorwatch/0.1"
_FRACTION_RE = re.compile(r"\.(\d+)")


class EventSource(Protocol):
    async def get_current_height(self) -> int: ...

    async def fetch_events(
        self, event_type: str, from_height: int, to_height: int
    ) -> list[RawEvent]: ...


def parse_block_timestamp(value: object) -> datetime | None:
    """Parse ledger RFC 3339 timestamps, which may carry nanosecond fractions."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _to_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


class LedgerAdapter:
    """Async client for a ledger REST API exposing sealed height and typed events."""

    MAINNET_BASE_URL = "https://rest-mainnet.onflow.org"
    # Widest start_height..end_height span the events endpoint accepts.
    MAX_EVENT_RANGE_HEIGHTS = 250

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_seconds: float = 4.0,
        session_factory: Callable[[], Any] | None = None,
    ) -> None:
        resolved_base_url = base_url.strip() if isinstance(base_url, str) else ""
        self.base_url = (resolved_base_url or self.MAINNET_BASE_URL).rstrip("/")
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self._session_factory = session_factory

    def _session(self) -> Any:
        if self._session_factory is not None:
            return self._session_factory()
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        return aiohttp.ClientSession(
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": _USER_AGENT},
        )

    async def _get_json_once(self, path: str, params: dict[str, str]) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        async with self._session() as session:
            async with session.get(url, params=params) as response:
                status = int(response.status)
                if status >= 400:
                    raw = (await response.text()).strip()
                    message = f"ledger_http_error:{status}"
                    if raw:
                        message = f"{message}:{raw[:160]}"
                    if status >= 500 or status == 429:
                        raise TransientError(message)
                    raise LedgerRequestError(message)
                return await response.json(content_type=None)

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        try:
            return await asyncio.wait_for(
                self._get_json_once(path, params), timeout=self.timeout_seconds
            )
        except (TransientError, LedgerRequestError):
            raise
        except asyncio.TimeoutError as exc:
            raise TransientError(f"ledger_timeout:{path}") from exc
        except aiohttp.ClientError as exc:
            raise TransientError(f"ledger_network_error:{exc}") from exc
        except ValueError as exc:
            raise TransientError(f"ledger_invalid_json:{exc}") from exc

    async def get_current_height(self) -> int:
        payload = await self._get_json("v1/blocks", {"height": "sealed"})
        block = payload[0] if isinstance(payload, list) and payload else payload
        header = block.get("header") if isinstance(block, dict) else None
        height = _to_int(header.get("height")) if isinstance(header, dict) else None
        if height is None:
            raise TransientError("ledger_invalid_response_payload:sealed_height")
        return height

    async def fetch_events(
        self, event_type: str, from_height: int, to_height: int
    ) -> list[RawEvent]:
        if from_height > to_height:
            raise InvalidRangeError(f"invalid_height_range:{from_height}>{to_height}")
        payload = await self._get_json(
            "v1/events",
            {
                "type": event_type,
                "start_height": str(int(from_height)),
                "end_height": str(int(to_height)),
            },
        )
        if not isinstance(payload, list):
            raise TransientError("ledger_invalid_response_payload:events")
        events: list[RawEvent] = []
        for block in payload:
            if not isinstance(block, dict):
                continue
            height = _to_int(block.get("block_height") or block.get("height"))
            if height is None:
                continue
            block_timestamp = parse_block_timestamp(block.get("block_timestamp"))
            rows = block.get("events") or []
            if not isinstance(rows, list):
                continue
            for row in rows:
                if not isinstance(row, dict):
                    continue
                events.append(
                    RawEvent(
                        event_type=str(row.get("type") or event_type),
                        height=height,
                        payload=row.get("payload"),
                        block_timestamp=block_timestamp,
                        transaction_id=str(row["transaction_id"]) if row.get("transaction_id") else None,
                        event_index=_to_int(row.get("event_index")) or 0,
                    )
                )
        return events
