from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

import requests

from domain.errors import RateLimitedError


class MarketDataAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


@dataclass(frozen=True)
class MarketQuote:
    coin_id: str
    symbol: str
    name: str
    current_price: Decimal
    last_updated: datetime | None


@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    price: Decimal


class CoinGeckoClient:
    """Minimal CoinGecko API client covering the endpoints needed by the ledger."""

    def __init__(
        self,
        *,
        base_url: str = "https://api.coingecko.com/api/v3",
        api_key: str | None = None,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_markets(
        self,
        symbols: Iterable[str],
        *,
        vs_currency: str = "usd",
        page: int = 1,
        per_page: int = 250,
    ) -> list[MarketQuote]:
        wanted = sorted({symbol.lower() for symbol in symbols if symbol})
        if not wanted:
            msg = "at least one symbol must be provided"
            raise ValueError(msg)
        if page <= 0 or per_page <= 0:
            msg = "page and per_page must be > 0"
            raise ValueError(msg)

        params = {
            "vs_currency": vs_currency,
            "symbols": ",".join(wanted),
            "page": page,
            "per_page": per_page,
        }
        payload = self._request("GET", "/coins/markets", params=params)
        if not isinstance(payload, list):
            raise MarketDataAPIError("Market data API returned unexpected payload type", payload=payload)
        return [self._parse_market_entry(entry) for entry in payload if entry.get("current_price") is not None]

    def get_market_chart(self, coin_id: str, *, days: int, vs_currency: str = "usd") -> list[PricePoint]:
        if not coin_id:
            msg = "coin_id must be provided"
            raise ValueError(msg)
        if days <= 0:
            msg = "days must be > 0"
            raise ValueError(msg)

        params = {"vs_currency": vs_currency, "days": days}
        payload = self._request("GET", f"/coins/{coin_id}/market_chart", params=params)
        if not isinstance(payload, dict):
            raise MarketDataAPIError("Market data API returned unexpected payload type", payload=payload)

        points: list[PricePoint] = []
        for entry in payload.get("prices") or []:
            if not isinstance(entry, list) or len(entry) < 2 or entry[1] is None:
                raise MarketDataAPIError("Market chart entry is malformed", payload=entry)
            timestamp = datetime.fromtimestamp(int(entry[0]) / 1000, tz=timezone.utc)
            points.append(PricePoint(timestamp=timestamp, price=Decimal(str(entry[1]))))
        return points

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        try:
            response = self._session.request(method, url, params=params, timeout=self.timeout, headers=headers)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            if status_code == 429:
                raise RateLimitedError(retry_after=self._retry_after(resp)) from exc
            error_payload: Any | None = None
            message = "Market data API request failed"
            if resp is not None:
                try:
                    error_payload = resp.json()
                    status = error_payload.get("status") if isinstance(error_payload, dict) else None
                    if isinstance(status, dict) and status.get("error_message"):
                        message = status["error_message"]
                except ValueError:
                    error_payload = resp.text
            raise MarketDataAPIError(message, status_code=status_code, payload=error_payload) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise MarketDataAPIError("Market data API request failed", status_code=status_code) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise MarketDataAPIError("Market data API returned invalid JSON", payload=response.text) from exc

    @staticmethod
    def _retry_after(response: requests.Response | None) -> float | None:
        if response is None:
            return None
        raw = response.headers.get("Retry-After") if response.headers else None
        try:
            return float(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_market_entry(entry: dict[str, Any]) -> MarketQuote:
        coin_id = entry.get("id")
        symbol = entry.get("symbol")
        if not coin_id or not symbol:
            raise MarketDataAPIError("Market entry missing id or symbol", payload=entry)
        updated_raw = entry.get("last_updated")
        last_updated = datetime.fromisoformat(updated_raw.replace("Z", "+00:00")) if updated_raw else None
        return MarketQuote(
            coin_id=str(coin_id),
            symbol=str(symbol).upper(),
            name=str(entry.get("name") or symbol),
            current_price=Decimal(str(entry["current_price"])),
            last_updated=last_updated,
        )


__all__ = ["CoinGeckoClient", "MarketDataAPIError", "MarketQuote", "PricePoint"]
