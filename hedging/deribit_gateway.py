"""Deribit JSON-RPC over HTTP adapter for the market data gateway."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from http.client import HTTPException
import json
import logging
from typing import Any, Callable, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.db.enums import OptionSide, OrderSide, OrderType
from hedging.common import HedgerClock, to_decimal
from hedging.config import AccountConfig
from hedging.errors import UpstreamUnavailable
from hedging.gateway_contract import Credentials, Instrument, OpenOrder, OrderResult, Position, Quote, TickSizeStep

logger = logging.getLogger(__name__)

Requester = Callable[[str, dict[str, Any], Optional[str]], Any]

_READ_ATTEMPTS = 3


class DeribitGateway:
    """Deribit v2 adapter; every call carries a bounded timeout.

    Public reads are retried a few times; order placement is attempted once
    because it is not idempotent.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 10.0,
        requester: Optional[Requester] = None,
        clock: HedgerClock | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._requester = requester
        self._clock = clock or HedgerClock()
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    def _http_get(self, path: str, params: dict[str, Any], access_token: Optional[str]) -> Any:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        request = Request(
            url=f"{self._base_url}/{path}?{urlencode(params)}",
            headers=headers,
            method="GET",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            # Deribit reports JSON-RPC errors with a 4xx status and a JSON body.
            try:
                return json.loads(exc.read().decode("utf-8"))
            except (ValueError, OSError):
                raise UpstreamUnavailable(f"{path}: HTTP {exc.code}") from exc
        except (URLError, HTTPException, OSError, ValueError) as exc:
            # Dropped connections surface as OSError or HTTPException rather than URLError.
            raise UpstreamUnavailable(f"{path}: {exc}") from exc

    def _call(
        self,
        path: str,
        params: dict[str, Any],
        *,
        access_token: Optional[str] = None,
        attempts: int = 1,
    ) -> Any:
        last_error = UpstreamUnavailable(f"{path}: no attempt made")
        for attempt in range(1, attempts + 1):
            self._call_count += 1
            try:
                if self._requester is not None:
                    envelope = self._requester(path, params, access_token)
                else:
                    envelope = self._http_get(path, params, access_token)
            except UpstreamUnavailable as exc:
                last_error = exc
                logger.warning("Venue call %s failed (attempt %s/%s): %s", path, attempt, attempts, exc)
                continue
            if not isinstance(envelope, dict):
                raise UpstreamUnavailable(f"{path}: malformed response")
            error = envelope.get("error")
            if error:
                message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
                code = error.get("code") if isinstance(error, dict) else None
                raise UpstreamUnavailable(f"{path}: venue error {code}: {message}")
            if "result" not in envelope:
                raise UpstreamUnavailable(f"{path}: response without result")
            return envelope["result"]
        raise last_error

    # ---- parsing ------------------------------------------------------

    @staticmethod
    def _optional_decimal(value: Any) -> Optional[Decimal]:
        if value is None:
            return None
        return to_decimal(value)

    @staticmethod
    def _parse_instrument(row: dict[str, Any]) -> Instrument:
        option_type = row.get("option_type")
        expiration_ms = row.get("expiration_timestamp")
        return Instrument(
            instrument_name=str(row["instrument_name"]),
            currency=str(row.get("settlement_currency") or row.get("quote_currency") or row.get("base_currency")),
            base_currency=str(row.get("base_currency", "")),
            kind=str(row.get("kind", "option")),
            option_type=OptionSide(option_type) if option_type in ("call", "put") else None,
            strike=None if row.get("strike") is None else to_decimal(row["strike"]),
            expiration=None
            if expiration_ms is None
            else datetime.fromtimestamp(int(expiration_ms) / 1000, tz=timezone.utc),
            tick_size=to_decimal(row["tick_size"]),
            min_trade_amount=to_decimal(row["min_trade_amount"]),
            tick_size_steps=tuple(
                TickSizeStep(above_price=to_decimal(step["above_price"]), tick_size=to_decimal(step["tick_size"]))
                for step in row.get("tick_size_steps") or ()
            ),
            is_active=bool(row.get("is_active", True)),
        )

    # ---- gateway protocol --------------------------------------------

    def authenticate(self, account: AccountConfig) -> Credentials:
        params: dict[str, Any] = {
            "grant_type": account.grant_type,
            "client_id": account.client_id,
            "client_secret": account.client_secret,
        }
        if account.scope:
            params["scope"] = account.scope
        result = self._call("public/auth", params)
        expires_in = int(result.get("expires_in", 0))
        logger.info("Authenticated account=%s expires_in=%ss", account.name, expires_in)
        return Credentials(
            account_id=account.name,
            access_token=str(result["access_token"]),
            expires_at=self._clock.now_utc() + timedelta(seconds=expires_in),
            scope=result.get("scope"),
            extra={"refresh_token": result.get("refresh_token")},
        )

    def list_instruments(self, currency: str, kind: str = "option", include_expired: bool = False) -> Sequence[Instrument]:
        result = self._call(
            "public/get_instruments",
            {"currency": currency, "kind": kind, "expired": "true" if include_expired else "false"},
            attempts=_READ_ATTEMPTS,
        )
        return [self._parse_instrument(row) for row in result]

    def get_instrument(self, instrument_name: str) -> Instrument:
        result = self._call("public/get_instrument", {"instrument_name": instrument_name}, attempts=_READ_ATTEMPTS)
        return self._parse_instrument(result)

    def get_quote(self, instrument_name: str) -> Quote:
        result = self._call("public/ticker", {"instrument_name": instrument_name}, attempts=_READ_ATTEMPTS)
        greeks = result.get("greeks") or {}
        return Quote(
            instrument_name=instrument_name,
            best_bid=self._optional_decimal(result.get("best_bid_price")),
            best_ask=self._optional_decimal(result.get("best_ask_price")),
            mark_price=self._optional_decimal(result.get("mark_price")),
            delta=greeks.get("delta"),
            gamma=greeks.get("gamma"),
            theta=greeks.get("theta"),
            vega=greeks.get("vega"),
        )

    def get_positions(self, credentials: Credentials, currency: str = "any", kind: str = "option") -> Sequence[Position]:
        result = self._call(
            "private/get_positions",
            {"currency": currency, "kind": kind},
            access_token=credentials.access_token,
            attempts=_READ_ATTEMPTS,
        )
        return [
            Position(
                instrument_name=str(row["instrument_name"]),
                size=to_decimal(row.get("size", 0)),
                delta=None if row.get("delta") is None else float(row["delta"]),
                mark_price=self._optional_decimal(row.get("mark_price")),
                kind=str(row.get("kind", kind)),
                direction=row.get("direction"),
            )
            for row in result
        ]

    def get_open_orders(self, credentials: Credentials, currency: str = "any", kind: str = "option") -> Sequence[OpenOrder]:
        if currency == "any":
            path, params = "private/get_open_orders", {"kind": kind}
        else:
            path, params = "private/get_open_orders_by_currency", {"currency": currency, "kind": kind}
        result = self._call(path, params, access_token=credentials.access_token, attempts=_READ_ATTEMPTS)
        return [
            OpenOrder(
                order_id=str(row["order_id"]),
                instrument_name=str(row["instrument_name"]),
                direction=OrderSide(row["direction"]),
                amount=to_decimal(row.get("amount", 0)),
                filled_amount=to_decimal(row.get("filled_amount", 0)),
                price=self._optional_decimal(row.get("price")) if row.get("price") != "market_price" else None,
                order_state=str(row.get("order_state", "open")),
                label=row.get("label") or None,
            )
            for row in result
        ]

    def place_order(
        self,
        credentials: Credentials,
        instrument_name: str,
        side: OrderSide,
        amount: Decimal,
        order_type: OrderType = OrderType.LIMIT,
        price: Decimal | None = None,
        label: str | None = None,
    ) -> OrderResult:
        params: dict[str, Any] = {
            "instrument_name": instrument_name,
            "amount": format(amount, "f"),
            "type": order_type.value,
        }
        if order_type == OrderType.LIMIT:
            if price is None:
                raise ValueError("limit orders require a price")
            params["price"] = format(price, "f")
        if label:
            params["label"] = label[:64]
        result = self._call(f"private/{side.value}", params, access_token=credentials.access_token)
        order = result.get("order", result)
        logger.info(
            "Venue accepted %s %s %s order_id=%s state=%s",
            side.value,
            amount,
            instrument_name,
            order.get("order_id"),
            order.get("order_state"),
        )
        return OrderResult(
            order_id=str(order["order_id"]),
            instrument_name=str(order.get("instrument_name", instrument_name)),
            direction=OrderSide(order.get("direction", side.value)),
            amount=to_decimal(order.get("amount", amount)),
            order_state=str(order.get("order_state", "open")),
            price=self._optional_decimal(order.get("price")) if order.get("price") != "market_price" else None,
            filled_amount=to_decimal(order.get("filled_amount", 0)),
        )
