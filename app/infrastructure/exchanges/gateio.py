"""
GateioFuturesClient - Gate.io v4 Futures Integration

REST client for the futures endpoints the position manager uses:
- Contract details (public)
- Positions and leverage
- Market entry orders
- Price-triggered (conditional) orders

Requests are signed with HMAC-SHA512 over
``method\\npath\\nquery\\nsha512(body)\\ntimestamp``.
"""

import asyncio
import hashlib
import hmac
import json
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from app.infrastructure.exchanges.base import ExchangeClient
from app.infrastructure.exchanges.schemas import (
    ContractSpec,
    ExchangePosition,
    PlacedOrder,
    PositionDirection,
    TriggerOrder,
    TriggerOrderRequest,
    TriggerOrderStatus,
    TriggerRule,
    timestamp_to_datetime,
)
from app.shared.exceptions import (
    ExchangeAuthenticationError,
    ExchangeConnectionError,
    ExchangeError,
    ExchangeRateLimitError,
    MalformedResponseError,
    OrderNotFoundError,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)


class GateioFuturesClient(ExchangeClient):
    """
    Gate.io futures client bound to one credential set and settle currency.

    Usage:
        client = GateioFuturesClient(
            credential_ref="default",
            settle="usdt",
            credentials={"api_key": "...", "api_secret": "..."},
        )
        positions = await client.list_positions()
    """

    BASE_URL = "https://api.gateio.ws"
    API_PREFIX = "/api/v4"

    AUTH_ERROR_LABELS = {"INVALID_KEY", "INVALID_SIGNATURE", "MISSING_REQUIRED_HEADER", "FORBIDDEN"}
    NOT_FOUND_LABELS = {"ORDER_NOT_FOUND", "AUTO_ORDER_NOT_FOUND", "NOT_FOUND"}
    RATE_LIMIT_LABELS = {"TOO_MANY_REQUESTS"}

    def __init__(
        self,
        credential_ref: str,
        settle: str,
        credentials: Dict[str, str],
        base_url: Optional[str] = None,
        timeout_seconds: float = 10,
        **kwargs
    ):
        super().__init__(credential_ref, settle, **kwargs)

        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.api_key = credentials.get("api_key", "")
        self.api_secret = credentials.get("api_secret", "")

        if not self.api_key or not self.api_secret:
            raise ExchangeAuthenticationError(
                f"Gate.io API key and secret are required for '{credential_ref}'"
            )

        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.session: Optional[aiohttp.ClientSession] = None

        logger.info(
            f"Initialized GateioFuturesClient: "
            f"credential_ref={credential_ref}, settle={settle}"
        )

    # ==================== TRANSPORT ====================

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
            )
        return self.session

    async def close(self) -> None:
        """Close HTTP session"""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _sign(
        self,
        method: str,
        path: str,
        query_string: str,
        body: str,
        timestamp: str,
    ) -> str:
        """
        Generate the HMAC-SHA512 request signature.

        Args:
            method: HTTP method
            path: Full request path including the API prefix
            query_string: URL-encoded query string without "?"
            body: Serialized JSON body ("" when there is none)
            timestamp: Unix seconds as a string

        Returns:
            Hex signature string
        """
        hashed_body = hashlib.sha512(body.encode()).hexdigest()
        payload = f"{method}\n{path}\n{query_string}\n{hashed_body}\n{timestamp}"
        return hmac.new(
            self.api_secret.encode(),
            payload.encode(),
            hashlib.sha512,
        ).hexdigest()

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
        signed: bool = True,
        contract: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Any:
        """
        Make an API request to Gate.io.

        Returns:
            Decoded JSON, or None for empty responses

        Raises:
            ExchangeConnectionError: Network failure or timeout
            ExchangeAuthenticationError: Invalid credentials
            ExchangeRateLimitError: Rate limit exceeded
            OrderNotFoundError: Referenced order does not exist
            ExchangeError: Any other API error
        """
        session = await self._get_session()
        path = f"{self.API_PREFIX}{endpoint}"
        query_string = urlencode(params or {})
        body_string = json.dumps(body) if body is not None else ""
        url = f"{self.base_url}{path}"
        if query_string:
            url = f"{url}?{query_string}"

        headers: Dict[str, str] = {}
        if signed:
            timestamp = str(time.time())
            headers = {
                "KEY": self.api_key,
                "Timestamp": timestamp,
                "SIGN": self._sign(method, path, query_string, body_string, timestamp),
            }

        try:
            async with session.request(
                method,
                url,
                data=body_string or None,
                headers=headers,
            ) as response:
                return await self._handle_response(
                    response, method, endpoint, contract, order_id
                )
        except aiohttp.ClientError as e:
            logger.error(f"Gate.io request failed: {method} {endpoint}: {str(e)}")
            raise ExchangeConnectionError(
                f"Failed to connect to Gate.io: {str(e)}",
                contract=contract,
                order_id=order_id,
            )
        except asyncio.TimeoutError:
            logger.error(f"Gate.io request timed out: {method} {endpoint}")
            raise ExchangeConnectionError(
                "Gate.io request timed out",
                contract=contract,
                order_id=order_id,
            )

    async def _handle_response(
        self,
        response: aiohttp.ClientResponse,
        method: str,
        endpoint: str,
        contract: Optional[str],
        order_id: Optional[str],
    ) -> Any:
        """Decode a response and map API errors onto exchange exceptions."""
        text = await response.text()

        if 200 <= response.status < 300:
            if response.status == 204 or not text:
                return None
            try:
                return json.loads(text)
            except ValueError:
                raise MalformedResponseError(
                    f"Gate.io returned invalid JSON on {method} {endpoint}",
                    contract=contract,
                    order_id=order_id,
                )

        try:
            data = json.loads(text) if text else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        label = data.get("label", "")
        detail = data.get("message") or text or "Unknown error"
        message = f"Gate.io API error {response.status} on {method} {endpoint}: {label} {detail}".strip()

        context = {"contract": contract, "order_id": order_id}
        if response.status == 401 or label in self.AUTH_ERROR_LABELS:
            raise ExchangeAuthenticationError(message, **context)
        if response.status == 429 or label in self.RATE_LIMIT_LABELS:
            raise ExchangeRateLimitError(message, **context)
        if response.status == 404 or label in self.NOT_FOUND_LABELS:
            raise OrderNotFoundError(message, **context)

        logger.error(message)
        raise ExchangeError(message, **context)

    # ==================== PARSING ====================

    @staticmethod
    def _require(payload: Any, field: str, what: str) -> Any:
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Expected an object for {what}")
        value = payload.get(field)
        if value in (None, ""):
            raise MalformedResponseError(f"Missing '{field}' in {what}")
        return value

    @staticmethod
    def _decimal(value: Any, field: str, what: str) -> Decimal:
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise MalformedResponseError(f"Invalid '{field}' in {what}: {value!r}")

    def _parse_trigger_order(self, payload: Dict[str, Any]) -> TriggerOrder:
        what = "price-triggered order"
        order_id = self._require(payload, "id", what)
        initial = self._require(payload, "initial", what)
        trigger = self._require(payload, "trigger", what)
        contract = str(self._require(initial, "contract", what)).strip()
        price = self._decimal(self._require(trigger, "price", what), "trigger.price", what)
        rule = trigger.get("rule")

        return TriggerOrder(
            id=str(order_id),
            contract=contract,
            status=TriggerOrderStatus(payload.get("status", "open")),
            trigger_price=price,
            rule=TriggerRule(int(rule)) if rule else None,
            size=int(initial.get("size") or 0),
            finish_as=payload.get("finish_as") or None,
            finish_time=timestamp_to_datetime(payload.get("finish_time")),
        )

    def _parse_placed_order(self, payload: Any, contract: str) -> PlacedOrder:
        what = f"order response for {contract}"
        order_id = self._require(payload, "id", what)
        fill_price = payload.get("fill_price")
        return PlacedOrder(
            id=str(order_id),
            contract=payload.get("contract") or contract,
            size=int(payload.get("size") or 0),
            fill_price=self._decimal(fill_price, "fill_price", what) if fill_price not in (None, "") else None,
            status=payload.get("status"),
        )

    # ==================== MARKET DATA ====================

    async def get_contract_spec(self, contract: str) -> ContractSpec:
        data = await self._request(
            "GET",
            f"/futures/{self.settle}/contracts/{contract}",
            signed=False,
            contract=contract,
        )
        what = f"contract {contract}"
        # tick_size is not always present; order_price_round carries the same value
        tick = data.get("tick_size") if isinstance(data, dict) else None
        if tick in (None, ""):
            tick = self._require(data, "order_price_round", what)

        return ContractSpec(
            contract=contract,
            last_price=self._decimal(self._require(data, "last_price", what), "last_price", what),
            quanto_multiplier=self._decimal(
                self._require(data, "quanto_multiplier", what), "quanto_multiplier", what
            ),
            tick_size=self._decimal(tick, "tick_size", what),
        )

    # ==================== POSITIONS ====================

    async def list_positions(self) -> List[ExchangePosition]:
        data = await self._request("GET", f"/futures/{self.settle}/positions")
        if not isinstance(data, list):
            raise MalformedResponseError("Expected a list of positions")

        positions = []
        for item in data:
            contract = str(self._require(item, "contract", "position")).strip()
            entry = item.get("entry_price")
            positions.append(
                ExchangePosition(
                    contract=contract,
                    size=int(item.get("size") or 0),
                    entry_price=Decimal(str(entry)) if entry not in (None, "", "0") else None,
                )
            )
        return positions

    async def update_leverage(self, contract: str, leverage: int) -> None:
        await self._request(
            "POST",
            f"/futures/{self.settle}/positions/{contract}/leverage",
            params={"leverage": str(leverage)},
            contract=contract,
        )
        logger.info(f"Leverage set: {contract} -> {leverage}x")

    # ==================== ORDERS ====================

    async def place_market_order(
        self,
        contract: str,
        direction: PositionDirection,
        size: int,
    ) -> PlacedOrder:
        payload = {
            "contract": contract,
            "size": size * direction.sign,
            "price": "0",
            "tif": "ioc",
        }
        data = await self._request(
            "POST",
            f"/futures/{self.settle}/orders",
            body=payload,
            contract=contract,
        )
        order = self._parse_placed_order(data, contract)
        logger.info(
            f"Market order placed: {contract} {direction.value} {size} "
            f"(order_id={order.id}, fill_price={order.fill_price})"
        )
        return order

    async def place_trigger_order(self, request: TriggerOrderRequest) -> PlacedOrder:
        initial: Dict[str, Any] = {
            "contract": request.contract,
            "price": "0",
            "tif": "ioc",
            "reduce_only": True,
        }
        if request.close_position:
            initial["size"] = 0
            initial["auto_size"] = (
                "close_long" if request.direction is PositionDirection.LONG else "close_short"
            )
        else:
            # Closing size carries the opposite sign of the position
            initial["size"] = -request.size * request.direction.sign

        payload = {
            "initial": initial,
            "trigger": {
                "strategy_type": 0,
                "price_type": 0,
                "price": str(request.trigger_price),
                "rule": int(request.rule),
                "expiration": request.expiration,
            },
        }
        data = await self._request(
            "POST",
            f"/futures/{self.settle}/price_orders",
            body=payload,
            contract=request.contract,
        )
        order = self._parse_placed_order(data, request.contract)
        logger.info(
            f"Trigger order placed: {request.contract} rule={int(request.rule)} "
            f"price={request.trigger_price} (order_id={order.id})"
        )
        return order

    async def cancel_trigger_order(self, order_id: str) -> None:
        await self._request(
            "DELETE",
            f"/futures/{self.settle}/price_orders/{order_id}",
            order_id=order_id,
        )
        logger.info(f"Trigger order cancelled: {order_id}")

    async def list_trigger_orders(self, status: TriggerOrderStatus) -> List[TriggerOrder]:
        data = await self._request(
            "GET",
            f"/futures/{self.settle}/price_orders",
            params={"status": status.value},
        )
        if not isinstance(data, list):
            raise MalformedResponseError(f"Expected a list of {status.value} trigger orders")
        return [self._parse_trigger_order(item) for item in data]
