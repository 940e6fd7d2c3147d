"""KisGateway: BrokerGateway over the Korea Investment & Securities open API.

Wraps an ``httpx.AsyncClient`` with:
- Token acquisition through a shared ``TokenCache`` (one issuance per
  minute per app key, concurrent refreshes coalesced)
- Paper/live routing: paper uses the broker's mock server and its
  ``V``-prefixed transaction ids
- Error classification into BrokerTransientError (network, 5xx, rate
  limit) and BrokerRejectionError (4xx, ``rt_cd != "0"``)
- Fixed inter-call delay for multi-symbol and multi-exchange lookups

Every response carries ``rt_cd`` ("0" = success), ``msg_cd`` and ``msg1``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

import httpx
import structlog

from orderloop.config.markets import MARKETS, REFERENCE_TIMEZONE, quote_exchange_code
from orderloop.errors import BrokerRejectionError, BrokerTransientError
from orderloop.execution.broker import (
    BrokerOpenOrder,
    BrokerOrderAck,
    BrokerOrderDetail,
    BrokerOrderStatus,
    Holding,
    Quote,
)
from orderloop.kis.credentials import KisCredentials
from orderloop.kis.token_cache import TokenCache
from orderloop.models import Market, OrderType, Side

logger = structlog.get_logger(__name__)

LIVE_BASE_URL = "https://openapi.koreainvestment.com:9443"
PAPER_BASE_URL = "https://openapivts.koreainvestment.com:29443"

RATE_LIMIT_CODES: frozenset[str] = frozenset({"EGW00201"})
EXPIRED_TOKEN_CODES: frozenset[str] = frozenset({"EGW00123", "EGW00121"})
NOT_FOUND_CODES: frozenset[str] = frozenset({"APBK0013"})

# (live, paper) transaction ids.
TR_IDS: dict[str, tuple[str, str]] = {
    "us_buy": ("TTTT1002U", "VTTT1002U"),
    "us_sell": ("TTTT1006U", "VTTT1001U"),
    "us_cancel": ("TTTT1004U", "VTTT1004U"),
    "us_daytime_buy": ("TTTS6036U", ""),
    "us_daytime_sell": ("TTTS6037U", ""),
    "us_daytime_cancel": ("TTTS6038U", ""),
    "us_order_detail": ("TTTS3035R", "VTTS3035R"),
    "us_balance": ("TTTS3012R", "VTTS3012R"),
    "us_open_orders": ("TTTS3018R", ""),
    "us_quote": ("HHDFS00000300", "HHDFS00000300"),
    "kr_buy": ("TTTC0012U", "VTTC0012U"),
    "kr_sell": ("TTTC0011U", "VTTC0011U"),
    "kr_cancel": ("TTTC0013U", "VTTC0013U"),
    "kr_order_detail": ("TTTC8036R", "VTTC8036R"),
}

US_ORDER_DIVISION: dict[OrderType, str] = {
    OrderType.LIMIT: "00",
    OrderType.MARKET: "01",
    OrderType.LOO: "32",
    OrderType.LOC: "34",
}
KR_ORDER_DIVISION: dict[OrderType, str] = {
    OrderType.LIMIT: "00",
    OrderType.MARKET: "01",
}
ORDER_DIVISION_TYPES: dict[str, OrderType] = {
    code: order_type for order_type, code in US_ORDER_DIVISION.items()
}


def _int(value: Any) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class KisGateway:
    """Async broker session for one owner.

    Args:
        credentials: App key pair and account number.
        token_cache: Shared token cache; keyed by app key.
        is_paper: Route to the mock server when True.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``).  Created from ``base_url`` when None.
        throttle_seconds: Pause between consecutive calls of a
            multi-symbol or multi-exchange lookup.
        timeout: HTTP timeout in seconds for a client built here.
        sleep: Coroutine used for the throttle delay.
        now: Wall-clock source for inquiry date ranges.
        order_history_days: How far back an order-detail inquiry looks.
    """

    def __init__(
        self,
        credentials: KisCredentials,
        token_cache: TokenCache,
        is_paper: bool = True,
        client: httpx.AsyncClient | None = None,
        throttle_seconds: float = 0.3,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] | None = None,
        order_history_days: int = 7,
    ) -> None:
        self._credentials = credentials
        self._token_cache = token_cache
        self._is_paper = is_paper
        self._base_url = PAPER_BASE_URL if is_paper else LIVE_BASE_URL
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url, timeout=timeout
        )
        self._throttle_seconds = throttle_seconds
        self._order_history_days = order_history_days
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(ZoneInfo(REFERENCE_TIMEZONE)))
        self._cano, self._product_code = credentials.account_parts()

        logger.info(
            "kis_gateway_init",
            mode="PAPER" if is_paper else "LIVE",
            base_url=self._base_url,
        )

    @property
    def is_paper(self) -> bool:
        return self._is_paper

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _tr_id(self, name: str) -> str:
        live, paper = TR_IDS[name]
        if not self._is_paper:
            return live
        if not paper:
            raise BrokerRejectionError(f"{name} is not available on the paper server")
        return paper

    async def _issue_token(self) -> tuple[str, float]:
        try:
            response = await self._client.post(
                "/oauth2/tokenP",
                json={
                    "grant_type": "client_credentials",
                    "appkey": self._credentials.app_key,
                    "appsecret": self._credentials.app_secret,
                },
            )
        except httpx.TransportError as exc:
            raise BrokerTransientError(
                f"network error issuing token: {exc}", request_sent=False
            ) from exc
        if response.status_code >= 500:
            raise BrokerTransientError(
                f"server error issuing token: HTTP {response.status_code}",
                status_code=response.status_code,
                request_sent=False,
            )
        data = self._json(response)
        token = data.get("access_token")
        if response.status_code >= 400 or not token:
            code = data.get("error_code") or data.get("msg_cd")
            message = data.get("error_description") or data.get("msg1") or "token issuance failed"
            if code in RATE_LIMIT_CODES:
                raise BrokerTransientError(message, code=code, request_sent=False)
            raise BrokerRejectionError(
                message, status_code=response.status_code, code=code
            )
        return token, _float(data.get("expires_in"))

    async def _token(self) -> str:
        return await self._token_cache.get_token(
            self._credentials.app_key, self._issue_token
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _request(
        self,
        method: str,
        path: str,
        tr_id: str,
        params: dict | None = None,
        body: dict | None = None,
    ) -> dict:
        """Send one authenticated request and return the decoded body.

        Raises:
            BrokerTransientError: Network failure, 5xx, rate limit, or an
                expired token (the cache entry is dropped first).
            BrokerRejectionError: 4xx or ``rt_cd != "0"``.
        """
        token = await self._token()
        headers = {
            "content-type": "application/json; charset=utf-8",
            "authorization": f"Bearer {token}",
            "appkey": self._credentials.app_key,
            "appsecret": self._credentials.app_secret,
            "tr_id": tr_id,
            "custtype": "P",
        }
        try:
            response = await self._client.request(
                method, path, headers=headers, params=params, json=body
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise BrokerTransientError(
                f"could not connect for {path}: {exc}", request_sent=False
            ) from exc
        except httpx.TimeoutException as exc:
            raise BrokerTransientError(f"timeout calling {path}") from exc
        except httpx.TransportError as exc:
            raise BrokerTransientError(f"network error calling {path}: {exc}") from exc

        data = self._json(response)
        code = data.get("msg_cd")
        message = data.get("msg1") or f"HTTP {response.status_code} from {path}"

        if code in EXPIRED_TOKEN_CODES:
            self._token_cache.invalidate(self._credentials.app_key)
            raise BrokerTransientError(
                f"access token expired: {message}", code=code, request_sent=False
            )
        if code in RATE_LIMIT_CODES:
            raise BrokerTransientError(
                f"rate limit: {message}", code=code, request_sent=False
            )
        if response.status_code >= 500:
            raise BrokerTransientError(
                f"server error from {path}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise BrokerRejectionError(
                message, status_code=response.status_code, code=code
            )
        if data.get("rt_cd", "0") != "0":
            raise BrokerRejectionError(message, code=code)
        return data

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: int,
        price: float | None,
        market: Market,
        exchange_code: str | None = None,
        daytime: bool = False,
    ) -> BrokerOrderAck:
        """Place an order and return the broker's order number (ODNO)."""
        if Market(market) == Market.KR:
            path, tr_id, body = self._domestic_order(
                symbol, side, order_type, quantity, price
            )
        else:
            path, tr_id, body = self._overseas_order(
                symbol, side, order_type, quantity, price, exchange_code, daytime
            )

        data = await self._request("POST", path, tr_id, body=body)
        broker_order_id = (data.get("output") or {}).get("ODNO")
        if not broker_order_id:
            raise BrokerRejectionError(f"no order number returned for {symbol}")

        logger.info(
            "kis_order_accepted",
            broker_order_id=broker_order_id,
            symbol=symbol,
            side=Side(side).value,
            order_type=OrderType(order_type).value,
            quantity=quantity,
            price=price,
            daytime=daytime,
        )
        return BrokerOrderAck(broker_order_id=str(broker_order_id))

    def _overseas_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: int,
        price: float | None,
        exchange_code: str | None,
        daytime: bool,
    ) -> tuple[str, str, dict]:
        side = Side(side)
        order_type = OrderType(order_type)
        if daytime:
            path = "/uapi/overseas-stock/v1/trading/daytime-order"
            tr_id = self._tr_id(
                "us_daytime_buy" if side == Side.BUY else "us_daytime_sell"
            )
            division = "00"
        else:
            path = "/uapi/overseas-stock/v1/trading/order"
            tr_id = self._tr_id("us_buy" if side == Side.BUY else "us_sell")
            division = US_ORDER_DIVISION[order_type]
            # The mock server only knows plain limit orders.
            if self._is_paper and order_type in (OrderType.LOO, OrderType.LOC):
                division = "00"

        body = {
            "CANO": self._cano,
            "ACNT_PRDT_CD": self._product_code,
            "OVRS_EXCG_CD": exchange_code or MARKETS[Market.US].default_exchange,
            "PDNO": symbol.upper(),
            "ORD_QTY": str(quantity),
            "OVRS_ORD_UNPR": f"{price:.2f}" if price else "0",
            "ORD_SVR_DVSN_CD": "0",
            "ORD_DVSN": division,
        }
        return path, tr_id, body

    def _domestic_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: int,
        price: float | None,
    ) -> tuple[str, str, dict]:
        order_type = OrderType(order_type)
        if order_type not in KR_ORDER_DIVISION:
            raise BrokerRejectionError(
                f"{order_type.value} orders are not supported on the KR market"
            )
        tr_id = self._tr_id("kr_buy" if Side(side) == Side.BUY else "kr_sell")
        body = {
            "CANO": self._cano,
            "ACNT_PRDT_CD": self._product_code,
            "PDNO": symbol,
            "ORD_DVSN": KR_ORDER_DIVISION[order_type],
            "ORD_QTY": str(quantity),
            "ORD_UNPR": str(int(price)) if price else "0",
        }
        return "/uapi/domestic-stock/v1/trading/order-cash", tr_id, body

    async def cancel_order(
        self,
        broker_order_id: str,
        symbol: str,
        quantity: int,
        market: Market,
        exchange_code: str | None = None,
        daytime: bool = False,
    ) -> bool:
        if Market(market) == Market.KR:
            path = "/uapi/domestic-stock/v1/trading/order-rvsecncl"
            tr_id = self._tr_id("kr_cancel")
            body = {
                "CANO": self._cano,
                "ACNT_PRDT_CD": self._product_code,
                "KRX_FWDG_ORD_ORGNO": "",
                "ORGN_ODNO": broker_order_id,
                "ORD_DVSN": "00",
                "RVSE_CNCL_DVSN_CD": "02",
                "ORD_QTY": str(quantity),
                "ORD_UNPR": "0",
                "QTY_ALL_ORD_YN": "Y",
            }
        else:
            if daytime:
                path = "/uapi/overseas-stock/v1/trading/daytime-order-rvsecncl"
                tr_id = self._tr_id("us_daytime_cancel")
            else:
                path = "/uapi/overseas-stock/v1/trading/order-rvsecncl"
                tr_id = self._tr_id("us_cancel")
            body = {
                "CANO": self._cano,
                "ACNT_PRDT_CD": self._product_code,
                "OVRS_EXCG_CD": exchange_code or MARKETS[Market.US].default_exchange,
                "PDNO": symbol.upper(),
                "ORGN_ODNO": broker_order_id,
                "RVSE_CNCL_DVSN_CD": "02",
                "ORD_QTY": str(quantity),
                "OVRS_ORD_UNPR": "0",
                "ORD_SVR_DVSN_CD": "0",
            }

        await self._request("POST", path, tr_id, body=body)
        logger.info(
            "kis_order_cancelled", broker_order_id=broker_order_id, symbol=symbol
        )
        return True

    async def get_order_detail(
        self,
        broker_order_id: str,
        symbol: str,
        market: Market,
        exchange_code: str | None = None,
    ) -> BrokerOrderDetail:
        """Look up one order.  Unknown orders come back as NOT_FOUND."""
        if Market(market) == Market.KR:
            path = "/uapi/domestic-stock/v1/trading/inquire-psbl-rvsecncl"
            tr_id = self._tr_id("kr_order_detail")
            params = {
                "CANO": self._cano,
                "ACNT_PRDT_CD": self._product_code,
                "CTX_AREA_FK100": "",
                "CTX_AREA_NK100": "",
                "INQR_DVSN_1": "0",
                "INQR_DVSN_2": "0",
            }
            rows_key = "output"
        else:
            today = self._now()
            start = today - timedelta(days=self._order_history_days)
            path = "/uapi/overseas-stock/v1/trading/inquire-ccnl"
            tr_id = self._tr_id("us_order_detail")
            params = {
                "CANO": self._cano,
                "ACNT_PRDT_CD": self._product_code,
                "PDNO": symbol.upper(),
                "ORD_STRT_DT": start.strftime("%Y%m%d"),
                "ORD_END_DT": today.strftime("%Y%m%d"),
                "SLL_BUY_DVSN": "00",
                "CCLD_NCCS_DVSN": "00",
                "OVRS_EXCG_CD": exchange_code or MARKETS[Market.US].default_exchange,
                "SORT_SQN": "DS",
                "ORD_DT": "",
                "ORD_GNO_BRNO": "",
                "ODNO": broker_order_id,
                "CTX_AREA_FK200": "",
                "CTX_AREA_NK200": "",
            }
            rows_key = "output1"

        try:
            data = await self._request("GET", path, tr_id, params=params)
        except BrokerRejectionError as exc:
            if exc.code in NOT_FOUND_CODES:
                return BrokerOrderDetail(status=BrokerOrderStatus.NOT_FOUND)
            raise

        rows = data.get(rows_key) or []
        row = next(
            (r for r in rows if str(r.get("odno") or r.get("ODNO")) == broker_order_id),
            None,
        )
        if row is None:
            return BrokerOrderDetail(status=BrokerOrderStatus.NOT_FOUND)
        return self._detail_from_row(row)

    @staticmethod
    def _detail_from_row(row: dict) -> BrokerOrderDetail:
        total = _int(row.get("ord_qty") or row.get("ft_ord_qty"))
        filled = _int(row.get("tot_ccld_qty") or row.get("ft_ccld_qty"))
        avg_price = _float(row.get("avg_prvs") or row.get("ft_ccld_unpr3")) or None

        if row.get("cncl_yn") == "Y" or row.get("ord_stat_cd") == "02":
            status = BrokerOrderStatus.CANCELLED
        elif row.get("rjct_rson") or row.get("rjct_rson_name"):
            status = BrokerOrderStatus.REJECTED
        elif total > 0 and filled >= total:
            status = BrokerOrderStatus.FILLED
        elif filled > 0:
            status = BrokerOrderStatus.PARTIALLY_FILLED
        else:
            status = BrokerOrderStatus.OPEN
        return BrokerOrderDetail(
            status=status,
            filled_quantity=filled,
            avg_fill_price=avg_price,
            total_quantity=total,
        )

    async def get_open_orders(
        self, symbol: str | None = None, exchange_code: str | None = None
    ) -> list[BrokerOpenOrder]:
        """Unfilled overseas orders, optionally filtered by symbol.

        The mock server has no unfilled-order inquiry; paper mode returns [].
        """
        if self._is_paper:
            return []
        params = {
            "CANO": self._cano,
            "ACNT_PRDT_CD": self._product_code,
            "OVRS_EXCG_CD": exchange_code or MARKETS[Market.US].default_exchange,
            "SORT_SQN": "DS",
            "CTX_AREA_FK200": "",
            "CTX_AREA_NK200": "",
        }
        data = await self._request(
            "GET",
            "/uapi/overseas-stock/v1/trading/inquire-nccs",
            self._tr_id("us_open_orders"),
            params=params,
        )
        orders: list[BrokerOpenOrder] = []
        for row in data.get("output") or []:
            order_no, row_symbol = row.get("odno"), row.get("pdno")
            if not order_no or not row_symbol:
                continue
            if symbol and row_symbol.upper() != symbol.upper():
                continue
            orders.append(
                BrokerOpenOrder(
                    broker_order_id=str(order_no),
                    symbol=row_symbol,
                    side=Side.BUY if row.get("sll_buy_dvsn_cd") == "02" else Side.SELL,
                    order_type=self._parse_order_type(
                        row.get("sll_buy_dvsn_cd_name") or "", row.get("ord_dvsn_cd")
                    ),
                    quantity=_int(row.get("ft_ord_qty")),
                    unfilled_quantity=_int(row.get("nccs_qty")),
                )
            )
        return orders

    @staticmethod
    def _parse_order_type(name: str, code: str | None) -> OrderType:
        upper = name.upper()
        if "LOO" in upper:
            return OrderType.LOO
        if "LOC" in upper:
            return OrderType.LOC
        return ORDER_DIVISION_TYPES.get(code or "", OrderType.LIMIT)

    # ------------------------------------------------------------------
    # Account and quotes
    # ------------------------------------------------------------------

    async def get_holdings(self) -> list[Holding]:
        """Overseas holdings merged across NASD/NYSE/AMEX, first listing wins."""
        holdings: dict[str, Holding] = {}
        exchanges = MARKETS[Market.US].exchanges
        for i, exchange in enumerate(exchanges):
            if i > 0:
                await self._sleep(self._throttle_seconds)
            data = await self._request(
                "GET",
                "/uapi/overseas-stock/v1/trading/inquire-balance",
                self._tr_id("us_balance"),
                params={
                    "CANO": self._cano,
                    "ACNT_PRDT_CD": self._product_code,
                    "OVRS_EXCG_CD": exchange,
                    "TR_CRCY_CD": "USD",
                    "CTX_AREA_FK200": "",
                    "CTX_AREA_NK200": "",
                },
            )
            for row in data.get("output1") or []:
                symbol = row.get("ovrs_pdno")
                quantity = _int(row.get("ovrs_cblc_qty"))
                if not symbol or quantity <= 0 or symbol in holdings:
                    continue
                holdings[symbol] = Holding(
                    symbol=symbol,
                    quantity=quantity,
                    avg_cost=_float(row.get("pchs_avg_pric")),
                    current_price=_float(row.get("now_pric2")),
                    valuation_amount=_float(row.get("ovrs_stck_evlu_amt")),
                    return_rate_pct=_float(row.get("evlu_pfls_rt")),
                    exchange_code=exchange,
                )
        return list(holdings.values())

    async def get_quote(self, symbol: str, exchange_code: str | None = None) -> Quote:
        data = await self._request(
            "GET",
            "/uapi/overseas-price/v1/quotations/price",
            self._tr_id("us_quote"),
            params={
                "AUTH": "",
                "EXCD": quote_exchange_code(exchange_code),
                "SYMB": symbol.upper(),
            },
        )
        output = data.get("output") or {}
        return Quote(
            symbol=symbol.upper(),
            current_price=_float(output.get("last")),
            previous_close=_float(output.get("base")),
            opening_price=_float(output.get("open")),
            high=_float(output.get("high")),
            low=_float(output.get("low")),
            volume=_int(output.get("tvol")),
            change=_float(output.get("diff")),
            change_rate_pct=_float(output.get("rate")),
        )

    async def get_quotes(
        self, symbols: list[str], exchange_code: str | None = None
    ) -> dict[str, Quote]:
        quotes: dict[str, Quote] = {}
        for i, symbol in enumerate(symbols):
            if i > 0:
                await self._sleep(self._throttle_seconds)
            quotes[symbol] = await self.get_quote(symbol, exchange_code)
        return quotes
