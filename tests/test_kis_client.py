"""Tests for KisGateway against a mocked KIS open API (httpx.MockTransport)."""

from __future__ import annotations

import json

import httpx
import pytest

from orderloop.errors import (
    BrokerRejectionError,
    BrokerTransientError,
    ConfigurationError,
)
from orderloop.execution.broker import BrokerOrderStatus
from orderloop.kis.client import LIVE_BASE_URL, PAPER_BASE_URL, KisGateway
from orderloop.kis.credentials import CredentialStore, KisCredentials
from orderloop.kis.token_cache import TokenCache
from orderloop.models import Market, OrderType, Side

TOKEN_PATH = "/oauth2/tokenP"
ORDER_PATH = "/uapi/overseas-stock/v1/trading/order"


class _FakeKis:
    """Route table plus request log for a MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, list[httpx.Response | Exception]] = {}

    def add(self, path: str, *responses: httpx.Response | Exception) -> None:
        self.routes.setdefault(path, []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == TOKEN_PATH and TOKEN_PATH not in self.routes:
            return httpx.Response(
                200, json={"access_token": "tok-1", "expires_in": 86400}
            )
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"rt_cd": "1", "msg1": "no route"})
        template = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(template, Exception):
            raise template
        # One Response object per request.
        return httpx.Response(
            template.status_code, headers=template.headers, content=template.content
        )

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]


def _ok(output: dict | list | None = None, **extra) -> httpx.Response:
    body = {"rt_cd": "0", "msg_cd": "KIOK0000", "msg1": "ok"}
    if output is not None:
        body["output"] = output
    body.update(extra)
    return httpx.Response(200, json=body)


def _make_gateway(fake: _FakeKis, is_paper: bool = True, **kwargs) -> KisGateway:
    base_url = PAPER_BASE_URL if is_paper else LIVE_BASE_URL
    client = httpx.AsyncClient(
        base_url=base_url, transport=httpx.MockTransport(fake.handler)
    )

    async def _no_sleep(_seconds: float) -> None:
        return None

    return KisGateway(
        KisCredentials(
            app_key="app-key-1234", app_secret="secret", account_number="12345678-01"
        ),
        TokenCache(),
        is_paper=is_paper,
        client=client,
        sleep=_no_sleep,
        **kwargs,
    )


class TestSubmitOrder:
    @pytest.mark.asyncio
    async def test_returns_odno_and_sends_loo_division(self) -> None:
        fake = _FakeKis()
        fake.add(ORDER_PATH, _ok({"ODNO": "0030001234"}))
        gateway = _make_gateway(fake, is_paper=False)

        ack = await gateway.submit_order(
            "tqqq", Side.BUY, OrderType.LOO, 3, 50.12, Market.US, exchange_code="NASD"
        )

        assert ack.broker_order_id == "0030001234"
        request = fake.calls(ORDER_PATH)[0]
        body = json.loads(request.content)
        assert body["PDNO"] == "TQQQ"
        assert body["ORD_DVSN"] == "32"
        assert body["OVRS_ORD_UNPR"] == "50.12"
        assert body["CANO"] == "12345678"
        assert body["ACNT_PRDT_CD"] == "01"
        assert request.headers["tr_id"] == "TTTT1002U"
        assert request.headers["authorization"] == "Bearer tok-1"
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_paper_sends_auction_orders_as_limit(self) -> None:
        fake = _FakeKis()
        fake.add(ORDER_PATH, _ok({"ODNO": "1"}))
        gateway = _make_gateway(fake)

        await gateway.submit_order("TQQQ", Side.SELL, OrderType.LOC, 1, 55.0, Market.US)

        request = fake.calls(ORDER_PATH)[0]
        assert json.loads(request.content)["ORD_DVSN"] == "00"
        assert request.headers["tr_id"] == "VTTT1001U"

    @pytest.mark.asyncio
    async def test_token_is_issued_once(self) -> None:
        fake = _FakeKis()
        fake.add(ORDER_PATH, _ok({"ODNO": "1"}))
        gateway = _make_gateway(fake)

        for _ in range(3):
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)

        assert len(fake.calls(TOKEN_PATH)) == 1
        assert len(fake.calls(ORDER_PATH)) == 3

    @pytest.mark.asyncio
    async def test_business_rejection(self) -> None:
        fake = _FakeKis()
        fake.add(
            ORDER_PATH,
            httpx.Response(
                200, json={"rt_cd": "1", "msg_cd": "APBK0919", "msg1": "주문가능금액을 초과"}
            ),
        )
        gateway = _make_gateway(fake)

        with pytest.raises(BrokerRejectionError) as exc_info:
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)
        assert exc_info.value.code == "APBK0919"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self) -> None:
        fake = _FakeKis()
        fake.add(ORDER_PATH, httpx.Response(502, text="bad gateway"))
        gateway = _make_gateway(fake)

        with pytest.raises(BrokerTransientError) as exc_info:
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)
        assert exc_info.value.status_code == 502
        assert exc_info.value.request_sent is True

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self) -> None:
        fake = _FakeKis()
        fake.add(
            ORDER_PATH,
            httpx.Response(
                500, json={"rt_cd": "1", "msg_cd": "EGW00201", "msg1": "초당 거래건수를 초과"}
            ),
        )
        gateway = _make_gateway(fake)

        with pytest.raises(BrokerTransientError) as exc_info:
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)
        assert exc_info.value.code == "EGW00201"
        assert exc_info.value.request_sent is False

    @pytest.mark.asyncio
    async def test_connect_failure_never_reached_broker(self) -> None:
        fake = _FakeKis()
        fake.add(ORDER_PATH, httpx.ConnectError("connection refused"))
        gateway = _make_gateway(fake)

        with pytest.raises(BrokerTransientError) as exc_info:
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)
        assert exc_info.value.request_sent is False

    @pytest.mark.asyncio
    async def test_read_timeout_may_have_reached_broker(self) -> None:
        fake = _FakeKis()
        fake.add(ORDER_PATH, httpx.ReadTimeout("read timed out"))
        gateway = _make_gateway(fake)

        with pytest.raises(BrokerTransientError, match="timeout") as exc_info:
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)
        assert exc_info.value.request_sent is True

    @pytest.mark.asyncio
    async def test_expired_token_is_invalidated(self) -> None:
        fake = _FakeKis()
        fake.add(
            ORDER_PATH,
            httpx.Response(
                401, json={"rt_cd": "1", "msg_cd": "EGW00123", "msg1": "expired"}
            ),
        )
        gateway = _make_gateway(fake)

        with pytest.raises(BrokerTransientError):
            await gateway.submit_order("TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US)
        assert gateway._token_cache.has_valid_token("app-key-1234") is False

    @pytest.mark.asyncio
    async def test_daytime_not_available_on_paper(self) -> None:
        gateway = _make_gateway(_FakeKis())
        with pytest.raises(BrokerRejectionError, match="paper"):
            await gateway.submit_order(
                "TQQQ", Side.BUY, OrderType.LIMIT, 1, 50.0, Market.US, daytime=True
            )

    @pytest.mark.asyncio
    async def test_daytime_cancel_uses_daytime_endpoint(self) -> None:
        path = "/uapi/overseas-stock/v1/trading/daytime-order-rvsecncl"
        fake = _FakeKis()
        fake.add(path, _ok({"ODNO": "0009"}))
        gateway = _make_gateway(fake, is_paper=False)

        assert await gateway.cancel_order("0009", "TQQQ", 2, Market.US, daytime=True)

        (request,) = fake.calls(path)
        assert request.headers["tr_id"] == "TTTS6038U"
        assert json.loads(request.content)["ORGN_ODNO"] == "0009"

    @pytest.mark.asyncio
    async def test_kr_rejects_auction_orders(self) -> None:
        gateway = _make_gateway(_FakeKis())
        with pytest.raises(BrokerRejectionError, match="KR"):
            await gateway.submit_order("005930", Side.BUY, OrderType.LOO, 1, 70000, Market.KR)


class TestOrderDetail:
    DETAIL_PATH = "/uapi/overseas-stock/v1/trading/inquire-ccnl"

    @pytest.mark.asyncio
    async def test_filled(self) -> None:
        fake = _FakeKis()
        fake.add(
            self.DETAIL_PATH,
            _ok(
                output1=[
                    {"odno": "0001", "ft_ord_qty": "3", "ft_ccld_qty": "3", "ft_ccld_unpr3": "50.10"}
                ]
            ),
        )
        gateway = _make_gateway(fake)

        detail = await gateway.get_order_detail("0001", "TQQQ", Market.US)

        assert detail.status == BrokerOrderStatus.FILLED
        assert detail.filled_quantity == 3
        assert detail.avg_fill_price == pytest.approx(50.10)

    @pytest.mark.asyncio
    async def test_partial_and_cancelled(self) -> None:
        fake = _FakeKis()
        fake.add(
            self.DETAIL_PATH,
            _ok(
                output1=[
                    {"odno": "0001", "ft_ord_qty": "5", "ft_ccld_qty": "2"},
                    {"odno": "0002", "ft_ord_qty": "5", "ft_ccld_qty": "0", "cncl_yn": "Y"},
                ]
            ),
        )
        gateway = _make_gateway(fake)

        partial = await gateway.get_order_detail("0001", "TQQQ", Market.US)
        cancelled = await gateway.get_order_detail("0002", "TQQQ", Market.US)

        assert partial.status == BrokerOrderStatus.PARTIALLY_FILLED
        assert partial.filled_quantity == 2
        assert cancelled.status == BrokerOrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_missing_row_is_not_found(self) -> None:
        fake = _FakeKis()
        fake.add(self.DETAIL_PATH, _ok(output1=[]))
        gateway = _make_gateway(fake)

        detail = await gateway.get_order_detail("0009", "TQQQ", Market.US)

        assert detail.status == BrokerOrderStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_found_code(self) -> None:
        fake = _FakeKis()
        fake.add(
            self.DETAIL_PATH,
            httpx.Response(200, json={"rt_cd": "1", "msg_cd": "APBK0013", "msg1": "주문이 없습니다"}),
        )
        gateway = _make_gateway(fake)

        detail = await gateway.get_order_detail("0009", "TQQQ", Market.US)

        assert detail.status == BrokerOrderStatus.NOT_FOUND


class TestAccount:
    BALANCE_PATH = "/uapi/overseas-stock/v1/trading/inquire-balance"

    @pytest.mark.asyncio
    async def test_holdings_merge_exchanges_first_wins(self) -> None:
        fake = _FakeKis()
        fake.add(
            self.BALANCE_PATH,
            _ok(output1=[{"ovrs_pdno": "TQQQ", "ovrs_cblc_qty": "10", "pchs_avg_pric": "48.0"}]),
            _ok(
                output1=[
                    {"ovrs_pdno": "TQQQ", "ovrs_cblc_qty": "99", "pchs_avg_pric": "1.0"},
                    {"ovrs_pdno": "SOXL", "ovrs_cblc_qty": "4", "pchs_avg_pric": "30.5"},
                    {"ovrs_pdno": "EMPTY", "ovrs_cblc_qty": "0"},
                ]
            ),
            _ok(output1=[]),
        )
        gateway = _make_gateway(fake)

        holdings = {h.symbol: h for h in await gateway.get_holdings()}

        assert set(holdings) == {"TQQQ", "SOXL"}
        assert holdings["TQQQ"].quantity == 10
        assert holdings["TQQQ"].exchange_code == "NASD"
        assert holdings["SOXL"].exchange_code == "NYSE"
        assert len(fake.calls(self.BALANCE_PATH)) == 3

    @pytest.mark.asyncio
    async def test_quote_uses_quote_exchange_code(self) -> None:
        path = "/uapi/overseas-price/v1/quotations/price"
        fake = _FakeKis()
        fake.add(path, _ok({"last": "51.00", "base": "50.123", "open": "50.50", "tvol": "1200"}))
        gateway = _make_gateway(fake)

        quote = await gateway.get_quote("tqqq", "NYSE")

        assert quote.symbol == "TQQQ"
        assert quote.previous_close == pytest.approx(50.123)
        assert quote.volume == 1200
        assert fake.calls(path)[0].url.params["EXCD"] == "NYS"

    @pytest.mark.asyncio
    async def test_open_orders_empty_on_paper(self) -> None:
        fake = _FakeKis()
        gateway = _make_gateway(fake)

        assert await gateway.get_open_orders("TQQQ") == []
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_open_orders_live(self) -> None:
        path = "/uapi/overseas-stock/v1/trading/inquire-nccs"
        fake = _FakeKis()
        fake.add(
            path,
            _ok(
                [
                    {"odno": "7", "pdno": "TQQQ", "sll_buy_dvsn_cd": "02",
                     "sll_buy_dvsn_cd_name": "LOO 매수", "ft_ord_qty": "3", "nccs_qty": "3"},
                    {"odno": "8", "pdno": "SOXL", "sll_buy_dvsn_cd": "01", "ord_dvsn_cd": "00"},
                ]
            ),
        )
        gateway = _make_gateway(fake, is_paper=False)

        orders = await gateway.get_open_orders("TQQQ")

        assert len(orders) == 1
        assert orders[0].order_type == OrderType.LOO
        assert orders[0].side == Side.BUY
        assert orders[0].unfilled_quantity == 3


class TestCredentials:
    def test_account_parts_default_product_code(self) -> None:
        creds = KisCredentials(app_key="k", app_secret="s", account_number="12345678")
        assert creds.account_parts() == ("12345678", "01")

    def test_store_loads_owner(self, tmp_path) -> None:
        path = tmp_path / "credentials.json"
        path.write_text(
            json.dumps(
                {"owner-1": {"app_key": "k", "app_secret": "s", "account_number": "12345678-22"}}
            )
        )
        store = CredentialStore(path)

        assert store.load("owner-1").account_parts() == ("12345678", "22")
        assert store.owners() == ["owner-1"]

    def test_missing_owner(self, tmp_path) -> None:
        path = tmp_path / "credentials.json"
        path.write_text("{}")
        with pytest.raises(ConfigurationError, match="no broker credentials"):
            CredentialStore(path).load("ghost")

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            CredentialStore(tmp_path / "nope.json").load("owner-1")
