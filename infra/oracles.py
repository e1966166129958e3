"""
memetrader Infrastructure: HTTP Oracles and Paper Trading

Concrete collaborators behind the core interfaces:
- HttpPriceOracle: Jupiter (ids=...) or CoinGecko (contract_addresses=...) price APIs
- SolanaRpcBalanceOracle: JSON-RPC getBalance
- PaperWallet / PaperTradeExecutor: simulated fills at oracle price

Each call hits exactly one endpoint and maps failures into the FetchError
taxonomy; retries and rotation belong to ResilientClient.
"""

import logging
import threading
import uuid
from typing import Any, Dict, Optional

import requests

from core.endpoint_pool import Endpoint
from core.exceptions import ExecError, FetchError, NonRetryableError, RateLimited, TransientNetworkError
from core.market_data import MarketData
from core.position_state import Position
from core.trading_interfaces import BalanceOracle, EntryFill, ExitFill, PriceOracle, TradeExecutor

logger = logging.getLogger(__name__)

SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000

# JSON-RPC error codes some providers use for throttling
RPC_RATE_LIMIT_CODES = {429, -32005, -32429}


def _request_json(session: requests.Session, method: str, url: str, timeout: float, **kwargs) -> Any:
    """
    Single HTTP call mapped onto the fetch error taxonomy.

    Raises:
        RateLimited: 429
        NonRetryableError: Other 4xx, or a body that is not JSON
        TransientNetworkError: 5xx, timeout, connection error
    """
    source = url.split("?", 1)[0]
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        status_code = e.response.status_code if e.response is not None else 0
        if status_code == 429:
            raise RateLimited(f"{source}: 429 Too Many Requests", e)
        if 400 <= status_code < 500:
            raise NonRetryableError(f"{source}: HTTP {status_code}", e)
        raise TransientNetworkError(f"{source}: HTTP {status_code}", e)
    except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
        raise TransientNetworkError(f"{source}: {e}", e)

    try:
        return response.json()
    except ValueError as e:
        raise NonRetryableError(f"{source}: invalid JSON body", e)


class HttpPriceOracle(PriceOracle):
    """
    Token price in SOL.

    The endpoint URL decides the dialect: CoinGecko URLs use
    contract_addresses/vs_currencies, everything else the Jupiter ids/vsToken form.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 15.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_price(self, token_id: str, endpoint: Endpoint) -> float:
        if "coingecko" in endpoint.url:
            return self._coingecko_price(token_id, endpoint)
        return self._jupiter_price(token_id, endpoint)

    def _jupiter_price(self, token_id: str, endpoint: Endpoint) -> float:
        payload = _request_json(
            self.session, "GET", endpoint.url, self.timeout,
            params={"ids": token_id, "vsToken": SOL_MINT},
        )
        entry = (payload.get("data") or {}).get(token_id) if isinstance(payload, dict) else None
        if not entry or entry.get("price") is None:
            raise NonRetryableError(f"{endpoint.name}: no price for {token_id}")
        return float(entry["price"])

    def _coingecko_price(self, token_id: str, endpoint: Endpoint) -> float:
        payload = _request_json(
            self.session, "GET", endpoint.url, self.timeout,
            params={"contract_addresses": token_id, "vs_currencies": "sol"},
        )
        entry = None
        if isinstance(payload, dict):
            entry = payload.get(token_id.lower()) or payload.get(token_id)
        if not entry or entry.get("sol") is None:
            raise NonRetryableError(f"{endpoint.name}: no price for {token_id}")
        return float(entry["sol"])


class SolanaRpcBalanceOracle(BalanceOracle):
    """SOL balance through JSON-RPC getBalance"""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 15.0, commitment: str = "confirmed"):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.commitment = commitment

    def get_balance(self, address: str, endpoint: Endpoint) -> float:
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getBalance",
            "params": [address, {"commitment": self.commitment}],
        }
        payload = _request_json(self.session, "POST", endpoint.url, self.timeout, json=body)

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            code = error.get("code")
            message = error.get("message", "")
            if code in RPC_RATE_LIMIT_CODES:
                raise RateLimited(f"{endpoint.name}: RPC {code} {message}")
            raise TransientNetworkError(f"{endpoint.name}: RPC {code} {message}")

        try:
            lamports = payload["result"]["value"]
        except (KeyError, TypeError) as e:
            raise NonRetryableError(f"{endpoint.name}: malformed getBalance response", e)
        return int(lamports) / LAMPORTS_PER_SOL


class PaperWallet(BalanceOracle):
    """In-memory SOL balance for PAPER mode"""

    def __init__(self, starting_balance: float):
        if starting_balance < 0:
            raise ValueError("starting_balance must be >= 0")
        self._balance = float(starting_balance)
        self._lock = threading.Lock()

    @property
    def balance(self) -> float:
        with self._lock:
            return self._balance

    def get_balance(self, address: str, endpoint: Endpoint) -> float:
        return self.balance

    def debit(self, amount: float) -> None:
        with self._lock:
            if amount > self._balance:
                raise ExecError(f"Insufficient paper balance: need {amount:.6f}, have {self._balance:.6f}")
            self._balance -= amount

    def credit(self, amount: float) -> None:
        with self._lock:
            self._balance += amount


class PaperTradeExecutor(TradeExecutor):
    """
    Simulated fills at the current oracle price, minus slippage.

    Nothing is signed or broadcast.
    """

    def __init__(self, market: MarketData, wallet: PaperWallet, slippage_pct: float = 0.0):
        if not 0.0 <= slippage_pct < 100.0:
            raise ValueError("slippage_pct must be in [0, 100)")
        self.market = market
        self.wallet = wallet
        self.slippage_pct = slippage_pct
        self.fills: Dict[str, Dict[str, Any]] = {}

    def _price(self, token_id: str, last_known: Optional[float] = None) -> float:
        try:
            result = self.market.get_price(token_id, last_known=last_known)
        except FetchError as e:
            raise ExecError(f"No price for {token_id}: {e}", token_id=token_id)
        price = float(result.value)
        if price <= 0:
            raise ExecError(f"Unusable price {price} for {token_id}", token_id=token_id)
        return price

    def _tx_ref(self, side: str) -> str:
        return f"paper-{side}-{uuid.uuid4().hex[:12]}"

    def open(self, token_id: str, amount: float) -> EntryFill:
        if amount <= 0:
            raise ExecError(f"Buy amount must be positive, got {amount}", token_id=token_id)

        price = self._price(token_id) * (1.0 + self.slippage_pct / 100.0)
        self.wallet.debit(amount)
        tokens = amount / price

        tx_ref = self._tx_ref("buy")
        self.fills[tx_ref] = {"side": "buy", "token_id": token_id, "amount": amount, "price": price}
        logger.info(f"PAPER BUY {token_id}: {amount:.6f} SOL → {tokens:.4f} tokens @ {price:.10f}")
        return EntryFill(entry_price=price, tokens_received=tokens, tx_ref=tx_ref)

    def close(self, position: Position, fraction: float = 1.0) -> ExitFill:
        if not 0.0 < fraction <= 1.0:
            raise ExecError(f"Sell fraction must be in (0, 1], got {fraction}", token_id=position.token_id)

        price = self._price(position.token_id, last_known=position.current_price)
        price *= (1.0 - self.slippage_pct / 100.0)
        tokens = position.tokens_received * fraction
        proceeds = tokens * price
        self.wallet.credit(proceeds)

        tx_ref = self._tx_ref("sell")
        self.fills[tx_ref] = {"side": "sell", "token_id": position.token_id, "tokens": tokens, "price": price}
        logger.info(
            f"PAPER SELL {position.symbol}: {tokens:.4f} tokens ({fraction:.0%}) @ {price:.10f} "
            f"→ {proceeds:.6f} SOL"
        )
        return ExitFill(exit_price=price, tx_ref=tx_ref)
