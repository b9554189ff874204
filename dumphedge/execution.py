# dumphedge/execution.py
import asyncio
import time
import uuid
from typing import Any, Dict, Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import OrderArgs, OrderType
from py_clob_client.order_builder.constants import BUY

from .config import BotConfig
from .models import OrderResult, OrderStatus, Side

# post_order() status -> our status
STATUS_MAP = {
    "matched": OrderStatus.FILLED,
    "filled": OrderStatus.FILLED,
    "partial": OrderStatus.PARTIAL,
    "live": OrderStatus.PENDING,
    "delayed": OrderStatus.PENDING,
    "unmatched": OrderStatus.PENDING,
}


class ExecutionService:
    """
    Places buy orders on the CLOB.
    The order is signed once; only the network submission is retried,
    a fixed number of times with a fixed pause in between.
    """
    def __init__(self, config: BotConfig, logger, client: Optional[Any] = None):
        self.logger = logger
        self.cfg = config.execution
        self.network = config.network
        self.secrets = config.secrets
        self.dry_run = config.system.dry_run
        self.read_only = config.system.read_only
        self._client = client

    # --- Client ---

    def _build_client(self) -> ClobClient:
        kwargs: Dict[str, Any] = dict(host=self.network.api_url, key=self.secrets.private_key, chain_id=self.cfg.chain_id)
        if self.cfg.signature_type is not None:
            kwargs["signature_type"] = self.cfg.signature_type
        if self.secrets.wallet_address:
            kwargs["funder"] = self.secrets.wallet_address

        client = ClobClient(**kwargs)
        creds = client.create_or_derive_api_creds()
        client.set_api_creds(creds)
        return client

    async def initialize(self) -> bool:
        """
        Derives API credentials for live trading. Returns False if that fails.
        """
        if self.dry_run or self.read_only or self._client is not None:
            return True
        try:
            self._client = await asyncio.to_thread(self._build_client)
            self.logger.info("🔑 CLOB client authenticated")
            return True
        except Exception as e:
            self.logger.critical(f"Could not initialise CLOB client: {e}")
            return False

    # --- Orders ---

    def _rejected(self, side: Side, shares: float, price: float, error: str) -> OrderResult:
        return OrderResult(
            order_id="",
            side=side,
            shares=0.0,
            avg_price=price,
            total_cost=0.0,
            status=OrderStatus.REJECTED,
            timestamp=time.time(),
            error=error,
        )

    def _sign(self, token_id: str, shares: float, price: float):
        args = OrderArgs(price=round(price, 4), size=float(shares), side=BUY, token_id=token_id)
        return self._client.create_order(args)

    def _order_type(self):
        return OrderType.FOK if self.cfg.order_type == "FOK" else OrderType.GTC

    async def buy(self, side: Side, token_id: str, shares: float, limit_price: float) -> OrderResult:
        if self.read_only:
            return self._rejected(side, shares, limit_price, "read-only mode")

        if shares <= 0 or not 0 < limit_price < 1:
            return self._rejected(side, shares, limit_price, f"invalid order {shares} @ {limit_price}")

        if self.dry_run:
            self.logger.info(f"🔵 DRY RUN: BUY {shares} {side.value} @ {limit_price:.4f}")
            return OrderResult(
                order_id=f"sim-{uuid.uuid4().hex[:12]}",
                side=side,
                shares=shares,
                avg_price=limit_price,
                total_cost=shares * limit_price,
                status=OrderStatus.FILLED,
                timestamp=time.time(),
            )

        if self._client is None and not await self.initialize():
            return self._rejected(side, shares, limit_price, "client unavailable")

        self.logger.info(f"⚡ EXECUTION: BUY {shares} {side.value} @ {limit_price:.4f} | token {token_id[:10]}...")
        try:
            signed = await asyncio.to_thread(self._sign, token_id, shares, limit_price)
        except Exception as e:
            self.logger.error(f"Order signing failed: {e}")
            return self._rejected(side, shares, limit_price, f"signing failed: {e}")

        last_error = None
        for attempt in range(1, self.cfg.max_attempts + 1):
            try:
                resp = await asyncio.to_thread(self._client.post_order, signed, self._order_type())
                return self._parse_response(resp, side, shares, limit_price)
            except Exception as e:
                last_error = e
                self.logger.warning(f"⚠️ Order submit attempt {attempt}/{self.cfg.max_attempts} failed: {e}")
                if attempt < self.cfg.max_attempts:
                    await asyncio.sleep(self.cfg.retry_backoff)

        return self._rejected(side, shares, limit_price, f"submit failed after {self.cfg.max_attempts} attempts: {last_error}")

    def _parse_response(self, resp: Any, side: Side, shares: float, limit_price: float) -> OrderResult:
        if not isinstance(resp, dict):
            return self._rejected(side, shares, limit_price, f"unexpected response: {resp!r}")
        if not resp.get("success", False) or resp.get("errorMsg"):
            return self._rejected(side, shares, limit_price, resp.get("errorMsg") or "order not accepted")

        status = STATUS_MAP.get(str(resp.get("status", "")).lower(), OrderStatus.PENDING)
        order_id = resp.get("orderID") or resp.get("orderId") or ""

        filled_shares, total_cost = shares, shares * limit_price
        # For a BUY the maker side pays USDC and takes shares
        try:
            making = float(resp.get("makingAmount") or 0)
            taking = float(resp.get("takingAmount") or 0)
        except (TypeError, ValueError):
            making = taking = 0.0
        if making > 0 and taking > 0:
            total_cost, filled_shares = making, taking
            if filled_shares < shares and status is OrderStatus.FILLED:
                status = OrderStatus.PARTIAL

        avg_price = total_cost / filled_shares if filled_shares else limit_price
        self.logger.info(f"✅ ORDER {status.value.upper()}: {order_id} | {filled_shares} @ {avg_price:.4f}")
        return OrderResult(
            order_id=order_id,
            side=side,
            shares=filled_shares,
            avg_price=avg_price,
            total_cost=total_cost,
            status=status,
            timestamp=time.time(),
        )
