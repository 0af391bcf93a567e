"""
Broker Module
=============
Trading provider interface and the paper trading broker.

Core principle: "Algorithmic execution at scale"
Orders are executed systematically without human intervention.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
import logging
import threading
import uuid

from ..data.market_data import MarketDataProvider, base_symbol
from ..errors import InsufficientBalanceError, OrderRejectedError, ProviderError

logger = logging.getLogger(__name__)


class OrderType(Enum):
    """Order types."""
    MARKET = "market"
    LIMIT = "limit"


class OrderSide(Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is OrderSide.BUY else -1


class OrderStatus(Enum):
    FILLED = "filled"
    CLOSED = "closed"


@dataclass
class OrderRecord:
    """A filled order, or the closing fill of a position."""
    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    amount: float
    price: float
    status: OrderStatus = OrderStatus.FILLED
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'type': self.order_type.value,
            'amount': self.amount,
            'price': self.price,
            'status': self.status.value,
            'exit_price': self.exit_price,
            'pnl': self.pnl,
            'created': self.created_at.isoformat()
        }


class TradingProvider(ABC):
    """Abstract base class for exchange / broker integration."""

    @abstractmethod
    def place_order(self, symbol: str, side: OrderSide, order_type: OrderType,
                    price: float, amount: float) -> OrderRecord:
        """Place an order. Raises ProviderError subclasses on failure."""
        pass

    @abstractmethod
    def get_positions(self) -> Dict[str, dict]:
        pass

    @abstractmethod
    def close_position(self, symbol: str) -> Optional[OrderRecord]:
        """Flatten the position in `symbol`. None means nothing was closed."""
        pass

    @abstractmethod
    def get_available_balance(self, asset: str) -> float:
        pass


class PaperTradingProvider(TradingProvider):
    """
    Paper broker for simulation and testing.

    Fills immediately with slippage. Each position reserves its notional
    in cash, so longs and shorts both need funds to open.
    """

    def __init__(self, initial_balance: float = 10000.0, slippage: float = 0.001,
                 market_data: Optional[MarketDataProvider] = None, quote_asset: str = "USDT"):
        self.initial_balance = initial_balance
        self.cash = initial_balance
        self.slippage = slippage
        self.market_data = market_data
        self.quote_asset = quote_asset

        self.positions: Dict[str, dict] = {}
        self.orders: List[OrderRecord] = []
        self.market_prices: Dict[str, float] = {}
        self._lock = threading.Lock()

    def set_market_prices(self, prices: Dict[str, float]):
        """Update simulated market prices."""
        with self._lock:
            self.market_prices.update({base_symbol(s): p for s, p in prices.items()})

    def _market_price(self, symbol: str) -> float:
        with self._lock:
            price = self.market_prices.get(symbol)
        if price is not None:
            return price
        if self.market_data is None:
            raise OrderRejectedError(f"No market price for {symbol}")
        return self.market_data.get_rate(f"{symbol}/{self.quote_asset}")

    def _fill_price(self, price: float, side: OrderSide) -> float:
        return price * (1 + self.slippage * side.sign)

    def place_order(self, symbol: str, side: OrderSide, order_type: OrderType,
                    price: float, amount: float) -> OrderRecord:
        symbol = base_symbol(symbol)
        if amount <= 0:
            raise OrderRejectedError(f"Invalid amount for {symbol}: {amount}")

        reference = price if price and price > 0 else self._market_price(symbol)
        fill_price = reference if order_type == OrderType.LIMIT else self._fill_price(reference, side)
        cost = amount * fill_price

        with self._lock:
            existing = self.positions.get(symbol)
            if existing is not None and existing['side'] != side:
                raise OrderRejectedError(f"Opposite position already open for {symbol}")
            if cost > self.cash:
                raise InsufficientBalanceError(
                    f"Insufficient {self.quote_asset}: {self.cash:,.2f} < {cost:,.2f}")

            self.cash -= cost
            if existing is not None:
                total = existing['amount'] + amount
                existing['avg_price'] = (existing['amount'] * existing['avg_price'] + cost) / total
                existing['amount'] = total
            else:
                self.positions[symbol] = {'side': side, 'amount': amount, 'avg_price': fill_price}

            record = OrderRecord(
                order_id=str(uuid.uuid4()),
                symbol=symbol,
                side=side,
                order_type=order_type,
                amount=amount,
                price=fill_price
            )
            self.orders.append(record)

        logger.info(f"Order filled: {symbol} {side.value} {amount:.6f} @ {fill_price:.2f}")
        return record

    def close_position(self, symbol: str) -> Optional[OrderRecord]:
        symbol = base_symbol(symbol)
        with self._lock:
            position = self.positions.get(symbol)
        if position is None:
            return None

        try:
            market_price = self._market_price(symbol)
        except ProviderError as e:
            logger.error(f"Cannot close {symbol}: {e}")
            return None

        side = position['side']
        # Closing trades the opposite way
        exit_price = market_price * (1 - self.slippage * side.sign)
        amount = position['amount']
        pnl = (exit_price - position['avg_price']) * amount * side.sign

        with self._lock:
            if self.positions.pop(symbol, None) is None:
                return None
            self.cash += amount * position['avg_price'] + pnl
            record = OrderRecord(
                order_id=str(uuid.uuid4()),
                symbol=symbol,
                side=OrderSide.SELL if side == OrderSide.BUY else OrderSide.BUY,
                order_type=OrderType.MARKET,
                amount=amount,
                price=position['avg_price'],
                status=OrderStatus.CLOSED,
                exit_price=exit_price,
                pnl=pnl
            )
            self.orders.append(record)

        logger.info(f"Position closed: {symbol} @ {exit_price:.2f}, P&L {pnl:.2f}")
        return record

    def get_positions(self) -> Dict[str, dict]:
        with self._lock:
            return {s: dict(p, side=p['side'].value) for s, p in self.positions.items()}

    def get_available_balance(self, asset: str) -> float:
        if asset != self.quote_asset:
            return 0.0
        with self._lock:
            return self.cash

    def get_account_info(self) -> dict:
        with self._lock:
            reserved = sum(p['amount'] * p['avg_price'] for p in self.positions.values())
            return {
                'cash': self.cash,
                'reserved': reserved,
                'total_equity': self.cash + reserved,
                'open_positions': len(self.positions)
            }
