"""
Execution: order lifecycle, portfolio ledger, exchange boundary, state store.
Paper exchange by default. No live capital.
"""

from execution.exchange import AdapterGateway, ExchangeAdapter, PaperExchange
from execution.ledger import PortfolioLedger
from execution.models import (
    ExecutionReport,
    Fill,
    Order,
    OrderRequest,
    OrderStatus,
    OrderType,
    OrderValidation,
    TimeInForce,
)
from execution.order_manager import OrderManager
from execution.store import StateStore

__all__ = [
    "AdapterGateway",
    "ExchangeAdapter",
    "ExecutionReport",
    "Fill",
    "Order",
    "OrderManager",
    "OrderRequest",
    "OrderStatus",
    "OrderType",
    "OrderValidation",
    "PaperExchange",
    "PortfolioLedger",
    "StateStore",
    "TimeInForce",
]
