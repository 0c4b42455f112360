"""
Fulfillment Service — workflow steps

One function per unit of work in the order-completion chain:

  store-sale → append-sales-csv → update-inventory → append-inventory-trends-csv

Each step receives the shared StepContext and its job payload and returns a
JSON-serialisable result. Raising means the attempt failed; the worker retries
according to the step's RetryPolicy.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from . import config
from .errors import InsufficientStockError, NotFoundError, StockConflictError, UnknownStepError
from .ledger import InventoryTrendLedger, SalesLedger, ledger_key
from .models import Order
from .repositories import OrderRepository, ProductRepository, SaleRepository

logger = logging.getLogger(__name__)


class StepName(str, Enum):
    STORE_SALE = "store-sale"
    APPEND_SALES_CSV = "append-sales-csv"
    UPDATE_INVENTORY = "update-inventory"
    APPEND_INVENTORY_TRENDS_CSV = "append-inventory-trends-csv"


class RetryPolicy(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff_delay: float = Field(default=1.0, ge=0)

    def delay_for(self, retry: int) -> float:
        """Exponential backoff: delay, 2*delay, 4*delay, ... for retry 1, 2, 3, ..."""
        return self.backoff_delay * 2 ** (retry - 1)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(attempts=config.STEP_ATTEMPTS, backoff_delay=config.STEP_BACKOFF_DELAY)


@dataclass
class StepContext:
    orders: OrderRepository
    products: ProductRepository
    sales: SaleRepository
    sales_ledger: SalesLedger
    trend_ledger: InventoryTrendLedger


StepFunc = Callable[[StepContext, dict], Awaitable[Any]]


@dataclass(frozen=True)
class RegisteredStep:
    name: StepName
    func: StepFunc
    retry: RetryPolicy


class StepRegistry:
    def __init__(self) -> None:
        self._steps: dict[StepName, RegisteredStep] = {}

    def register(
        self,
        name: StepName,
        func: StepFunc,
        retry: RetryPolicy | None = None,
    ) -> None:
        if not isinstance(name, StepName):
            raise ValueError(f"Not a workflow step: {name!r}")
        if name in self._steps:
            raise ValueError(f"Step already registered: {name.value}")
        self._steps[name] = RegisteredStep(name, func, retry or RetryPolicy())

    def get(self, name: StepName) -> RegisteredStep:
        try:
            return self._steps[StepName(name)]
        except (KeyError, ValueError):
            raise UnknownStepError(f"No step registered for {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._steps


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _load_order(ctx: StepContext, order_id: int) -> Order:
    order = await ctx.orders.find(order_id)
    if not order or not order.items:
        raise NotFoundError("Order or items not found")
    return order


# ── Step 1: store sales ──────────────────────────


async def store_sale(ctx: StepContext, payload: dict) -> list[dict]:
    order_id = payload["orderId"]
    order = await _load_order(ctx, order_id)

    sales = []
    for item in order.items:
        sale = await ctx.sales.create(
            order_id,
            item.product_id,
            item.quantity,
            item.quantity * item.product.price,
        )
        sales.append(sale.model_dump(mode="json"))

    logger.info("Stored %d sale(s) for order %s", len(sales), order_id)
    return sales


# ── Step 2: sales ledger ─────────────────────────


async def append_sales_csv(ctx: StepContext, payload: dict) -> dict:
    order_id = payload["orderId"]
    order = await _load_order(ctx, order_id)

    for item in order.items:
        product = item.product
        await ctx.sales_ledger.append_async(
            ledger_key(product.id, product.name),
            {
                "date": _now(),
                "quantity": item.quantity,
                "total_amount": item.quantity * product.price,
            },
        )

    return {"message": "Sales data appended to CSVs"}


# ── Step 3: stock decrement ──────────────────────


async def update_inventory(ctx: StepContext, payload: dict) -> list[dict]:
    order_id = payload["orderId"]
    order = await _load_order(ctx, order_id)

    quantities: dict[int, int] = {}
    for item in order.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

    # Check every product before writing any, so a shortfall leaves stock untouched.
    updates = []
    for product_id, quantity in quantities.items():
        product = await ctx.products.find(product_id)
        if not product:
            logger.warning(
                "Product %s of order %s no longer exists, skipping",
                product_id,
                order_id,
            )
            continue

        pre_qty = product.stock_quantity
        new_qty = pre_qty - quantity
        if new_qty < 0:
            raise InsufficientStockError(product.id, quantity, pre_qty)

        updates.append(
            {
                "productId": product.id,
                "name": product.name,
                "preQty": pre_qty,
                "newQty": new_qty,
            }
        )

    # All or nothing: another order may have moved any of these since the read.
    conflict = await ctx.products.apply_stock_changes(
        [(u["productId"], u["newQty"], u["preQty"]) for u in updates]
    )
    if conflict is not None:
        expected = next(u["preQty"] for u in updates if u["productId"] == conflict)
        raise StockConflictError(conflict, expected)

    return updates


# ── Step 4: inventory-trend ledger ───────────────


async def append_inventory_trends_csv(ctx: StepContext, payload: dict) -> dict:
    for update in payload.get("updates", []):
        await ctx.trend_ledger.append_async(
            ledger_key(update["productId"], update["name"]),
            {
                "date": _now(),
                "product_id": update["productId"],
                "product_name": update["name"],
                "pre_qty": update["preQty"],
                "new_qty": update["newQty"],
            },
        )

    return {"message": "Inventory trends appended to CSVs"}


def build_registry(retry: RetryPolicy | None = None) -> StepRegistry:
    """Registry with the four order-completion steps, all on the same retry policy."""
    retry = retry or RetryPolicy.from_config()
    registry = StepRegistry()
    registry.register(StepName.STORE_SALE, store_sale, retry)
    registry.register(StepName.APPEND_SALES_CSV, append_sales_csv, retry)
    registry.register(StepName.UPDATE_INVENTORY, update_inventory, retry)
    registry.register(StepName.APPEND_INVENTORY_TRENDS_CSV, append_inventory_trends_csv, retry)
    return registry
