"""
Fulfillment Service — business records

Shapes of the rows the workflow reads and writes through the repositories.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class OrderStatus(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    COMPLETED = "completed"


class Product(BaseModel):
    id: int
    name: str
    price: float
    stock_quantity: int


class OrderItem(BaseModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    product: Product


class Order(BaseModel):
    id: int
    customer_id: int | None = None
    total_amount: float
    status: OrderStatus
    items: list[OrderItem] = []


class Sale(BaseModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    total_amount: float
    created_at: datetime | None = None
