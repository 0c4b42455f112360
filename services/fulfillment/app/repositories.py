"""
Fulfillment Service — repositories

Narrow data-access interface onto the shop's order, product and sale tables.
Each call opens its own session; writes commit before returning.
"""

from collections.abc import Sequence

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .models import Order, OrderItem, Product, Sale


def _product_from_row(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        price=float(row.price),
        stock_quantity=row.stock_quantity,
    )


class OrderRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def find(self, order_id: int) -> Order | None:
        """Order with its line items, each joined with the current product row."""
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT id, customer_id, total_amount, status
                    FROM orders
                    WHERE id = :id
                """),
                {"id": order_id},
            )
            row = result.fetchone()
            if not row:
                return None

            items_result = await session.execute(
                text("""
                    SELECT oi.id, oi.order_id, oi.product_id, oi.quantity,
                           p.name AS product_name, p.price AS product_price,
                           p.stock_quantity AS product_stock
                    FROM order_items oi
                    JOIN products p ON p.id = oi.product_id
                    WHERE oi.order_id = :id
                    ORDER BY oi.id
                """),
                {"id": order_id},
            )
            items = [
                OrderItem(
                    id=item.id,
                    order_id=item.order_id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    product=Product(
                        id=item.product_id,
                        name=item.product_name,
                        price=float(item.product_price),
                        stock_quantity=item.product_stock,
                    ),
                )
                for item in items_result.fetchall()
            ]

        return Order(
            id=row.id,
            customer_id=row.customer_id,
            total_amount=float(row.total_amount),
            status=row.status,
            items=items,
        )


class ProductRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def find(self, product_id: int) -> Product | None:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT id, name, price, stock_quantity
                    FROM products
                    WHERE id = :id
                """),
                {"id": product_id},
            )
            row = result.fetchone()
            if not row:
                return None
            return _product_from_row(row)

    async def update_stock(
        self,
        product_id: int,
        new_qty: int,
        expected_qty: int | None = None,
    ) -> bool:
        """
        Write the new stock level.

        With expected_qty the update only applies if the stored value still
        equals it (compare-and-swap). Returns False when no row was updated.
        """
        sql = "UPDATE products SET stock_quantity = :new_qty WHERE id = :id"
        params = {"new_qty": new_qty, "id": product_id}
        if expected_qty is not None:
            sql += " AND stock_quantity = :expected_qty"
            params["expected_qty"] = expected_qty

        async with self._session_factory() as session:
            result = await session.execute(text(sql), params)
            await session.commit()
            return result.rowcount == 1

    async def apply_stock_changes(
        self, changes: Sequence[tuple[int, int, int]]
    ) -> int | None:
        """
        Compare-and-swap several products in one transaction.

        changes holds (product_id, new_qty, expected_qty). Either every row is
        written, or none is and the id of the first product whose stored stock
        no longer matched expected_qty is returned.
        """
        async with self._session_factory() as session:
            for product_id, new_qty, expected_qty in changes:
                result = await session.execute(
                    text("""
                        UPDATE products
                        SET stock_quantity = :new_qty
                        WHERE id = :id AND stock_quantity = :expected_qty
                    """),
                    {"new_qty": new_qty, "id": product_id, "expected_qty": expected_qty},
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return product_id
            await session.commit()
        return None


class SaleRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        order_id: int,
        product_id: int,
        quantity: int,
        total: float,
    ) -> Sale:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    INSERT INTO sales (order_id, product_id, quantity, total_amount)
                    VALUES (:order_id, :product_id, :quantity, :total)
                    RETURNING id, created_at
                """),
                {
                    "order_id": order_id,
                    "product_id": product_id,
                    "quantity": quantity,
                    "total": total,
                },
            )
            row = result.fetchone()
            await session.commit()

        return Sale(
            id=row.id,
            order_id=order_id,
            product_id=product_id,
            quantity=quantity,
            total_amount=total,
            created_at=row.created_at,
        )

    async def list_for_order(self, order_id: int) -> list[Sale]:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT id, order_id, product_id, quantity, total_amount, created_at
                    FROM sales
                    WHERE order_id = :order_id
                    ORDER BY id
                """),
                {"order_id": order_id},
            )
            return [
                Sale(
                    id=row.id,
                    order_id=row.order_id,
                    product_id=row.product_id,
                    quantity=row.quantity,
                    total_amount=float(row.total_amount),
                    created_at=row.created_at,
                )
                for row in result.fetchall()
            ]
