"""
Fulfillment Service — per-product CSV ledgers

  Sales/<productId>_<name>.csv             Date, Quantity, Total Amount
  Inventory_Trends/<productId>_<name>.csv  Date, Product ID, Product Name,
                                           Pre Quantity, New Quantity

Files are only ever appended to. The header goes in once, when the file is
still empty, under an exclusive flock, and each append is a single write so
rows from separate calls cannot interleave.
"""

import asyncio
import csv
import fcntl
import io
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

SALES_COLUMNS = (
    ("date", "Date"),
    ("quantity", "Quantity"),
    ("total_amount", "Total Amount"),
)

INVENTORY_TREND_COLUMNS = (
    ("date", "Date"),
    ("product_id", "Product ID"),
    ("product_name", "Product Name"),
    ("pre_qty", "Pre Quantity"),
    ("new_qty", "New Quantity"),
)


def ledger_key(product_id: int, product_name: str) -> str:
    name = re.sub(r"[\s/\\]", "_", product_name)
    return f"{product_id}_{name}"


class Ledger:
    def __init__(self, directory: Path, columns: Sequence[tuple[str, str]]) -> None:
        self.directory = Path(directory)
        self.columns = tuple(columns)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.csv"

    def _format(self, rows: list[list]) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerows(rows)
        return buf.getvalue()

    def append(self, key: str, record: Mapping) -> Path:
        path = self.path_for(key)
        row = ["" if record.get(col) is None else record.get(col) for col, _ in self.columns]

        with open(path, "a", newline="", encoding="utf-8") as f:
            # Held across the size check and the write so only one writer,
            # in any process, puts the header into a new file.
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                rows = [row]
                if f.seek(0, os.SEEK_END) == 0:
                    rows.insert(0, [title for _, title in self.columns])
                f.write(self._format(rows))
                f.flush()
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)
        return path

    async def append_async(self, key: str, record: Mapping) -> Path:
        """append() on a worker thread, keeping file I/O off the event loop."""
        return await asyncio.to_thread(self.append, key, record)

    def read(self, key: str) -> list[dict]:
        """Data rows keyed by column title; empty when the ledger does not exist."""
        path = self.path_for(key)
        if not path.exists():
            return []
        with open(path, newline="", encoding="utf-8") as f:
            return list(csv.DictReader(f))


class SalesLedger(Ledger):
    def __init__(self, directory: Path) -> None:
        super().__init__(directory, SALES_COLUMNS)


class InventoryTrendLedger(Ledger):
    def __init__(self, directory: Path) -> None:
        super().__init__(directory, INVENTORY_TREND_COLUMNS)
