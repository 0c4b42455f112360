"""Tests for the per-product CSV ledgers."""

import asyncio

import pytest

from app.ledger import (
    INVENTORY_TREND_COLUMNS,
    InventoryTrendLedger,
    Ledger,
    SalesLedger,
    ledger_key,
)


def _lines(path):
    return path.read_text(encoding="utf-8").splitlines()


class TestLedgerKey:
    def test_whitespace_becomes_underscore(self):
        assert ledger_key(7, "Maize Flour 2kg") == "7_Maize_Flour_2kg"

    def test_plain_name(self):
        assert ledger_key(9, "Sugar") == "9_Sugar"

    def test_path_separators_become_underscore(self):
        assert ledger_key(3, "Oil 1/2L") == "3_Oil_1_2L"
        assert ledger_key(4, "Salt\\Fine") == "4_Salt_Fine"

    def test_name_with_slash_stays_in_ledger_directory(self, tmp_path):
        ledger = SalesLedger(tmp_path)
        path = ledger.append(ledger_key(3, "Oil 1/2L"), {"date": "d", "quantity": 1, "total_amount": 5})

        assert path.parent == tmp_path
        assert len(ledger.read("3_Oil_1_2L")) == 1


class TestLedgerAppend:
    def test_creates_directory(self, tmp_path):
        ledger = SalesLedger(tmp_path / "nested" / "Sales")
        assert ledger.directory.is_dir()

    def test_first_append_writes_header_once(self, tmp_path):
        ledger = SalesLedger(tmp_path)
        path = ledger.append("7_Maize", {"date": "2026-01-01", "quantity": 2, "total_amount": 20.0})

        assert _lines(path) == ["Date,Quantity,Total Amount", "2026-01-01,2,20.0"]

    def test_appends_are_monotonic(self, tmp_path):
        """N appends then M more: N + M data rows and exactly one header."""
        ledger = SalesLedger(tmp_path)
        for i in range(3):
            ledger.append("7_Maize", {"date": f"d{i}", "quantity": i, "total_amount": i * 10})

        # a fresh writer over the same directory keeps appending
        again = SalesLedger(tmp_path)
        for i in range(3, 5):
            again.append("7_Maize", {"date": f"d{i}", "quantity": i, "total_amount": i * 10})

        lines = _lines(ledger.path_for("7_Maize"))
        assert lines.count("Date,Quantity,Total Amount") == 1
        assert len(lines) == 1 + 5
        assert [row["Date"] for row in again.read("7_Maize")] == ["d0", "d1", "d2", "d3", "d4"]

    def test_ledgers_are_keyed_separately(self, tmp_path):
        ledger = SalesLedger(tmp_path)
        ledger.append("7_Maize", {"date": "a", "quantity": 1, "total_amount": 10})
        ledger.append("9_Oil", {"date": "b", "quantity": 1, "total_amount": 5})

        assert len(ledger.read("7_Maize")) == 1
        assert len(ledger.read("9_Oil")) == 1

    def test_existing_header_is_not_repeated(self, tmp_path):
        path = tmp_path / "7_Maize.csv"
        path.write_text("Date,Quantity,Total Amount\nold,1,10\n", encoding="utf-8")

        SalesLedger(tmp_path).append("7_Maize", {"date": "new", "quantity": 2, "total_amount": 20})

        assert _lines(path) == ["Date,Quantity,Total Amount", "old,1,10", "new,2,20"]

    def test_missing_fields_are_empty(self, tmp_path):
        ledger = Ledger(tmp_path, INVENTORY_TREND_COLUMNS)
        ledger.append("1_X", {"date": "d", "product_id": 1})

        assert ledger.read("1_X") == [
            {
                "Date": "d",
                "Product ID": "1",
                "Product Name": "",
                "Pre Quantity": "",
                "New Quantity": "",
            }
        ]

    def test_values_with_commas_are_quoted(self, tmp_path):
        ledger = InventoryTrendLedger(tmp_path)
        ledger.append(
            "3_Rice",
            {"date": "d", "product_id": 3, "product_name": "Rice, long grain", "pre_qty": 5, "new_qty": 4},
        )

        assert ledger.read("3_Rice")[0]["Product Name"] == "Rice, long grain"

    def test_read_missing_ledger(self, tmp_path):
        assert SalesLedger(tmp_path).read("404_Nothing") == []


class TestConcurrentAppends:
    @pytest.mark.asyncio
    async def test_append_async_writes_row(self, tmp_path):
        ledger = SalesLedger(tmp_path)
        await ledger.append_async("7_Maize", {"date": "d", "quantity": 2, "total_amount": 20})

        assert _lines(ledger.path_for("7_Maize")) == ["Date,Quantity,Total Amount", "d,2,20"]

    @pytest.mark.asyncio
    async def test_parallel_writers_share_one_header(self, tmp_path):
        """Separate writers racing on a new file: one header, every row intact."""
        writers = [SalesLedger(tmp_path) for _ in range(10)]

        await asyncio.gather(
            *(
                w.append_async("7_Maize", {"date": f"d{i}", "quantity": i, "total_amount": i * 10})
                for i, w in enumerate(writers)
            )
        )

        lines = _lines(writers[0].path_for("7_Maize"))
        assert lines.count("Date,Quantity,Total Amount") == 1
        assert lines[0] == "Date,Quantity,Total Amount"
        assert sorted(r["Date"] for r in writers[0].read("7_Maize")) == sorted(f"d{i}" for i in range(10))
