"""Catalog store: vendors, vendor bills, products and bill line items.

``CatalogStore`` is the boundary the reconciliation pipeline talks to. The
SQLite implementation keeps every call async by running the blocking sqlite3
work in the default executor, opening a fresh connection per call so that
concurrent restocks never share a connection across threads.
"""

import asyncio
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from functools import partial
from pathlib import Path
from typing import Any, Protocol, TypeVar

from loguru import logger

from billscan.errors import CatalogError, UniqueViolationError
from billscan.models import (
    BillItem,
    BillItemDraft,
    NewProduct,
    PaymentStatus,
    Product,
    Vendor,
    VendorBill,
    compute_line_total,
)

T = TypeVar("T")

DEFAULT_DB_FILENAME = "billscan.sqlite3"

PAYMENT_STATUS_SQL = ", ".join(f"'{status.value}'" for status in PaymentStatus)

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS vendors (
  id          INTEGER PRIMARY KEY,
  name        TEXT NOT NULL,
  tax_id      TEXT,
  created_at  TEXT DEFAULT (datetime('now'))
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_vendors_identity
  ON vendors(LOWER(name), COALESCE(tax_id, ''));
CREATE INDEX IF NOT EXISTS idx_vendors_tax_id ON vendors(tax_id);

CREATE TABLE IF NOT EXISTS products (
  id                   INTEGER PRIMARY KEY,
  name                 TEXT NOT NULL,
  part_number          TEXT,
  purchase_rate        REAL NOT NULL DEFAULT 0 CHECK(purchase_rate >= 0),
  selling_rate         REAL,
  gst_percentage       REAL NOT NULL DEFAULT 0,
  discount_percentage  REAL NOT NULL DEFAULT 0,
  current_stock        REAL NOT NULL DEFAULT 0 CHECK(current_stock >= 0),
  minimum_stock        REAL NOT NULL DEFAULT 0,
  hsn_code             TEXT NOT NULL DEFAULT '0000',
  unit                 TEXT NOT NULL DEFAULT 'pcs',
  created_at           TEXT DEFAULT (datetime('now')),
  updated_at           TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS vendor_bills (
  id               INTEGER PRIMARY KEY,
  vendor_id        INTEGER NOT NULL REFERENCES vendors(id) ON DELETE RESTRICT,
  bill_number      TEXT NOT NULL,
  bill_date        TEXT NOT NULL,
  total_amount     REAL NOT NULL DEFAULT 0,
  payment_status   TEXT NOT NULL DEFAULT 'unpaid'
                   CHECK (payment_status IN ({PAYMENT_STATUS_SQL})),
  photo_reference  TEXT,
  notes            TEXT,
  created_at       TEXT DEFAULT (datetime('now')),
  UNIQUE(vendor_id, bill_number)
);

CREATE TABLE IF NOT EXISTS vendor_bill_items (
  id              INTEGER PRIMARY KEY,
  vendor_bill_id  INTEGER NOT NULL REFERENCES vendor_bills(id) ON DELETE CASCADE,
  product_id      INTEGER REFERENCES products(id) ON DELETE SET NULL,
  quantity        REAL NOT NULL CHECK(quantity > 0),
  purchase_rate   REAL NOT NULL,
  gst_percentage  REAL NOT NULL DEFAULT 0,
  total_amount    REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bill_items_bill ON vendor_bill_items(vendor_bill_id);
"""

_PRODUCT_COLUMNS = (
    "name",
    "part_number",
    "purchase_rate",
    "selling_rate",
    "gst_percentage",
    "discount_percentage",
    "current_stock",
    "minimum_stock",
    "hsn_code",
    "unit",
)


def name_key(name: str) -> str:
    """Comparison key for catalog names: trimmed and lowercased."""
    return name.strip().lower()


def _name_key_sql(value: str | None) -> str | None:
    return name_key(value) if value is not None else None


class CatalogStore(Protocol):
    """Operations the reconciliation pipeline needs from the catalog."""

    async def find_vendor_by_tax_id(self, tax_id: str) -> Vendor | None: ...

    async def find_vendor_by_name(self, name: str) -> Vendor | None: ...

    async def create_vendor(self, name: str, tax_id: str | None = None) -> Vendor: ...

    async def create_bill(
        self,
        vendor_id: int,
        bill_number: str,
        bill_date: str,
        total_amount: float = 0.0,
        payment_status: PaymentStatus = PaymentStatus.UNPAID,
        notes: str | None = None,
    ) -> VendorBill: ...

    async def delete_bill(self, bill_id: int) -> None: ...

    async def set_bill_photo(self, bill_id: int, reference: str) -> None: ...

    async def find_products_by_names(self, names: Sequence[str]) -> list[Product]: ...

    async def insert_products(self, products: Sequence[NewProduct]) -> list[Product]: ...

    async def adjust_stock(
        self, product_id: int, quantity_delta: float, purchase_rate: float
    ) -> Product: ...

    async def delete_products(self, product_ids: Sequence[int]) -> None: ...

    async def insert_bill_items(self, items: Sequence[BillItemDraft]) -> list[BillItem]: ...


class SQLiteCatalogStore:
    """SQLite-backed catalog store.

    - Ensures the schema on construction.
    - Surfaces UNIQUE constraint failures as UniqueViolationError and every
      other sqlite3 error as CatalogError.
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_FILENAME) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.create_function("name_key", 1, _name_key_sql, deterministic=True)
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        try:
            with self.connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise CatalogError(f"Could not initialise catalog at {self.db_path}: {e}") from e
        logger.info("Catalog schema ensured at {}", self.db_path)

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise UniqueViolationError(str(e)) from e
            raise CatalogError(str(e)) from e
        except sqlite3.Error as e:
            raise CatalogError(str(e)) from e

    # -- vendors -----------------------------------------------------------

    def _find_vendor(self, where: str, value: str) -> Vendor | None:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT id, name, tax_id FROM vendors WHERE {where} ORDER BY id LIMIT 1",
                (value,),
            ).fetchone()
        return Vendor(**dict(row)) if row else None

    async def find_vendor_by_tax_id(self, tax_id: str) -> Vendor | None:
        return await self._run(self._find_vendor, "tax_id = ?", tax_id.strip())

    async def find_vendor_by_name(self, name: str) -> Vendor | None:
        return await self._run(self._find_vendor, "name_key(name) = ?", name_key(name))

    def _create_vendor(self, name: str, tax_id: str | None) -> Vendor:
        with self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO vendors (name, tax_id) VALUES (?, ?)", (name.strip(), tax_id)
            )
            vendor_id = cur.lastrowid
        logger.debug("Inserted vendor {} ({})", vendor_id, name)
        return Vendor(id=vendor_id, name=name.strip(), tax_id=tax_id)

    async def create_vendor(self, name: str, tax_id: str | None = None) -> Vendor:
        return await self._run(self._create_vendor, name, tax_id)

    # -- bills -------------------------------------------------------------

    def _create_bill(
        self,
        vendor_id: int,
        bill_number: str,
        bill_date: str,
        total_amount: float,
        payment_status: PaymentStatus,
        notes: str | None,
    ) -> VendorBill:
        with self.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO vendor_bills
                  (vendor_id, bill_number, bill_date, total_amount, payment_status, notes)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (vendor_id, bill_number, bill_date, total_amount, payment_status.value, notes),
            )
            bill_id = cur.lastrowid
        return VendorBill(
            id=bill_id,
            vendor_id=vendor_id,
            bill_number=bill_number,
            bill_date=bill_date,
            total_amount=total_amount,
            payment_status=payment_status,
            notes=notes,
        )

    async def create_bill(
        self,
        vendor_id: int,
        bill_number: str,
        bill_date: str,
        total_amount: float = 0.0,
        payment_status: PaymentStatus = PaymentStatus.UNPAID,
        notes: str | None = None,
    ) -> VendorBill:
        return await self._run(
            self._create_bill,
            vendor_id,
            bill_number,
            bill_date,
            total_amount,
            payment_status,
            notes,
        )

    def _delete_bill(self, bill_id: int) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM vendor_bills WHERE id = ?", (bill_id,))

    async def delete_bill(self, bill_id: int) -> None:
        await self._run(self._delete_bill, bill_id)

    def _set_bill_photo(self, bill_id: int, reference: str) -> None:
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE vendor_bills SET photo_reference = ? WHERE id = ?",
                (reference, bill_id),
            )
            if cur.rowcount == 0:
                raise CatalogError(f"Bill {bill_id} not found")

    async def set_bill_photo(self, bill_id: int, reference: str) -> None:
        await self._run(self._set_bill_photo, bill_id, reference)

    def _get_bill(self, bill_id: int) -> VendorBill | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, vendor_id, bill_number, bill_date, total_amount,
                       payment_status, photo_reference, notes
                FROM vendor_bills WHERE id = ?
                """,
                (bill_id,),
            ).fetchone()
        return VendorBill(**dict(row)) if row else None

    async def get_bill(self, bill_id: int) -> VendorBill | None:
        return await self._run(self._get_bill, bill_id)

    # -- products ----------------------------------------------------------

    def _find_products_by_names(self, keys: list[str]) -> list[Product]:
        placeholders = ", ".join("?" for _ in keys)
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT id, {', '.join(_PRODUCT_COLUMNS)} FROM products "
                f"WHERE name_key(name) IN ({placeholders}) ORDER BY id",
                keys,
            ).fetchall()
        return [Product(**dict(row)) for row in rows]

    async def find_products_by_names(self, names: Sequence[str]) -> list[Product]:
        """Return every product whose name matches one of names, ignoring case."""
        keys = sorted({name_key(n) for n in names if n and n.strip()})
        if not keys:
            return []
        return await self._run(self._find_products_by_names, keys)

    def _insert_products(self, products: Sequence[NewProduct]) -> list[Product]:
        columns = ", ".join(_PRODUCT_COLUMNS)
        placeholders = ", ".join("?" for _ in _PRODUCT_COLUMNS)
        inserted: list[Product] = []
        with self.connect() as conn:
            for product in products:
                values = product.model_dump(include=set(_PRODUCT_COLUMNS))
                cur = conn.execute(
                    f"INSERT INTO products ({columns}) VALUES ({placeholders})",
                    tuple(values[c] for c in _PRODUCT_COLUMNS),
                )
                inserted.append(Product(id=cur.lastrowid, **product.model_dump()))
        logger.debug("Inserted {} product(s)", len(inserted))
        return inserted

    async def insert_products(self, products: Sequence[NewProduct]) -> list[Product]:
        """Insert all products in one transaction; ids come back in input order."""
        if not products:
            return []
        return await self._run(self._insert_products, list(products))

    def _get_product(self, product_id: int) -> Product | None:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT id, {', '.join(_PRODUCT_COLUMNS)} FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
        return Product(**dict(row)) if row else None

    async def get_product(self, product_id: int) -> Product | None:
        return await self._run(self._get_product, product_id)

    def _adjust_stock(
        self, product_id: int, quantity_delta: float, purchase_rate: float
    ) -> Product:
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE products
                SET current_stock = current_stock + ?,
                    purchase_rate = ?,
                    updated_at = datetime('now')
                WHERE id = ?
                """,
                (quantity_delta, purchase_rate, product_id),
            )
            if cur.rowcount == 0:
                raise CatalogError(f"Product {product_id} not found")
            row = conn.execute(
                f"SELECT id, {', '.join(_PRODUCT_COLUMNS)} FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
        return Product(**dict(row))

    async def adjust_stock(
        self, product_id: int, quantity_delta: float, purchase_rate: float
    ) -> Product:
        """Add quantity_delta to the product's stock and set its purchase rate.

        The increment happens in SQL so concurrent ingestions cannot lose updates.
        """
        return await self._run(self._adjust_stock, product_id, quantity_delta, purchase_rate)

    def _delete_products(self, product_ids: list[int]) -> None:
        placeholders = ", ".join("?" for _ in product_ids)
        with self.connect() as conn:
            conn.execute(f"DELETE FROM products WHERE id IN ({placeholders})", product_ids)

    async def delete_products(self, product_ids: Sequence[int]) -> None:
        if not product_ids:
            return
        await self._run(self._delete_products, list(product_ids))

    def _count_products(self) -> int:
        with self.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]

    async def count_products(self) -> int:
        return await self._run(self._count_products)

    # -- bill items --------------------------------------------------------

    def _insert_bill_items(self, items: Sequence[BillItemDraft]) -> list[BillItem]:
        inserted: list[BillItem] = []
        with self.connect() as conn:
            for item in items:
                # Totals are always derived here, never taken from the caller
                total = compute_line_total(item.quantity, item.purchase_rate, item.gst_percentage)
                cur = conn.execute(
                    """
                    INSERT INTO vendor_bill_items
                      (vendor_bill_id, product_id, quantity, purchase_rate,
                       gst_percentage, total_amount)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.vendor_bill_id,
                        item.product_id,
                        item.quantity,
                        item.purchase_rate,
                        item.gst_percentage,
                        total,
                    ),
                )
                inserted.append(BillItem(id=cur.lastrowid, total_amount=total, **item.model_dump()))
        return inserted

    async def insert_bill_items(self, items: Sequence[BillItemDraft]) -> list[BillItem]:
        if not items:
            return []
        return await self._run(self._insert_bill_items, list(items))

    def _list_bill_items(self, bill_id: int | None) -> list[BillItem]:
        query = (
            "SELECT id, vendor_bill_id, product_id, quantity, purchase_rate, "
            "gst_percentage, total_amount FROM vendor_bill_items"
        )
        params: tuple[Any, ...] = ()
        if bill_id is not None:
            query += " WHERE vendor_bill_id = ?"
            params = (bill_id,)
        with self.connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [BillItem(**dict(row)) for row in rows]

    async def list_bill_items(self, bill_id: int | None = None) -> list[BillItem]:
        """Return bill items, for one bill or for all bills when bill_id is None."""
        return await self._run(self._list_bill_items, bill_id)
