"""Commit one reconciled invoice to the catalog as a compensating saga.

Steps, each gated on what it causally needs:

1. find or create the vendor
2. create the bill header (a duplicate bill number stops everything)
3. insert new products in one batch and restock existing ones concurrently
4. insert bill line items; on failure undo steps 2 and 3
5. attach the invoice photo, best effort

Failures never propagate to the caller. They are recorded on the returned
``CommitReport`` so the caller always sees what was and was not written.
"""

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date

from loguru import logger

from billscan.errors import (
    AttachmentError,
    BillCreationError,
    BillItemsError,
    CatalogError,
    CompensationError,
    DuplicateBillError,
    ProductCommitError,
    UniqueViolationError,
    ValidationFailure,
    VendorResolutionError,
)
from billscan.integrations.attachments import AttachmentStore
from billscan.integrations.catalog import CatalogStore, name_key
from billscan.models import (
    BillItemDraft,
    CommitReport,
    EntityError,
    InvoiceDraft,
    NewProduct,
    PaymentStatus,
    PhotoBlob,
    Product,
    ProductAction,
    ProductOutcome,
    ResolvedLineItem,
    Vendor,
    VendorBill,
    VendorDraft,
)
from billscan.pipeline.validator import validate_batch

BILL_NOTES = "Created from invoice scanner"


@dataclass
class _Restock:
    product_id: int
    name: str
    quantity: float
    previous_rate: float


@dataclass
class _Saga:
    """Writes made by steps 2 and 3, kept so they can be undone."""

    bill: VendorBill | None = None
    created: list[Product] = field(default_factory=list)
    restocks: list[_Restock] = field(default_factory=list)

    @property
    def pending(self) -> bool:
        return self.bill is not None or bool(self.created) or bool(self.restocks)

    def take(self) -> "_Saga":
        """Hand the recorded writes over for undoing, leaving this saga empty."""
        taken = _Saga(bill=self.bill, created=self.created, restocks=self.restocks)
        self.bill, self.created, self.restocks = None, [], []
        return taken


def attachment_name(vendor_id: int, bill_id: int, blob: PhotoBlob) -> str:
    return f"vendor_{vendor_id}_bill_{bill_id}_{int(time.time() * 1000)}.{blob.extension}"


class CommitOrchestrator:
    """Runs the ordered multi-entity commit for one invoice.

    Attributes:
        catalog: Store holding vendors, bills, products and bill items
        attachments: Optional store for the invoice photo
    """

    def __init__(
        self, catalog: CatalogStore, attachments: AttachmentStore | None = None
    ) -> None:
        self.catalog = catalog
        self.attachments = attachments

    async def commit(
        self,
        items: Sequence[ResolvedLineItem],
        vendor: VendorDraft,
        invoice: InvoiceDraft,
        photo: PhotoBlob | None = None,
    ) -> CommitReport:
        """Commit a validated, resolved batch and report per-entity outcomes.

        Args:
            items: Line items tagged by the duplicate resolver
            vendor: Vendor identity from the invoice
            invoice: Bill header fields from the invoice
            photo: Optional invoice image to attach to the bill

        Returns:
            CommitReport; never raises for store or attachment failures
        """
        report = CommitReport()
        saga = _Saga()
        try:
            await self._commit(list(items), vendor, invoice, photo, report, saga)
        except Exception as e:
            logger.exception("Unexpected error while committing invoice")
            report.errors.append(EntityError.from_exception(e, entity="transaction"))
            if saga.pending:
                try:
                    await self._compensate(saga, report)
                except Exception as undo_error:
                    logger.exception("Compensation failed")
                    error = CompensationError(f"Compensation failed: {undo_error}")
                    report.errors.append(EntityError.from_exception(error, entity="transaction"))
                    report.compensated = False
        return report

    async def _commit(
        self,
        items: list[ResolvedLineItem],
        vendor: VendorDraft,
        invoice: InvoiceDraft,
        photo: PhotoBlob | None,
        report: CommitReport,
        saga: _Saga,
    ) -> None:
        validation = validate_batch(items)
        if not validation.all_valid:
            failure = ValidationFailure(validation.problems())
            logger.warning("Refusing to commit: {}", failure)
            report.errors.append(EntityError.from_exception(failure, entity="batch"))
            return

        for result in validation.results:
            for message in result.warnings:
                report.warnings.append(
                    EntityError(error_type="LowConfidence", entity=result.name, message=message)
                )
        for item in items:
            if item.ambiguous_match:
                report.warnings.append(
                    EntityError(
                        error_type="AmbiguousMatch",
                        entity=item.name,
                        message=(
                            f"Several catalog products share this name; "
                            f"restocked product {item.matched_product_id}"
                        ),
                    )
                )

        # Step 1: vendor
        try:
            vendor_record = await self._resolve_vendor(vendor, report)
        except VendorResolutionError as e:
            logger.error("{}", e)
            report.errors.append(EntityError.from_exception(e, entity="vendor"))
            return

        # Step 2: bill header
        if vendor_record is not None and invoice.bill_number:
            try:
                saga.bill = await self._create_bill(vendor_record, invoice, report)
            except BillCreationError as e:
                logger.error("{}", e)
                report.errors.append(
                    EntityError.from_exception(e, entity=f"bill {invoice.bill_number}")
                )
                return
        elif vendor_record is not None:
            report.warnings.append(
                EntityError(
                    error_type="MissingBillNumber",
                    entity="bill",
                    message="Invoice has no bill number; bill and bill items were not created",
                )
            )

        # Step 3: products
        product_ids = await self._materialize_products(items, report, saga)

        if saga.bill is None:
            if photo is not None:
                report.warnings.append(
                    EntityError(
                        error_type="AttachmentError",
                        entity="photo",
                        message="No bill was created; photo not attached",
                    )
                )
            return

        # Step 4: bill items
        try:
            await self._insert_bill_items(saga.bill, items, product_ids, report)
        except BillItemsError as e:
            logger.error("{}", e)
            report.errors.append(
                EntityError.from_exception(e, entity=f"bill {saga.bill.bill_number}")
            )
            await self._compensate(saga, report)
            return

        # Step 5: photo
        if photo is not None and vendor_record is not None:
            await self._attach_photo(vendor_record, saga.bill, photo, report)

    async def _resolve_vendor(self, draft: VendorDraft, report: CommitReport) -> Vendor | None:
        name = (draft.name or "").strip()
        if not name:
            report.warnings.append(
                EntityError(
                    error_type="MissingVendor",
                    entity="vendor",
                    message="Invoice has no vendor name; vendor and bill were not created",
                )
            )
            return None

        created = False
        try:
            found = None
            if draft.tax_id:
                found = await self.catalog.find_vendor_by_tax_id(draft.tax_id)
            if found is None:
                found = await self.catalog.find_vendor_by_name(name)
            if found is None:
                try:
                    found = await self.catalog.create_vendor(name, draft.tax_id)
                    created = True
                except UniqueViolationError:
                    # Another ingestion created the same vendor first
                    found = await self.catalog.find_vendor_by_name(name)
                    if found is None:
                        raise
        except CatalogError as e:
            raise VendorResolutionError(f"Vendor resolution failed: {e}") from e

        report.vendor_id = found.id
        report.vendor_name = found.name
        report.vendor_created = created
        logger.info("{} vendor {} ({})", "Created" if created else "Using", found.id, found.name)
        return found

    async def _create_bill(
        self, vendor: Vendor, invoice: InvoiceDraft, report: CommitReport
    ) -> VendorBill:
        bill_number = invoice.bill_number or ""
        try:
            bill = await self.catalog.create_bill(
                vendor_id=vendor.id,
                bill_number=bill_number,
                bill_date=invoice.bill_date or date.today().isoformat(),
                total_amount=invoice.total_amount or 0.0,
                payment_status=PaymentStatus.UNPAID,
                notes=BILL_NOTES,
            )
        except UniqueViolationError as e:
            raise DuplicateBillError(bill_number, vendor.name) from e
        except CatalogError as e:
            raise BillCreationError(f"Bill creation failed: {e}") from e

        report.bill_id = bill.id
        report.bill_number = bill.bill_number
        report.bill_created = True
        logger.info("Created bill {} ({}) for vendor {}", bill.id, bill.bill_number, vendor.id)
        return bill

    async def _materialize_products(
        self, items: list[ResolvedLineItem], report: CommitReport, saga: _Saga
    ) -> list[int | None]:
        """Create new products and restock existing ones.

        Lines naming the same product share one write: new lines with the
        same name key become one product holding their summed quantity, and
        restock lines of the same product become one stock adjustment. Every
        line still gets its own bill item.

        Returns the product id for each item, None where the item failed.
        """
        product_ids: list[int | None] = [None] * len(items)
        new_groups: dict[str, list[int]] = {}
        restock_groups: dict[int, list[int]] = {}
        for i, item in enumerate(items):
            if not item.is_duplicate:
                new_groups.setdefault(name_key(item.name), []).append(i)
            elif item.matched_product_id is None:
                self._record_product_failure(
                    report, item, ProductCommitError(f"No catalog product matched {item.name!r}")
                )
            else:
                restock_groups.setdefault(item.matched_product_id, []).append(i)

        if new_groups:
            groups = list(new_groups.values())
            payload = [
                NewProduct.from_line_item(items[group[0]]).model_copy(
                    update={"current_stock": sum(items[i].quantity for i in group)}
                )
                for group in groups
            ]
            try:
                inserted = await self.catalog.insert_products(payload)
            except CatalogError as e:
                for group in groups:
                    for i in group:
                        self._record_product_failure(
                            report, items[i], ProductCommitError(f"Product creation failed: {e}")
                        )
            else:
                for group, product in zip(groups, inserted, strict=True):
                    for i in group:
                        product_ids[i] = product.id
                    saga.created.append(product)
                    report.products_created += 1
                    report.details.append(
                        ProductOutcome(
                            name=product.name,
                            action=ProductAction.CREATED,
                            product_id=product.id,
                            stock=product.current_stock,
                        )
                    )

        if restock_groups:
            # One adjustment per product, so the updates can run concurrently
            groups = list(restock_groups.items())
            results = await asyncio.gather(
                *(
                    self._restock(product_id, [items[i] for i in group])
                    for product_id, group in groups
                ),
                return_exceptions=True,
            )
            for (product_id, group), result in zip(groups, results, strict=True):
                first = items[group[0]]
                if isinstance(result, Exception):
                    for i in group:
                        self._record_product_failure(
                            report, items[i], ProductCommitError(f"Product update failed: {result}")
                        )
                    continue
                if isinstance(result, BaseException):
                    raise result

                added = sum(items[i].quantity for i in group)
                for i in group:
                    product_ids[i] = product_id
                saga.restocks.append(
                    _Restock(
                        product_id=product_id,
                        name=first.name,
                        quantity=added,
                        previous_rate=(
                            first.matched_purchase_rate
                            if first.matched_purchase_rate is not None
                            else first.purchase_rate
                        ),
                    )
                )
                report.products_updated += 1
                report.details.append(
                    ProductOutcome(
                        name=first.name,
                        action=ProductAction.UPDATED,
                        product_id=product_id,
                        old_stock=result.current_stock - added,
                        added=added,
                        new_stock=result.current_stock,
                    )
                )

        logger.info(
            "Products: {} created, {} restocked, {} failed",
            report.products_created,
            report.products_updated,
            sum(1 for pid in product_ids if pid is None),
        )
        return product_ids

    async def _restock(self, product_id: int, lines: list[ResolvedLineItem]) -> Product:
        """Add the lines' quantities; the last line's rate becomes the purchase rate."""
        return await self.catalog.adjust_stock(
            product_id, sum(line.quantity for line in lines), lines[-1].purchase_rate
        )

    @staticmethod
    def _record_product_failure(
        report: CommitReport, item: ResolvedLineItem, error: ProductCommitError
    ) -> None:
        logger.warning("{}: {}", item.name, error)
        report.errors.append(EntityError.from_exception(error, entity=item.name))
        report.details.append(ProductOutcome(name=item.name, action=ProductAction.FAILED))

    async def _insert_bill_items(
        self,
        bill: VendorBill,
        items: list[ResolvedLineItem],
        product_ids: list[int | None],
        report: CommitReport,
    ) -> None:
        drafts = [
            BillItemDraft(
                vendor_bill_id=bill.id,
                product_id=product_id,
                quantity=item.quantity,
                purchase_rate=item.purchase_rate,
                gst_percentage=item.gst_percentage,
            )
            for item, product_id in zip(items, product_ids, strict=True)
        ]
        try:
            inserted = await self.catalog.insert_bill_items(drafts)
        except CatalogError as e:
            raise BillItemsError(f"Bill items creation failed: {e}") from e
        report.bill_items_created = len(inserted)

    async def _compensate(self, saga: _Saga, report: CommitReport) -> None:
        """Undo restocks, created products and the bill, recording what fails.

        Each recorded write is undone at most once: the saga is emptied before
        any undo step runs.
        """
        saga = saga.take()
        logger.warning(
            "Compensating: {} restock(s), {} new product(s), bill {}",
            len(saga.restocks),
            len(saga.created),
            saga.bill.id if saga.bill else None,
        )
        clean = True

        results = await asyncio.gather(
            *(
                self.catalog.adjust_stock(r.product_id, -r.quantity, r.previous_rate)
                for r in saga.restocks
            ),
            return_exceptions=True,
        )
        for restock, result in zip(saga.restocks, results, strict=True):
            if isinstance(result, Exception):
                clean = False
                error = CompensationError(
                    f"Could not reverse restock of product {restock.product_id}: {result}"
                )
                report.errors.append(EntityError.from_exception(error, entity=restock.name))
            else:
                report.products_updated -= 1

        if saga.created:
            try:
                await self.catalog.delete_products([p.id for p in saga.created])
            except Exception as e:
                clean = False
                error = CompensationError(f"Could not delete created products: {e}")
                report.errors.append(EntityError.from_exception(error, entity="products"))
            else:
                report.products_created -= len(saga.created)

        if saga.bill is not None:
            try:
                await self.catalog.delete_bill(saga.bill.id)
            except Exception as e:
                clean = False
                error = CompensationError(f"Could not delete bill {saga.bill.id}: {e}")
                report.errors.append(
                    EntityError.from_exception(error, entity=f"bill {saga.bill.bill_number}")
                )
            else:
                report.bill_id = None
                report.bill_created = False
                report.bill_items_created = 0

        report.compensated = clean
        if clean:
            logger.info("Compensation complete; no partial state left behind")

    async def _attach_photo(
        self, vendor: Vendor, bill: VendorBill, photo: PhotoBlob, report: CommitReport
    ) -> None:
        if self.attachments is None:
            report.warnings.append(
                EntityError(
                    error_type="AttachmentError",
                    entity="photo",
                    message="No attachment store configured; photo not attached",
                )
            )
            return

        name = attachment_name(vendor.id, bill.id, photo)
        try:
            reference = await self.attachments.upload(name, photo)
            await self.catalog.set_bill_photo(bill.id, reference)
        except Exception as e:
            # Best effort: the bill and its items stay committed
            error = e if isinstance(e, AttachmentError) else AttachmentError(
                f"Photo upload failed: {e}"
            )
            logger.warning("{}", error)
            report.warnings.append(EntityError.from_exception(error, entity="photo"))
            return

        report.photo_reference = reference
        logger.info("Attached photo {} to bill {}", reference, bill.id)
