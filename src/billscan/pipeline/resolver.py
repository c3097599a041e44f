"""Classify extracted line items as new products or restocks of existing ones."""

from collections.abc import Sequence

from loguru import logger

from billscan.integrations.catalog import CatalogStore, name_key
from billscan.models import ExtractedLineItem, Product, ResolvedLineItem


def build_name_index(products: Sequence[Product]) -> tuple[dict[str, Product], set[str]]:
    """Map name keys to the first product seen and collect ambiguous keys.

    Products are expected in ascending id order, so "first" is the oldest row.
    """
    index: dict[str, Product] = {}
    ambiguous: set[str] = set()
    for product in products:
        key = name_key(product.name)
        if key in index:
            ambiguous.add(key)
            continue
        index[key] = product
    return index, ambiguous


async def resolve_duplicates(
    items: Sequence[ExtractedLineItem], catalog: CatalogStore
) -> list[ResolvedLineItem]:
    """Tag each item with its catalog match using a single bulk lookup.

    Matching is exact after trimming and lowercasing. When the catalog holds
    more than one product with the same key the oldest one is used and the
    item is flagged ``ambiguous_match`` so callers can surface it.

    Args:
        items: Validated line items
        catalog: Store providing ``find_products_by_names``

    Returns:
        One ResolvedLineItem per input item, in the same order
    """
    if not items:
        return []

    existing = await catalog.find_products_by_names([item.name for item in items])
    index, ambiguous = build_name_index(existing)

    resolved: list[ResolvedLineItem] = []
    for item in items:
        key = name_key(item.name)
        match = index.get(key)
        if match is None:
            resolved.append(ResolvedLineItem(**item.model_dump(), is_duplicate=False))
            continue

        if key in ambiguous:
            logger.warning(
                "Several catalog products are named {!r}; using product {}",
                item.name,
                match.id,
            )
        resolved.append(
            ResolvedLineItem(
                **item.model_dump(),
                is_duplicate=True,
                matched_product_id=match.id,
                matched_current_stock=match.current_stock,
                matched_purchase_rate=match.purchase_rate,
                ambiguous_match=key in ambiguous,
            )
        )

    duplicates = sum(1 for r in resolved if r.is_duplicate)
    logger.info(
        "Resolved {} line item(s): {} new, {} restock",
        len(resolved),
        len(resolved) - duplicates,
        duplicates,
    )
    return resolved
