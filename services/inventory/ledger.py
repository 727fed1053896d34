from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.errors import InsufficientStock, LedgerInvariantError, ValidationFailed
from app.db.models.inventory import (
    Material,
    Product,
    StockLot,
    ITEM_MATERIAL,
    ITEM_PRODUCT,
    POOL_FG,
    POOL_RAW,
    POOL_SFG,
    health_status,
    stock_target,
)

logger = logging.getLogger(__name__)

__all__ = [
    "issue",
    "receive",
    "receive_sfg",
    "consume_sfg",
    "lots_for",
    "lot_total",
    "check_conservation",
    "health_status",
    "stock_target",
]

ZERO = Decimal("0")


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def _pool_for(item: Material | Product) -> str:
    return POOL_RAW if isinstance(item, Material) else POOL_FG


def _kind_for(item: Material | Product) -> str:
    return ITEM_MATERIAL if isinstance(item, Material) else ITEM_PRODUCT


def lots_for(db: Session, item: Material | Product, pool: str | None = None, *, lock: bool = False) -> list[StockLot]:
    """Lots of an item, oldest receipt first."""
    q = db.query(StockLot).filter(
        StockLot.item_kind == _kind_for(item),
        StockLot.item_id == item.id,
        StockLot.pool == (pool or _pool_for(item)),
    )
    if lock:
        q = q.with_for_update()
    return q.order_by(StockLot.added_at.asc(), StockLot.created_at.asc(), StockLot.lot_number.asc()).all()


def lot_total(db: Session, item: Material | Product, pool: str | None = None) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(StockLot.qty), 0))
        .filter(
            StockLot.item_kind == _kind_for(item),
            StockLot.item_id == item.id,
            StockLot.pool == (pool or _pool_for(item)),
        )
        .scalar()
    )
    return _dec(total)


def check_conservation(db: Session, item: Material | Product) -> None:
    """Aggregate balance must equal the sum of the item's lots."""
    db.flush()
    lots = lot_total(db, item)
    if isinstance(item, Material):
        aggregate = _dec(item.current_qty)
    else:
        aggregate = _dec(item.warehouse_qty) + _dec(item.reserved_qty)
    if aggregate != lots:
        logger.error("ledger drift on %s: aggregate=%s lots=%s", item.code, aggregate, lots)
        raise LedgerInvariantError(
            f"Stock for {item.code} is out of balance: aggregate {aggregate}, lots {lots}",
            item_code=item.code,
            aggregate=str(aggregate),
            lots=str(lots),
        )


def issue(
    db: Session,
    item: Material | Product,
    qty,
    *,
    from_reserved: bool = False,
) -> list[dict]:
    """Consume stock FIFO (oldest lot first) and return the lot breakdown.

    Lots that reach zero are deleted. Nothing is touched when the request
    cannot be met in full. ``from_reserved`` takes finished stock out of the
    reserved balance instead of the free warehouse balance.
    """
    qty = _dec(qty)
    if qty <= 0:
        raise ValidationFailed("Issue quantity must be positive", item_code=item.code)

    if isinstance(item, Material):
        available = _dec(item.current_qty)
    elif from_reserved:
        available = _dec(item.reserved_qty)
    else:
        available = _dec(item.warehouse_qty)

    lots = lots_for(db, item, lock=True)
    in_lots = sum((_dec(lot.qty) for lot in lots), ZERO)
    if available < qty or in_lots < qty:
        raise InsufficientStock(item.code, qty, min(available, in_lots))

    remaining = qty
    breakdown: list[dict] = []
    for lot in lots:
        if remaining <= 0:
            break
        take = _dec(lot.qty) if _dec(lot.qty) <= remaining else remaining
        lot.qty = _dec(lot.qty) - take
        remaining -= take
        breakdown.append({"lot_number": lot.lot_number, "qty": take})
        if lot.qty <= 0:
            db.delete(lot)

    if isinstance(item, Material):
        item.current_qty = available - qty
    elif from_reserved:
        item.reserved_qty = available - qty
    else:
        item.warehouse_qty = available - qty

    check_conservation(db, item)
    logger.info("issued %s of %s from %d lot(s)", qty, item.code, len(breakdown))
    return breakdown


def receive(
    db: Session,
    item: Material | Product,
    qty=None,
    *,
    lot_number: str,
    breakdown: dict | None = None,
    added_at: datetime | None = None,
    job_id: str | None = None,
    meta: dict | None = None,
) -> list[StockLot]:
    """Add stock as one lot, or as a boxed lot plus a loose lot.

    ``breakdown`` is ``{"boxes": n, "per_box": q, "loose": q}``; when given it
    defines the quantity. The aggregate grows by the same amount.
    """
    added_at = added_at or datetime.utcnow()
    pool = _pool_for(item)
    kind = _kind_for(item)

    parts: list[tuple[str, Decimal, bool, int]] = []
    if breakdown:
        boxes = int(breakdown.get("boxes") or 0)
        per_box = _dec(breakdown.get("per_box"))
        loose = _dec(breakdown.get("loose"))
        if boxes < 0 or per_box < 0 or loose < 0:
            raise ValidationFailed("Box breakdown cannot be negative", breakdown=breakdown)
        if boxes and per_box:
            parts.append((lot_number, per_box * boxes, False, boxes))
        if loose:
            parts.append((f"{lot_number}-L" if parts else lot_number, loose, True, 0))
    else:
        parts.append((lot_number, _dec(qty), False, 0))

    total = sum((p[1] for p in parts), ZERO)
    if total <= 0:
        raise ValidationFailed("Received quantity must be positive", item_code=item.code)

    created: list[StockLot] = []
    for number, part_qty, is_loose, box_count in parts:
        lot = StockLot(
            item_kind=kind,
            item_id=item.id,
            pool=pool,
            lot_number=number,
            qty=part_qty,
            added_at=added_at,
            job_id=job_id,
            is_loose=is_loose,
            box_count=box_count,
            meta=meta or {},
        )
        db.add(lot)
        created.append(lot)

    if isinstance(item, Material):
        item.current_qty = _dec(item.current_qty) + total
    else:
        item.warehouse_qty = _dec(item.warehouse_qty) + total

    check_conservation(db, item)
    logger.info("received %s of %s as %s", total, item.code, ", ".join(c.lot_number for c in created))
    return created


def receive_sfg(db: Session, product: Product, qty, *, lot_number: str, job_id: str) -> StockLot:
    """Semi-finished output of a job; not sellable and outside the product aggregate."""
    qty = _dec(qty)
    if qty <= 0:
        raise ValidationFailed("SFG quantity must be positive", item_code=product.code)
    lot = StockLot(
        item_kind=ITEM_PRODUCT,
        item_id=product.id,
        pool=POOL_SFG,
        lot_number=lot_number,
        qty=qty,
        added_at=datetime.utcnow(),
        job_id=job_id,
    )
    db.add(lot)
    db.flush()
    return lot


def consume_sfg(db: Session, product: Product, job_id: str) -> Decimal:
    """Remove the SFG lots a job produced; returns the quantity removed."""
    lots = (
        db.query(StockLot)
        .filter(
            StockLot.item_kind == ITEM_PRODUCT,
            StockLot.item_id == product.id,
            StockLot.pool == POOL_SFG,
            StockLot.job_id == job_id,
        )
        .all()
    )
    removed = sum((_dec(lot.qty) for lot in lots), ZERO)
    for lot in lots:
        db.delete(lot)
    db.flush()
    return removed
