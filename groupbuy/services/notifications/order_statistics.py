from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from groupbuy.db.models import OrderItem, ParticipantOrder, Product, User
from groupbuy.schemas.notification_schemas import (
    OrderSummaryStatistics,
    SupplierGroup,
    SupplierLine,
)

UNKNOWN_SUPPLIER = "Unknown supplier"


async def get_order_statistics(
    db_session: AsyncSession, general_order_id: str
) -> OrderSummaryStatistics:
    """
    Aggregate participant orders of one general order for the admin summary.

    participant_count counts distinct users, so a user with two orders counts once.
    """
    totals = (
        await db_session.execute(
            select(
                func.count(distinct(ParticipantOrder.user_id)),
                func.coalesce(func.sum(ParticipantOrder.total_amount), 0),
            ).where(ParticipantOrder.general_order_id == general_order_id)
        )
    ).one()

    items = (
        await db_session.execute(
            select(
                func.count(OrderItem.id),
                func.count(distinct(OrderItem.product_id)),
            )
            .join(ParticipantOrder, OrderItem.order_id == ParticipantOrder.id)
            .where(ParticipantOrder.general_order_id == general_order_id)
        )
    ).one()

    rows = (
        await db_session.execute(
            select(
                User.full_name,
                User.email,
                func.coalesce(func.sum(ParticipantOrder.total_amount), 0),
            )
            .join(ParticipantOrder, ParticipantOrder.user_id == User.id)
            .where(ParticipantOrder.general_order_id == general_order_id)
            .group_by(User.id, User.full_name, User.email)
            .order_by(User.full_name)
        )
    ).all()

    participants: List[Dict[str, str]] = [
        {
            "name": full_name or (email or ""),
            "email": email or "",
            "total_amount": _money(amount),
        }
        for full_name, email, amount in rows
    ]

    return OrderSummaryStatistics(
        participant_count=int(totals[0] or 0),
        total_amount=_money(totals[1]),
        line_item_count=int(items[0] or 0),
        distinct_product_count=int(items[1] or 0),
        participants=participants,
    )


def _money(value) -> str:
    return str(Decimal(str(value or 0)).quantize(Decimal("0.01")))


def participants_table(statistics: OrderSummaryStatistics, currency: str) -> str:
    if not statistics.participants:
        return "No participants."
    return "\n".join(
        f"- {p['name']} <{p['email']}>: {currency}{p['total_amount']}"
        for p in statistics.participants
    )


async def get_supplier_breakdown(
    db_session: AsyncSession, general_order_id: str
) -> List[SupplierGroup]:
    """Ordered quantities per product, grouped by the product's supplier."""
    rows = (
        await db_session.execute(
            select(
                Product.supplier_name,
                Product.supplier_contact,
                Product.name,
                OrderItem.unit_price,
                func.sum(OrderItem.quantity),
                func.sum(OrderItem.total_price),
            )
            .join(Product, OrderItem.product_id == Product.id)
            .join(ParticipantOrder, OrderItem.order_id == ParticipantOrder.id)
            .where(ParticipantOrder.general_order_id == general_order_id)
            .group_by(
                Product.id,
                Product.supplier_name,
                Product.supplier_contact,
                Product.name,
                OrderItem.unit_price,
            )
            .order_by(Product.name)
        )
    ).all()

    groups: Dict[str, Dict[str, Any]] = {}
    for supplier_name, contact, product_name, unit_price, quantity, amount in rows:
        group = groups.setdefault(
            supplier_name or UNKNOWN_SUPPLIER,
            {"contact": "", "quantity": 0, "amount": Decimal("0"), "lines": []},
        )
        group["contact"] = group["contact"] or (contact or "")
        group["quantity"] += int(quantity or 0)
        group["amount"] += Decimal(str(amount or 0))
        group["lines"].append(
            SupplierLine(
                product_name=product_name,
                quantity=int(quantity or 0),
                unit_price=_money(unit_price),
                total_price=_money(amount),
            )
        )

    return [
        SupplierGroup(
            supplier_name=name,
            supplier_contact=group["contact"],
            total_quantity=group["quantity"],
            total_amount=_money(group["amount"]),
            lines=group["lines"],
        )
        for name, group in sorted(groups.items())
    ]


def suppliers_total(groups: List[SupplierGroup]) -> str:
    return _money(sum((Decimal(g.total_amount) for g in groups), Decimal("0")))


def suppliers_table(groups: List[SupplierGroup], currency: str) -> str:
    if not groups:
        return "No ordered items."
    blocks = []
    for group in groups:
        header = group.supplier_name
        if group.supplier_contact:
            header += f" ({group.supplier_contact})"
        lines = [
            f"{header}: {group.total_quantity} item(s), {currency}{group.total_amount}"
        ]
        lines.extend(
            f"  - {line.product_name} x{line.quantity} @ {currency}{line.unit_price}"
            f" = {currency}{line.total_price}"
            for line in group.lines
        )
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


async def load_participant_order(
    db_session: AsyncSession, participant_order_id: str
) -> Optional[ParticipantOrder]:
    result = await db_session.execute(
        select(ParticipantOrder)
        .where(ParticipantOrder.id == participant_order_id)
        .options(
            selectinload(ParticipantOrder.user),
            selectinload(ParticipantOrder.items).selectinload(OrderItem.product),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def confirmation_details(
    participant_order: ParticipantOrder, currency: str
) -> Dict[str, Any]:
    """Template data describing one participant's line items."""
    items = sorted(participant_order.items, key=lambda item: item.product.name)
    if items:
        items_table = "\n".join(
            f"- {item.product.name} x{item.quantity} @ {currency}{_money(item.unit_price)}"
            f" = {currency}{_money(item.total_price)}"
            for item in items
        )
    else:
        items_table = "No items."
    return {
        "order_number": str(participant_order.id)[:8],
        "items_table": items_table,
        "total_items": sum(item.quantity for item in items),
        "total_amount": f"{currency}{_money(participant_order.total_amount)}",
    }
