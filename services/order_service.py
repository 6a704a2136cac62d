"""
Delivery orders: creation (normal and split), listing, status changes.
"""
import logging
import random
import time
from collections import OrderedDict
from decimal import Decimal
from typing import List, Optional

from aiogram import Bot
from sqlalchemy import String, cast, false, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database.models import (
    Booking, DeliveryOrder, DeliveryStatus, OrderHistory, OrderType, ParentOrder, User, UserRole,
)
from services.assignment import auto_assign_order
from services.exceptions import NoCouriersAvailableException, NotFoundException, PermissionDeniedException
from services.parent_sync import AggregationRule, resync_after_commit
from services.realtime import Broadcaster
from services.status_levels import normalize_delivery_status
from services.validation import OrderCreateInput, OrderFilters

logger = logging.getLogger(__name__)

APP_SOURCE = "qareeblak"


def generate_order_number() -> str:
    """HLN-<base36 milliseconds>, same shape the mobile apps already display."""
    n = int(time.time() * 1000)
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    # two random chars keep numbers unique within one millisecond
    suffix = "".join(random.choice(digits) for _ in range(2))
    return f"HLN-{out}{suffix}"


def _scoped(stmt, user: User):
    """Restrict a DeliveryOrder query to what the user may see."""
    if user.role == UserRole.ADMIN:
        return stmt
    if user.role == UserRole.COURIER:
        return stmt.where(DeliveryOrder.courier_id == user.id)
    if user.role == UserRole.SUPERVISOR:
        return stmt.where(DeliveryOrder.supervisor_id == user.id)
    return stmt.where(false())


def _line_total(item) -> Decimal:
    return item.price * item.quantity


class DeliveryOrderService:
    """Service for creating and managing delivery orders."""

    @staticmethod
    async def create_order(
        session: AsyncSession,
        creator: User,
        data: OrderCreateInput,
        *,
        config: Config,
        broadcaster: Optional[Broadcaster] = None,
        bot: Optional[Bot] = None,
        rng: Optional[random.Random] = None,
    ) -> DeliveryOrder:
        """
        Create a delivery order.

        Items carrying provider_id switch to split mode: a parent order, the
        delivery order and one booking per provider are written in one
        transaction.

        Args:
            session: DB session
            creator: Authenticated user
            data: Validated request body
            config: Application config (capacity, parent rule)
            broadcaster: Hub for the socket events
            bot: Telegram bot for push notifications
            rng: Random source for the assignment tie-break

        Returns:
            The stored DeliveryOrder, reloaded after any auto-assignment
        """
        courier_id = data.courier_id
        if creator.role == UserRole.COURIER and not courier_id:
            courier_id = creator.id
        supervisor_id = data.supervisor_id
        if creator.role == UserRole.SUPERVISOR and not supervisor_id:
            supervisor_id = creator.id

        order_type = data.order_type or (OrderType.APP if data.source == APP_SOURCE else OrderType.MANUAL)
        source = data.source
        if not source or source == "manual":
            source = f"Manual order by {creator.name}" if creator.name else "manual"
        delivery_address = data.delivery_address or "Manual address"
        items = [item.model_dump(mode="json", by_alias=True) for item in data.items]
        split = data.is_split

        try:
            parent_id = None
            if split:
                parent = ParentOrder(
                    user_id=creator.id,
                    total_price=sum((_line_total(i) for i in data.items), Decimal("0")),
                    details=f"Customer: {data.customer_name} | Phone: {data.customer_phone} | Address: {delivery_address}",
                    address_info={
                        "customerName": data.customer_name,
                        "customerPhone": data.customer_phone,
                        "deliveryAddress": delivery_address,
                        "notes": data.notes,
                    },
                )
                session.add(parent)
                await session.flush()
                parent_id = parent.id

            order = DeliveryOrder(
                order_number=generate_order_number(),
                customer_name=data.customer_name,
                customer_phone=data.customer_phone,
                pickup_address=data.pickup_address,
                delivery_address=delivery_address,
                pickup_lat=data.pickup_lat,
                pickup_lng=data.pickup_lng,
                delivery_lat=data.delivery_lat,
                delivery_lng=data.delivery_lng,
                courier_id=courier_id,
                supervisor_id=supervisor_id,
                status=DeliveryStatus.PENDING,
                order_type=order_type,
                source=source,
                notes=data.notes,
                delivery_fee=data.delivery_fee,
                items=items,
            )
            session.add(order)
            await session.flush()

            if split:
                groups: "OrderedDict[int, list]" = OrderedDict()
                for item in data.items:
                    if item.provider_id:
                        groups.setdefault(item.provider_id, []).append(item)
                for provider_id, group in groups.items():
                    session.add(Booking(
                        user_id=creator.id,
                        provider_id=provider_id,
                        user_name=data.customer_name,
                        provider_name=group[0].provider_name,
                        service_name=f"Manual order ({len(group)} items)",
                        details=f"Phone: {data.customer_phone} | Address: {delivery_address}",
                        price=sum((_line_total(i) for i in group), Decimal("0")),
                        items=[i.model_dump(mode="json", by_alias=True) for i in group],
                        parent_order_id=parent_id,
                        delivery_order_id=order.id,
                    ))

            session.add(OrderHistory(
                order_id=order.id,
                status=DeliveryStatus.PENDING.value,
                changed_by=creator.id,
                notes=f"Order created by {creator.name}",
            ))
            await session.commit()
        except Exception as e:
            logger.error("Error creating order: %s", e, exc_info=True)
            await session.rollback()
            raise

        order_id = order.id
        logger.info(
            "Order created: id=%s number=%s type=%s split=%s parent=%s items=%s",
            order_id, order.order_number, order_type.value, split, parent_id, len(items),
        )

        if broadcaster is not None:
            await broadcaster.emit("new-order", {"orderId": order_id, "orderNumber": order.order_number})

        if not courier_id and (split or order_type == OrderType.APP):
            try:
                await auto_assign_order(
                    session,
                    order_id,
                    changed_by=creator.id,
                    default_capacity=config.DEFAULT_MAX_ACTIVE_ORDERS,
                    rng=rng,
                    broadcaster=broadcaster,
                    parent_rule=AggregationRule(config.PARENT_STATUS_RULE),
                    bot=bot,
                )
            except NoCouriersAvailableException:
                logger.warning("Order #%s stays pending: no couriers to auto-assign", order_id)
            except Exception as e:
                # the order is already committed
                logger.error("Auto-assign failed for new order #%s: %s", order_id, e, exc_info=True)

        return await session.get(DeliveryOrder, order_id, populate_existing=True)

    @staticmethod
    async def list_orders(
        session: AsyncSession,
        user: User,
        filters: OrderFilters,
    ) -> tuple[List[DeliveryOrder], int]:
        """
        Orders visible to the user, newest first.

        Returns:
            (records, total) where total ignores pagination
        """
        conditions = []
        if filters.status == "deleted":
            conditions.append(DeliveryOrder.is_deleted.is_(True))
        elif filters.status == "edited":
            conditions.append(DeliveryOrder.is_edited.is_(True))
            conditions.append(DeliveryOrder.is_deleted.is_(False))
        else:
            conditions.append(DeliveryOrder.is_deleted.is_(False))
            if filters.status and filters.status != "all":
                conditions.append(DeliveryOrder.status == normalize_delivery_status(filters.status))

        if filters.courier_id:
            conditions.append(DeliveryOrder.courier_id == filters.courier_id)
        if filters.supervisor_id:
            conditions.append(DeliveryOrder.supervisor_id == filters.supervisor_id)
        if filters.source:
            conditions.append(DeliveryOrder.source == filters.source)

        if filters.search and filters.search.strip():
            term = filters.search.strip()
            pattern = f"%{term}%"
            matches = [
                DeliveryOrder.customer_name.ilike(pattern),
                DeliveryOrder.customer_phone.ilike(pattern),
                DeliveryOrder.delivery_address.ilike(pattern),
                DeliveryOrder.notes.ilike(pattern),
                cast(DeliveryOrder.items, String).ilike(pattern),
            ]
            if term.isdigit():
                matches.append(DeliveryOrder.id == int(term))
            conditions.append(or_(*matches))

        count_stmt = _scoped(select(func.count(DeliveryOrder.id)).where(*conditions), user)
        total = await session.scalar(count_stmt) or 0

        stmt = _scoped(
            select(DeliveryOrder)
            .where(*conditions)
            .order_by(DeliveryOrder.created_at.desc(), DeliveryOrder.id.desc())
            .offset(filters.offset)
            .limit(filters.limit),
            user,
        )
        records = list((await session.execute(stmt)).scalars().all())
        return records, total

    @staticmethod
    async def get_order(session: AsyncSession, order_id: int, user: User) -> DeliveryOrder:
        stmt = _scoped(select(DeliveryOrder).where(DeliveryOrder.id == order_id), user)
        order = (await session.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
        if order is None:
            raise NotFoundException("Order", order_id)
        return order

    @staticmethod
    async def update_status(
        session: AsyncSession,
        order_id: int,
        user: User,
        status: str,
        notes: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        *,
        broadcaster: Optional[Broadcaster] = None,
        bot: Optional[Bot] = None,
        parent_rule: AggregationRule = AggregationRule.ALL,
    ) -> DeliveryOrder:
        """
        Change the status of an order and record it in the history.

        Linked bookings are announced and their parent orders re-synced
        after the commit.

        Raises:
            ValidationException: unknown status text
            NotFoundException: order missing or out of the user's scope
        """
        new_status = normalize_delivery_status(status)

        try:
            stmt = _scoped(
                select(DeliveryOrder)
                .where(DeliveryOrder.id == order_id, DeliveryOrder.is_deleted.is_(False))
                .with_for_update()
                .execution_options(populate_existing=True),
                user,
            )
            order = (await session.execute(stmt)).scalar_one_or_none()
            if order is None:
                raise NotFoundException("Order", order_id)

            old_status = order.status
            order.status = new_status
            session.add(OrderHistory(
                order_id=order_id,
                status=new_status.value,
                changed_by=user.id,
                notes=notes or f"Status changed to: {new_status.value}",
                latitude=latitude,
                longitude=longitude,
            ))
            booking_ids = (await session.execute(
                select(Booking.id).where(Booking.delivery_order_id == order_id)
            )).scalars().all()
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info(
            "Order #%s status %s -> %s by user %s",
            order_id, old_status.value, new_status.value, user.id,
        )

        if broadcaster is not None:
            payload = {"orderId": order_id, "status": new_status.value}
            await broadcaster.emit("order-status-changed", payload)
            await broadcaster.emit("order-status-changed", payload, room=f"order-{order_id}")
            for booking_id in booking_ids:
                await broadcaster.emit("booking-updated", {"id": booking_id, "status": new_status.value})

        if not await resync_after_commit(session, order_id, parent_rule, broadcaster, bot):
            await session.refresh(order)
        return order

    @staticmethod
    async def soft_delete(
        session: AsyncSession,
        order_id: int,
        user: User,
        broadcaster: Optional[Broadcaster] = None,
    ) -> DeliveryOrder:
        if user.role not in (UserRole.ADMIN, UserRole.SUPERVISOR):
            raise PermissionDeniedException("Only admins and supervisors can delete orders")

        try:
            stmt = _scoped(
                select(DeliveryOrder)
                .where(DeliveryOrder.id == order_id, DeliveryOrder.is_deleted.is_(False))
                .with_for_update()
                .execution_options(populate_existing=True),
                user,
            )
            order = (await session.execute(stmt)).scalar_one_or_none()
            if order is None:
                raise NotFoundException("Order", order_id)

            order.is_deleted = True
            session.add(OrderHistory(
                order_id=order_id,
                status="deleted",
                changed_by=user.id,
                notes=f"Order deleted by {user.name}",
            ))
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        logger.info("Order #%s soft-deleted by user %s", order_id, user.id)
        if broadcaster is not None:
            await broadcaster.emit("order-deleted", {"orderId": order_id})
        return order

    @staticmethod
    async def get_history(session: AsyncSession, order_id: int, user: User) -> List[OrderHistory]:
        await DeliveryOrderService.get_order(session, order_id, user)
        stmt = (
            select(OrderHistory)
            .where(OrderHistory.order_id == order_id)
            .order_by(OrderHistory.created_at, OrderHistory.id)
        )
        return list((await session.execute(stmt)).scalars().all())
