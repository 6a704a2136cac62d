import pytest
from sqlalchemy import select

from database.models import (
    BookingStatus, DeliveryOrder, DeliveryStatus, Notification, OrderHistory, OrderType, ParentOrderStatus, UserRole,
)
from services.booking_service import get_parent_order_view, update_booking_status
from services.exceptions import NotFoundException, PermissionDeniedException, ValidationException
from services.parent_sync import AggregationRule


@pytest.fixture
async def split_order(factory):
    """A customer's parent order with one booking at each of two providers."""
    customer = await factory.user(UserRole.CUSTOMER, name="Laila")
    pizza = await factory.user(UserRole.PROVIDER, name="Pizza Place")
    pharmacy = await factory.user(UserRole.PROVIDER, name="Pharmacy")
    courier = await factory.courier(name="Karim")
    order = await factory.order(courier, status=DeliveryStatus.ASSIGNED)
    parent = await factory.parent(customer)
    first = await factory.booking(parent, order, user_id=customer.id, provider_id=pizza.id, provider_name="Pizza Place")
    second = await factory.booking(parent, order, user_id=customer.id, provider_id=pharmacy.id, provider_name="Pharmacy")
    return {
        "customer": customer, "pizza": pizza, "pharmacy": pharmacy, "courier": courier,
        "order": order, "parent": parent, "first": first, "second": second,
    }


class TestUpdateBookingStatus:
    async def test_parent_ready_only_when_every_provider_is(self, session, split_order, broadcaster):
        s = split_order

        await update_booking_status(session, s["first"].id, "تم التجهيز", s["pizza"], broadcaster=broadcaster)
        assert s["parent"].status == ParentOrderStatus.CONFIRMED

        await update_booking_status(session, s["second"].id, "ready", s["pharmacy"], broadcaster=broadcaster)
        assert s["parent"].status == ParentOrderStatus.READY_FOR_PICKUP

        notes = (await session.execute(select(Notification))).scalars().all()
        assert [(n.user_id, n.type) for n in notes] == [(s["customer"].id, "order_ready")]

        rooms = [room for _, data, room in broadcaster.named("booking-updated") if data["id"] == s["second"].id]
        assert rooms == [None, f"user-{s['customer'].id}"]

    async def test_cancelled_provider_does_not_block(self, session, split_order):
        s = split_order
        await update_booking_status(session, s["first"].id, "cancelled", s["pizza"])
        await update_booking_status(session, s["second"].id, "ready_for_pickup", s["pharmacy"])

        assert s["first"].status == BookingStatus.CANCELLED
        assert s["parent"].status == ParentOrderStatus.READY_FOR_PICKUP

    async def test_other_provider_is_refused(self, session, split_order):
        s = split_order
        with pytest.raises(PermissionDeniedException):
            await update_booking_status(session, s["first"].id, "ready", s["pharmacy"])

    async def test_customer_may_only_cancel(self, session, split_order):
        s = split_order
        booking_id = s["first"].id
        with pytest.raises(PermissionDeniedException):
            await update_booking_status(session, booking_id, "ready", s["customer"])

        # the refused update rolled back and expired the session
        await session.refresh(s["customer"])
        booking = await update_booking_status(session, booking_id, "ملغي", s["customer"])
        assert booking.status == BookingStatus.CANCELLED

    async def test_unknown_booking_and_status(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        with pytest.raises(NotFoundException):
            await update_booking_status(session, 999, "ready", admin)
        with pytest.raises(ValidationException):
            await update_booking_status(session, 999, "whatever", admin)


class TestBookingTransitions:
    async def test_final_status_cannot_be_reopened(self, session, factory):
        provider = await factory.user(UserRole.PROVIDER)
        booking = await factory.booking(provider_id=provider.id, status=BookingStatus.CANCELLED)
        booking_id = booking.id

        with pytest.raises(PermissionDeniedException) as exc:
            await update_booking_status(session, booking_id, "confirmed", provider)
        assert exc.value.message == "Booking cannot move from 'cancelled' to 'confirmed'"

        await session.refresh(booking)
        assert booking.status == BookingStatus.CANCELLED

    async def test_no_step_back(self, session, factory):
        provider = await factory.user(UserRole.PROVIDER)
        booking = await factory.booking(provider_id=provider.id, status=BookingStatus.CONFIRMED)
        with pytest.raises(PermissionDeniedException):
            await update_booking_status(session, booking.id, "pending", provider)

    async def test_booking_sent_for_delivery_cannot_be_rejected(self, session, split_order):
        s = split_order
        with pytest.raises(PermissionDeniedException):
            await update_booking_status(session, s["first"].id, "مرفوض", s["pizza"])

    async def test_standalone_booking_can_be_rejected(self, session, factory):
        provider = await factory.user(UserRole.PROVIDER)
        booking = await factory.booking(provider_id=provider.id)
        updated = await update_booking_status(session, booking.id, "rejected", provider)
        assert updated.status == BookingStatus.REJECTED


class TestDeliveryFollowsBookings:
    async def test_ready_app_order_goes_to_a_courier(self, session, factory, broadcaster):
        provider = await factory.user(UserRole.PROVIDER)
        courier = await factory.courier(name="Omar")
        order = await factory.order(order_type=OrderType.APP)
        order_id = order.id
        booking = await factory.booking(order=order, provider_id=provider.id)

        await update_booking_status(session, booking.id, "completed", provider, broadcaster=broadcaster)

        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.READY_FOR_PICKUP
        assert stored.courier_id == courier.id
        assert broadcaster.named("order-assigned")[0][1]["courierId"] == courier.id

    async def test_ready_without_couriers_is_still_marked_ready(self, session, factory, broadcaster):
        provider = await factory.user(UserRole.PROVIDER)
        order = await factory.order(order_type=OrderType.APP)
        order_id = order.id
        booking = await factory.booking(order=order, provider_id=provider.id)

        await update_booking_status(session, booking.id, "ready", provider, broadcaster=broadcaster)

        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.READY_FOR_PICKUP
        assert stored.courier_id is None
        assert ("order-status-changed", {"orderId": order_id, "status": "ready_for_pickup"}, None) in broadcaster.events

    async def test_manual_order_is_not_auto_assigned(self, session, factory):
        provider = await factory.user(UserRole.PROVIDER)
        await factory.courier()
        order = await factory.order(order_type=OrderType.MANUAL)
        order_id = order.id
        booking = await factory.booking(order=order, provider_id=provider.id)

        await update_booking_status(session, booking.id, "ready", provider)

        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.READY_FOR_PICKUP
        assert stored.courier_id is None

    async def test_delivery_waits_for_every_booking(self, session, split_order, broadcaster):
        s = split_order
        order_id = s["order"].id

        await update_booking_status(session, s["first"].id, "ready", s["pizza"], broadcaster=broadcaster)
        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.ASSIGNED
        assert all(data["orderId"] != order_id for _, data, _ in broadcaster.named("order-status-changed"))

        await update_booking_status(session, s["second"].id, "ready", s["pharmacy"], broadcaster=broadcaster)
        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.READY_FOR_PICKUP
        assert stored.courier_id == s["courier"].id

        history = (await session.execute(
            select(OrderHistory).where(OrderHistory.order_id == order_id)
        )).scalars().all()
        assert [(h.status, h.notes) for h in history] == [
            ("ready_for_pickup", f"Booking #{s['second'].id} ready_for_pickup"),
        ]

    async def test_cancelled_when_every_booking_dropped_out(self, session, split_order):
        s = split_order
        order_id = s["order"].id

        await update_booking_status(session, s["first"].id, "cancelled", s["customer"])
        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.ASSIGNED

        await update_booking_status(session, s["second"].id, "ملغي", s["customer"])
        stored = await session.get(DeliveryOrder, order_id, populate_existing=True)
        assert stored.status == DeliveryStatus.CANCELLED

    async def test_failed_parent_sync_keeps_the_booking(self, session, split_order, monkeypatch):
        s = split_order

        async def broken_sync(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr("services.booking_service.sync_parent_order_status", broken_sync)

        booking = await update_booking_status(session, s["first"].id, "confirmed", s["pizza"])

        assert booking.status == BookingStatus.CONFIRMED


class TestParentOrderView:
    async def test_view(self, session, split_order):
        s = split_order
        view = await get_parent_order_view(session, s["parent"].id, s["customer"])

        assert view["id"] == s["parent"].id
        assert view["derived_status"] == ParentOrderStatus.CONFIRMED
        assert view["rule"] == "all"
        assert [sub["provider_name"] for sub in view["sub_orders"]] == ["Pizza Place", "Pharmacy"]
        assert {sub["courier_name"] for sub in view["sub_orders"]} == {"Karim"}
        assert {sub["delivery_status"] for sub in view["sub_orders"]} == {DeliveryStatus.ASSIGNED}

    async def test_any_rule(self, session, split_order, factory):
        s = split_order
        extra = await factory.booking(s["parent"])
        view = await get_parent_order_view(session, s["parent"].id, s["pizza"], AggregationRule.ANY)
        assert view["derived_status"] == ParentOrderStatus.CONFIRMED
        assert view["sub_orders"][-1]["id"] == extra.id
        assert view["sub_orders"][-1]["level"] == 1

    async def test_strangers_are_refused(self, session, split_order, factory):
        stranger = await factory.user(UserRole.PROVIDER)
        with pytest.raises(PermissionDeniedException):
            await get_parent_order_view(session, split_order["parent"].id, stranger)

    async def test_missing(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        with pytest.raises(NotFoundException):
            await get_parent_order_view(session, 77, admin)
