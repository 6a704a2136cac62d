import random
from decimal import Decimal

import pytest
from sqlalchemy import select

from database.models import (
    Booking, BookingStatus, DeliveryOrder, DeliveryStatus, OrderHistory, OrderType, ParentOrder, ParentOrderStatus,
    UserRole,
)
from services.exceptions import NotFoundException, PermissionDeniedException, ValidationException
from services.order_service import DeliveryOrderService, generate_order_number
from services.validation import OrderCreateInput, OrderFilters


def order_input(**overrides) -> OrderCreateInput:
    body = {
        "customerName": "Ahmed Ali",
        "customerPhone": "+20 100 123 4567",
        "pickupAddress": "Pizza Place, Tahrir St.",
        "deliveryAddress": "12 Nile Corniche",
        "items": [{"name": "Margherita", "quantity": 2, "price": "80.50"}],
    }
    body.update(overrides)
    return OrderCreateInput.model_validate(body)


def test_generate_order_number():
    numbers = {generate_order_number() for _ in range(50)}
    assert all(n.startswith("HLN-") for n in numbers)
    assert len(numbers) > 1


class TestCreateOrder:
    async def test_manual_order_stays_pending(self, session, factory, broadcaster, test_config):
        admin = await factory.user(UserRole.ADMIN, name="Mona")
        await factory.courier()

        order = await DeliveryOrderService.create_order(
            session, admin, order_input(), config=test_config, broadcaster=broadcaster,
        )

        assert order.status == DeliveryStatus.PENDING
        assert order.courier_id is None
        assert order.order_type == OrderType.MANUAL
        assert order.source == "Manual order by Mona"
        assert order.items[0]["name"] == "Margherita"
        assert broadcaster.named("new-order")[0][1]["orderId"] == order.id

        history = (await session.execute(select(OrderHistory))).scalars().all()
        assert [(h.status, h.notes) for h in history] == [("pending", "Order created by Mona")]

    async def test_app_order_is_auto_assigned(self, session, factory, test_config):
        admin = await factory.user(UserRole.ADMIN)
        courier = await factory.courier()

        order = await DeliveryOrderService.create_order(
            session, admin, order_input(source="qareeblak"), config=test_config, rng=random.Random(0),
        )

        assert order.order_type == OrderType.APP
        assert order.source == "qareeblak"
        assert order.courier_id == courier.id
        assert order.status == DeliveryStatus.ASSIGNED

    async def test_app_order_without_couriers_stays_pending(self, session, factory, test_config):
        admin = await factory.user(UserRole.ADMIN)

        order = await DeliveryOrderService.create_order(
            session, admin, order_input(source="qareeblak"), config=test_config,
        )

        assert order.id is not None
        assert order.status == DeliveryStatus.PENDING
        assert order.courier_id is None

    async def test_failed_auto_assign_still_returns_the_order(self, session, factory, test_config, monkeypatch):
        admin = await factory.user(UserRole.ADMIN)
        await factory.courier()

        async def broken_assign(*args, **kwargs):
            raise RuntimeError("lock timeout")

        monkeypatch.setattr("services.order_service.auto_assign_order", broken_assign)

        order = await DeliveryOrderService.create_order(
            session, admin, order_input(source="qareeblak"), config=test_config,
        )

        assert order.status == DeliveryStatus.PENDING
        assert order.courier_id is None
        assert len((await session.execute(select(DeliveryOrder))).scalars().all()) == 1

    async def test_courier_creates_own_order(self, session, factory, test_config):
        courier = await factory.courier()
        await factory.courier()

        order = await DeliveryOrderService.create_order(
            session, courier, order_input(source="qareeblak"), config=test_config,
        )

        assert order.courier_id == courier.id
        assert order.status == DeliveryStatus.PENDING

    async def test_supervisor_is_recorded(self, session, factory, test_config):
        supervisor = await factory.user(UserRole.SUPERVISOR)
        order = await DeliveryOrderService.create_order(session, supervisor, order_input(), config=test_config)
        assert order.supervisor_id == supervisor.id

    async def test_split_order(self, session, factory, test_config):
        admin = await factory.user(UserRole.ADMIN)
        await factory.courier()
        pizza = await factory.user(UserRole.PROVIDER, name="Pizza Place")
        pharmacy = await factory.user(UserRole.PROVIDER, name="Pharmacy")
        data = order_input(items=[
            {"name": "Margherita", "quantity": 2, "price": "80", "providerId": pizza.id, "providerName": "Pizza Place"},
            {"name": "Cola", "quantity": 1, "price": "15", "providerId": pizza.id, "providerName": "Pizza Place"},
            {"name": "Panadol", "quantity": 3, "price": "10", "providerId": pharmacy.id, "providerName": "Pharmacy"},
        ])

        order = await DeliveryOrderService.create_order(session, admin, data, config=test_config)

        parent = (await session.execute(select(ParentOrder))).scalar_one()
        assert parent.user_id == admin.id
        assert parent.total_price == Decimal("205.00")
        assert parent.address_info["customerName"] == "Ahmed Ali"

        bookings = (await session.execute(select(Booking).order_by(Booking.id))).scalars().all()
        assert [(b.provider_id, b.price, len(b.items)) for b in bookings] == [
            (pizza.id, Decimal("175.00"), 2),
            (pharmacy.id, Decimal("30.00"), 1),
        ]
        assert all(b.parent_order_id == parent.id and b.delivery_order_id == order.id for b in bookings)
        assert bookings[0].service_name == "Manual order (2 items)"

        # split orders are always auto-assigned; the parent follows the delivery order
        assert order.status == DeliveryStatus.ASSIGNED
        assert parent.status == ParentOrderStatus.CONFIRMED

    def test_invalid_phone(self):
        with pytest.raises(ValueError):
            order_input(customerPhone="call me")


class TestListOrders:
    async def test_scoping(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        supervisor = await factory.user(UserRole.SUPERVISOR)
        customer = await factory.user(UserRole.CUSTOMER)
        mine = await factory.courier()
        other = await factory.courier()
        await factory.orders(mine, 2, supervisor_id=supervisor.id)
        await factory.order(other)

        filters = OrderFilters()
        assert (await DeliveryOrderService.list_orders(session, admin, filters))[1] == 3
        records, total = await DeliveryOrderService.list_orders(session, mine, filters)
        assert total == 2
        assert {o.courier_id for o in records} == {mine.id}
        assert (await DeliveryOrderService.list_orders(session, supervisor, filters))[1] == 2
        assert (await DeliveryOrderService.list_orders(session, customer, filters))[1] == 0

    async def test_status_filters(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        courier = await factory.courier()
        await factory.order(courier, status=DeliveryStatus.DELIVERED)
        await factory.order(courier, status=DeliveryStatus.IN_TRANSIT)
        await factory.order(courier, status=DeliveryStatus.IN_TRANSIT, is_deleted=True)
        await factory.order(courier, is_edited=True)

        async def count(status):
            return (await DeliveryOrderService.list_orders(session, admin, OrderFilters(status=status)))[1]

        assert await count(None) == 3
        assert await count("all") == 3
        assert await count("deleted") == 1
        assert await count("edited") == 1
        assert await count("in_transit") == 1
        assert await count("تم التوصيل") == 1
        with pytest.raises(ValidationException):
            await count("nonsense")

    async def test_search_and_pagination(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        await factory.order(customer_name="Sara Hassan", items=[{"name": "Koshary"}])
        for _ in range(4):
            await factory.order()

        records, total = await DeliveryOrderService.list_orders(session, admin, OrderFilters(search="sara"))
        assert total == 1
        assert records[0].customer_name == "Sara Hassan"

        _, total = await DeliveryOrderService.list_orders(session, admin, OrderFilters(search="koshary"))
        assert total == 1

        page, total = await DeliveryOrderService.list_orders(session, admin, OrderFilters(page=2, limit=2))
        assert total == 5
        assert len(page) == 2


class TestUpdateStatus:
    async def test_arabic_status_and_history(self, session, factory, broadcaster):
        courier = await factory.courier()
        order = await factory.order(courier, status=DeliveryStatus.ASSIGNED)

        updated = await DeliveryOrderService.update_status(
            session, order.id, courier, "مع المندوب", latitude=30.05, longitude=31.24, broadcaster=broadcaster,
        )

        assert updated.status == DeliveryStatus.PICKED_UP
        history = (await DeliveryOrderService.get_history(session, order.id, courier))[-1]
        assert history.status == "picked_up"
        assert history.changed_by == courier.id
        assert (history.latitude, history.longitude) == (30.05, 31.24)
        rooms = [room for _, _, room in broadcaster.named("order-status-changed")]
        assert rooms == [None, f"order-{order.id}"]

    async def test_parent_follows_delivery(self, session, factory, broadcaster):
        courier = await factory.courier()
        order = await factory.order(courier, status=DeliveryStatus.ASSIGNED)
        parent = await factory.parent()
        booking = await factory.booking(parent, order, status=BookingStatus.READY_FOR_PICKUP)

        await DeliveryOrderService.update_status(session, order.id, courier, "delivered", broadcaster=broadcaster)

        assert parent.status == ParentOrderStatus.DELIVERED
        assert ("booking-updated", {"id": booking.id, "status": "delivered"}, None) in broadcaster.events

    async def test_failed_parent_resync_keeps_the_status(self, session, factory, monkeypatch):
        courier = await factory.courier()
        order = await factory.order(courier, status=DeliveryStatus.ASSIGNED)
        await factory.booking(await factory.parent(), order)

        async def broken_sync(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr("services.parent_sync.sync_parents_of_delivery_order", broken_sync)

        updated = await DeliveryOrderService.update_status(session, order.id, courier, "picked_up")

        assert updated.status == DeliveryStatus.PICKED_UP
        stored = await session.get(DeliveryOrder, order.id, populate_existing=True)
        assert stored.status == DeliveryStatus.PICKED_UP

    async def test_out_of_scope_courier(self, session, factory):
        owner = await factory.courier()
        stranger = await factory.courier()
        order = await factory.order(owner)
        order_id = order.id
        with pytest.raises(NotFoundException):
            await DeliveryOrderService.update_status(session, order_id, stranger, "delivered")

    async def test_unknown_status(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        order = await factory.order()
        with pytest.raises(ValidationException):
            await DeliveryOrderService.update_status(session, order.id, admin, "beamed up")


class TestSoftDelete:
    async def test_admin_deletes(self, session, factory, broadcaster):
        admin = await factory.user(UserRole.ADMIN, name="Boss")
        order = await factory.order()

        deleted = await DeliveryOrderService.soft_delete(session, order.id, admin, broadcaster)

        assert deleted.is_deleted is True
        assert broadcaster.named("order-deleted") == [("order-deleted", {"orderId": order.id}, None)]
        history = await DeliveryOrderService.get_history(session, order.id, admin)
        assert [(h.status, h.notes) for h in history] == [("deleted", "Order deleted by Boss")]

    async def test_courier_may_not_delete(self, session, factory):
        courier = await factory.courier()
        order = await factory.order(courier)
        with pytest.raises(PermissionDeniedException):
            await DeliveryOrderService.soft_delete(session, order.id, courier)

    async def test_twice(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        order = await factory.order()
        order_id = order.id
        await DeliveryOrderService.soft_delete(session, order_id, admin)
        with pytest.raises(NotFoundException):
            await DeliveryOrderService.soft_delete(session, order_id, admin)
