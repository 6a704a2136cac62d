import pytest

from database.models import DeliveryStatus, UserRole
from services.courier_service import (
    get_courier, link_courier, list_couriers, list_supervisor_couriers, set_availability, unlink_courier,
)
from services.exceptions import NotFoundException, PermissionDeniedException, ValidationException


class TestCouriers:
    async def test_list_with_workload(self, session, factory):
        amal = await factory.courier(name="Amal")
        badr = await factory.courier(name="Badr", is_available=False)
        await factory.orders(amal, 2, status=DeliveryStatus.ASSIGNED)
        await factory.user(UserRole.CUSTOMER)

        couriers = await list_couriers(session)
        assert [(c["name"], c["workload"]) for c in couriers] == [("Amal", 2), ("Badr", 0)]

        available = await list_couriers(session, available_only=True)
        assert [c["id"] for c in available] == [amal.id]
        assert badr.id not in [c["id"] for c in available]

    async def test_get_courier_rejects_other_roles(self, session, factory):
        customer = await factory.user(UserRole.CUSTOMER)
        with pytest.raises(NotFoundException):
            await get_courier(session, customer.id)

    async def test_courier_toggles_own_availability(self, session, factory, broadcaster):
        courier = await factory.courier()

        updated = await set_availability(session, courier.id, False, courier, broadcaster)

        assert updated.is_available is False
        assert broadcaster.events == [(
            "driver-status-changed",
            {"driverId": courier.id, "isAvailable": False, "status": "offline"},
            "managers",
        )]

    async def test_courier_cannot_toggle_others(self, session, factory):
        courier = await factory.courier()
        other = await factory.courier()
        with pytest.raises(PermissionDeniedException):
            await set_availability(session, other.id, False, courier)


class TestSupervisorLinks:
    async def test_link_list_unlink(self, session, factory):
        supervisor = await factory.user(UserRole.SUPERVISOR)
        linked = await factory.courier(name="Linked")
        await factory.courier(name="Free")

        await link_courier(session, supervisor.id, linked.id, supervisor)
        team = await list_supervisor_couriers(session, supervisor.id, supervisor)
        assert [c["name"] for c in team] == ["Linked"]

        await unlink_courier(session, supervisor.id, linked.id, supervisor)
        assert await list_supervisor_couriers(session, supervisor.id, supervisor) == []

    async def test_duplicate_link(self, session, factory):
        admin = await factory.user(UserRole.ADMIN)
        supervisor = await factory.user(UserRole.SUPERVISOR)
        courier = await factory.courier()
        supervisor_id, courier_id = supervisor.id, courier.id
        await link_courier(session, supervisor_id, courier_id, admin)
        with pytest.raises(ValidationException):
            await link_courier(session, supervisor_id, courier_id, admin)

    async def test_other_supervisor_is_refused(self, session, factory):
        supervisor = await factory.user(UserRole.SUPERVISOR)
        rival = await factory.user(UserRole.SUPERVISOR)
        courier = await factory.courier()
        with pytest.raises(PermissionDeniedException):
            await link_courier(session, supervisor.id, courier.id, rival)

    async def test_unlink_missing(self, session, factory):
        supervisor = await factory.user(UserRole.SUPERVISOR)
        courier = await factory.courier()
        with pytest.raises(NotFoundException):
            await unlink_courier(session, supervisor.id, courier.id, supervisor)
