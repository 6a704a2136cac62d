import pytest

from database.models import BookingStatus, DeliveryStatus, ParentOrderStatus
from services.exceptions import ValidationException
from services.status_levels import (
    STATUS_ALIASES, StatusLevel, normalize_booking_status, normalize_delivery_status, parent_status_for_level,
    status_level, sub_order_level,
)


class TestStatusLevel:
    @pytest.mark.parametrize("text,level", [
        ("pending", StatusLevel.PENDING),
        ("  NEW ", StatusLevel.PENDING),
        ("جديد", StatusLevel.PENDING),
        ("accepted", StatusLevel.CONFIRMED),
        ("تم القبول", StatusLevel.CONFIRMED),
        ("completed", StatusLevel.READY),
        ("جاهز للاستلام", StatusLevel.READY),
        ("in_transit", StatusLevel.PICKED_UP),
        ("مع المندوب", StatusLevel.PICKED_UP),
        ("وصل", StatusLevel.DELIVERED),
        ("rejected", StatusLevel.CANCELLED),
        ("ملغي", StatusLevel.CANCELLED),
    ])
    def test_aliases(self, text, level):
        assert status_level(text) == level

    def test_enum_members_resolve_through_their_value(self):
        assert status_level(BookingStatus.READY_FOR_PICKUP) == StatusLevel.READY
        assert status_level(DeliveryStatus.ASSIGNED) == StatusLevel.CONFIRMED

    def test_unknown_text(self):
        assert status_level("teleported") is None
        assert status_level(None) is None
        assert status_level("") is None

    def test_every_enum_value_has_an_alias(self):
        for enum_cls in (BookingStatus, DeliveryStatus, ParentOrderStatus):
            for member in enum_cls:
                assert member.value in STATUS_ALIASES, member


class TestNormalize:
    def test_booking_exact_value(self):
        assert normalize_booking_status("ready_for_pickup") == BookingStatus.READY_FOR_PICKUP

    def test_booking_aliases(self):
        assert normalize_booking_status("تم التجهيز") == BookingStatus.READY_FOR_PICKUP
        assert normalize_booking_status("Accepted") == BookingStatus.CONFIRMED
        assert normalize_booking_status("مرفوض") == BookingStatus.REJECTED
        assert normalize_booking_status("canceled") == BookingStatus.CANCELLED

    def test_delivery_aliases(self):
        assert normalize_delivery_status("تم التوصيل") == DeliveryStatus.DELIVERED
        assert normalize_delivery_status("in_transit") == DeliveryStatus.IN_TRANSIT
        assert normalize_delivery_status("accepted") == DeliveryStatus.ASSIGNED
        assert normalize_delivery_status("ready") == DeliveryStatus.READY_FOR_PICKUP

    def test_unknown_text_is_rejected(self):
        with pytest.raises(ValidationException) as exc:
            normalize_booking_status("lost in space")
        assert exc.value.code == "VALIDATION_ERROR"
        with pytest.raises(ValidationException):
            normalize_delivery_status("")


class TestSubOrderLevel:
    def test_furthest_of_booking_and_delivery(self):
        assert sub_order_level("pending", "in_transit") == StatusLevel.PICKED_UP
        assert sub_order_level("ready", "assigned") == StatusLevel.READY

    def test_cancelled_booking_wins(self):
        assert sub_order_level("rejected", "delivered") == StatusLevel.CANCELLED

    def test_unknown_booking_counts_as_pending(self):
        assert sub_order_level("???", None) == StatusLevel.PENDING

    def test_unknown_or_cancelled_delivery_is_ignored(self):
        assert sub_order_level("confirmed", "???") == StatusLevel.CONFIRMED
        assert sub_order_level("confirmed", "cancelled") == StatusLevel.CONFIRMED
        assert sub_order_level("confirmed", None) == StatusLevel.CONFIRMED


class TestParentStatusForLevel:
    def test_mapping(self):
        assert parent_status_for_level(StatusLevel.READY) == ParentOrderStatus.READY_FOR_PICKUP
        assert parent_status_for_level(0) == ParentOrderStatus.CANCELLED

    def test_unmapped_defaults_to_pending(self):
        assert parent_status_for_level(42) == ParentOrderStatus.PENDING
        assert parent_status_for_level(None) == ParentOrderStatus.PENDING
