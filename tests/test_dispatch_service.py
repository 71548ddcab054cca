"""Dispatch coordination: mirroring, exclusive assignment and partner availability."""
import asyncio

import pytest

from services.delivery_service.service import DispatchService
from shared.errors import ConflictError, NotFoundError, PermanentError, ValidationError
from shared.lifecycle import OrderStatus
from shared.messaging.events import DeliveryStatusUpdated, OrderUpdated, ProfileUpdated

from conftest import RecordingNotifier, RecordingPublisher, order_created, partner_registered


@pytest.fixture
def dispatch(db, publisher, notifier):
    return DispatchService(db, publisher, notifier)


async def ready_partner(dispatch, email="rider@example.com"):
    await dispatch.register_partner(partner_registered(email))
    return await dispatch.update_partner_availability(email, True)


class TestRegisterOrder:
    async def test_mirrors_order_once(self, dispatch, notifier):
        event = order_created()

        first, created = await dispatch.register_order(event)
        again, created_again = await dispatch.register_order(event)

        assert created is True
        assert created_again is False
        assert first.order_id == again.order_id == event.order_id
        assert len(notifier.new_orders) == 1
        assert notifier.new_orders[0]["orderId"] == event.order_id
        assert [o.order_id for o in await dispatch.list_pending_orders()] == [event.order_id]

    async def test_mirror_starts_pending_and_unassigned(self, dispatch):
        order, _ = await dispatch.register_order(order_created(total="25.00"))
        assert order.status == OrderStatus.PENDING.value
        assert order.assigned_partner_id is None
        assert str(order.total) == "25.00"
        assert order.customer_address["city"] == "London"


class TestAcceptOrder:
    async def test_assigns_and_notifies(self, dispatch, publisher, notifier):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)

        accepted = await dispatch.accept_order(order.order_id, "rider@example.com")

        assert accepted.status == OrderStatus.ASSIGNED.value
        assert accepted.assigned_partner_id == "rider@example.com"
        [event] = publisher.of_type(DeliveryStatusUpdated)
        assert event.status is OrderStatus.ASSIGNED
        assert event.assigned_partner_id == "rider@example.com"
        assert notifier.taken == [(order.order_id, "rider@example.com")]
        assert notifier.joined == [("rider@example.com", order.order_id)]
        assert notifier.status_updates == [(order.order_id, "assigned", "rider@example.com")]
        assert await dispatch.list_pending_orders() == []

    async def test_exactly_one_concurrent_accept_wins(self, dispatch, session_factory):
        order, _ = await dispatch.register_order(order_created())
        partners = [f"rider{i}@example.com" for i in range(5)]
        for email in partners:
            await ready_partner(dispatch, email)

        publisher, notifier = RecordingPublisher(), RecordingNotifier()

        async def accept(partner_id):
            async with session_factory() as session:
                try:
                    await DispatchService(session, publisher, notifier).accept_order(order.order_id, partner_id)
                except ConflictError as exc:
                    return exc.reason
                return "assigned"

        results = await asyncio.gather(*(accept(p) for p in partners))

        assert results.count("assigned") == 1
        assert results.count("AlreadyAssigned") == len(partners) - 1
        assert len(publisher.of_type(DeliveryStatusUpdated)) == 1

        winner = partners[results.index("assigned")]
        stored = await dispatch.get_order(order.order_id)
        assert stored.assigned_partner_id == winner
        busy = [p for p in partners if not (await dispatch.get_partner(p)).available]
        assert busy == [winner]

    async def test_second_accept_conflicts(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch, "a@example.com")
        await ready_partner(dispatch, "b@example.com")
        await dispatch.accept_order(order.order_id, "a@example.com")

        with pytest.raises(ConflictError) as exc:
            await dispatch.accept_order(order.order_id, "b@example.com")
        assert exc.value.reason == "AlreadyAssigned"
        assert exc.value.status_code == 409

    async def test_partner_with_order_in_flight_is_busy(self, dispatch):
        first, _ = await dispatch.register_order(order_created())
        second, _ = await dispatch.register_order(order_created())
        second_id = second.order_id
        await ready_partner(dispatch)
        await dispatch.accept_order(first.order_id, "rider@example.com")

        with pytest.raises(ConflictError) as exc:
            await dispatch.accept_order(second_id, "rider@example.com")

        assert exc.value.reason == "PartnerBusy"
        # The claim on the second order was rolled back
        still_open = await dispatch.get_order(second_id)
        assert still_open.status == OrderStatus.PENDING.value
        assert still_open.assigned_partner_id is None

    async def test_unknown_order_or_partner(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        order_id = order.order_id
        await ready_partner(dispatch)

        with pytest.raises(NotFoundError):
            await dispatch.accept_order("missing", "rider@example.com")
        with pytest.raises(NotFoundError):
            await dispatch.accept_order(order_id, "ghost@example.com")


class TestDeliveryProgression:
    async def test_partner_availability_follows_the_order(self, dispatch, publisher):
        order, _ = await dispatch.register_order(order_created())
        partner = await ready_partner(dispatch)
        assert partner.available is True

        await dispatch.accept_order(order.order_id, "rider@example.com")
        partner = await dispatch.get_partner("rider@example.com")
        assert partner.available is False
        assert partner.active_order_id == order.order_id

        for status in (OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY, OrderStatus.DELIVERED):
            await dispatch.update_delivery_status(order.order_id, status, "rider@example.com")

        partner = await dispatch.get_partner("rider@example.com")
        assert partner.available is True
        assert partner.active_order_id is None
        assert [e.status.value for e in publisher.of_type(DeliveryStatusUpdated)] == [
            "assigned",
            "picked_up",
            "on_the_way",
            "delivered",
        ]
        assert await dispatch.get_active_order("rider@example.com") is None
        assert [o.order_id for o in await dispatch.list_completed_orders("rider@example.com")] == [order.order_id]

    async def test_active_order_lookup(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")

        active = await dispatch.get_active_order("rider@example.com")
        assert active.order_id == order.order_id

    async def test_cancellation_releases_partner(self, dispatch, publisher):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")

        cancelled = await dispatch.update_delivery_status(order.order_id, OrderStatus.CANCELLED)

        assert cancelled.status == OrderStatus.CANCELLED.value
        assert cancelled.assigned_partner_id is None
        assert (await dispatch.get_partner("rider@example.com")).available is True
        assert publisher.of_type(DeliveryStatusUpdated)[-1].assigned_partner_id is None

    async def test_regression_is_rejected(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")
        await dispatch.update_delivery_status(order.order_id, OrderStatus.ON_THE_WAY)

        with pytest.raises(ValidationError):
            await dispatch.update_delivery_status(order.order_id, OrderStatus.PICKED_UP)

    async def test_repeated_status_is_a_noop(self, dispatch, publisher):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")
        await dispatch.update_delivery_status(order.order_id, OrderStatus.PICKED_UP)
        await dispatch.update_delivery_status(order.order_id, OrderStatus.PICKED_UP)

        assert len(publisher.of_type(DeliveryStatusUpdated)) == 2

    async def test_only_the_assigned_partner_reports(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")

        with pytest.raises(ConflictError):
            await dispatch.update_delivery_status(order.order_id, OrderStatus.PICKED_UP, "other@example.com")

    async def test_unassigned_order_cannot_be_picked_up(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        with pytest.raises(ValidationError):
            await dispatch.update_delivery_status(order.order_id, OrderStatus.PICKED_UP)

    async def test_assigned_is_not_partner_reported(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        with pytest.raises(ValidationError):
            await dispatch.update_delivery_status(order.order_id, OrderStatus.ASSIGNED)


class TestApplyOrderUpdate:
    async def test_admin_cancellation_is_mirrored(self, dispatch, publisher, notifier):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")
        published = len(publisher.events)

        await dispatch.apply_order_update(OrderUpdated(order_id=order.order_id, status=OrderStatus.CANCELLED))

        stored = await dispatch.get_order(order.order_id)
        assert stored.status == OrderStatus.CANCELLED.value
        assert (await dispatch.get_partner("rider@example.com")).available is True
        assert len(publisher.events) == published
        assert notifier.status_updates[-1] == (order.order_id, "cancelled", None)

    async def test_stale_update_is_ignored(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")

        await dispatch.apply_order_update(OrderUpdated(order_id=order.order_id, status=OrderStatus.PENDING))

        assert (await dispatch.get_order(order.order_id)).status == OrderStatus.ASSIGNED.value

    async def test_assignment_is_never_taken_from_order_updates(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        other, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch, "p@example.com")

        with pytest.raises(PermanentError) as exc_info:
            await dispatch.apply_order_update(
                OrderUpdated(order_id=order.order_id, status=OrderStatus.ASSIGNED, assigned_partner_id="p@example.com")
            )

        assert exc_info.value.error == "AssignmentNotAllowed"
        stored = await dispatch.get_order(order.order_id)
        assert stored.status == OrderStatus.PENDING.value
        assert stored.assigned_partner_id is None

        # The partner is still free and can claim exactly one order
        await dispatch.accept_order(other.order_id, "p@example.com")
        partner = await dispatch.get_partner("p@example.com")
        assert partner.active_order_id == other.order_id
        assert partner.available is False

    async def test_progress_keeps_the_claiming_partner(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch, "p1@example.com")
        await dispatch.accept_order(order.order_id, "p1@example.com")

        await dispatch.apply_order_update(
            OrderUpdated(order_id=order.order_id, status=OrderStatus.DELIVERED, assigned_partner_id="admin-pick@example.com")
        )

        stored = await dispatch.get_order(order.order_id)
        assert stored.status == OrderStatus.DELIVERED.value
        assert stored.assigned_partner_id == "p1@example.com"
        partner = await dispatch.get_partner("p1@example.com")
        assert partner.active_order_id is None
        assert partner.available is True

    async def test_update_for_unknown_order(self, dispatch):
        with pytest.raises(NotFoundError):
            await dispatch.apply_order_update(OrderUpdated(order_id="missing", status=OrderStatus.CANCELLED))


class TestPartners:
    async def test_registration_is_idempotent_and_unavailable(self, dispatch):
        partner, created = await dispatch.register_partner(partner_registered())
        _, created_again = await dispatch.register_partner(partner_registered(name="Someone Else"))

        assert created is True
        assert created_again is False
        assert partner.available is False
        assert (await dispatch.get_partner("rider@example.com")).name == "Rider"
        assert await dispatch.list_available_partners() == []

    async def test_profile_update(self, dispatch):
        await dispatch.register_partner(partner_registered())
        updated = await dispatch.apply_profile_update(
            ProfileUpdated(user_id="u-1", email="rider@example.com", name="Renamed Rider", phone="123")
        )
        assert updated.name == "Renamed Rider"
        assert updated.phone == "123"

    async def test_profile_update_for_unknown_partner_is_ignored(self, dispatch):
        result = await dispatch.apply_profile_update(
            ProfileUpdated(user_id="u-2", email="customer@example.com", name="Customer")
        )
        assert result is None

    async def test_cannot_become_available_with_order_in_flight(self, dispatch):
        order, _ = await dispatch.register_order(order_created())
        await ready_partner(dispatch)
        await dispatch.accept_order(order.order_id, "rider@example.com")

        with pytest.raises(ConflictError) as exc:
            await dispatch.update_partner_availability("rider@example.com", True)
        assert exc.value.reason == "PartnerBusy"

    async def test_availability_for_unknown_partner(self, dispatch):
        with pytest.raises(NotFoundError):
            await dispatch.update_partner_availability("ghost@example.com", True)

    async def test_location(self, dispatch):
        await dispatch.register_partner(partner_registered())
        partner = await dispatch.update_partner_location("rider@example.com", 51.52, -0.16)
        assert (partner.latitude, partner.longitude) == (51.52, -0.16)

        with pytest.raises(NotFoundError):
            await dispatch.update_partner_location("ghost@example.com", 0.0, 0.0)

    async def test_available_partners(self, dispatch):
        await ready_partner(dispatch, "a@example.com")
        await dispatch.register_partner(partner_registered("b@example.com"))

        assert [p.email for p in await dispatch.list_available_partners()] == ["a@example.com"]
