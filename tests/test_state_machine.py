"""Tests for the order status state machine."""

import pytest

from storefront import models, state_machine
from storefront.enums import OrderStatus
from storefront.errors import InvalidTransition
from storefront.state_machine import TransitionSource, plan_transition

NON_TERMINAL = [s for s in OrderStatus if s not in state_machine.TERMINAL_STATES]


class TestPlanTransition:
    def test_paid_stamps_paid_at(self):
        plan = plan_transition(OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, TransitionSource.PAYMENT)
        assert plan.timestamps == ("paid_at",)
        assert not plan.release_stock
        assert not plan.noop

    @pytest.mark.parametrize("target", [OrderStatus.DELIVERED, OrderStatus.COMPLETED])
    def test_completion_timestamp(self, target):
        plan = plan_transition(OrderStatus.SHIPPED, target, TransitionSource.CARRIER)
        assert plan.timestamps == ("completed_at",)

    @pytest.mark.parametrize("current", [s for s in NON_TERMINAL])
    def test_cancel_from_any_non_terminal_releases_stock(self, current):
        plan = plan_transition(current, OrderStatus.CANCELLED, TransitionSource.ADMIN)
        assert plan.release_stock

    def test_cancel_does_not_release_twice(self):
        plan = plan_transition(
            OrderStatus.READY_TO_SHIP, OrderStatus.CANCELLED, TransitionSource.ADMIN, stock_released=True
        )
        assert not plan.release_stock

    @pytest.mark.parametrize("current", [OrderStatus.CANCELLED, OrderStatus.COMPLETED])
    @pytest.mark.parametrize("target", [s for s in OrderStatus])
    def test_terminal_states_refuse_admin(self, current, target):
        with pytest.raises(InvalidTransition):
            plan_transition(current, target, TransitionSource.ADMIN)

    @pytest.mark.parametrize("source", [TransitionSource.PAYMENT, TransitionSource.CARRIER])
    def test_terminal_states_refuse_webhooks(self, source):
        with pytest.raises(InvalidTransition):
            plan_transition(OrderStatus.CANCELLED, OrderStatus.PAID, source)
        with pytest.raises(InvalidTransition):
            plan_transition(OrderStatus.COMPLETED, OrderStatus.DELIVERED, source)

    @pytest.mark.parametrize("source", [TransitionSource.PAYMENT, TransitionSource.CARRIER])
    def test_replaying_terminal_status_is_noop(self, source):
        plan = plan_transition(OrderStatus.CANCELLED, OrderStatus.CANCELLED, source)
        assert plan.noop
        assert not plan.release_stock

    def test_completed_order_can_be_refunded_by_gateway(self):
        plan = plan_transition(OrderStatus.COMPLETED, OrderStatus.REFUNDED, TransitionSource.PAYMENT)
        assert plan.timestamps == ("refunded_at",)

    def test_expired_only_from_pending_payment(self):
        plan = plan_transition(OrderStatus.PENDING_PAYMENT, OrderStatus.EXPIRED, TransitionSource.SYSTEM)
        assert plan.release_stock
        with pytest.raises(InvalidTransition):
            plan_transition(OrderStatus.PAID, OrderStatus.EXPIRED, TransitionSource.SYSTEM)

    def test_refund_only_from_paid(self):
        plan_transition(OrderStatus.PAID, OrderStatus.REFUNDED, TransitionSource.PAYMENT)
        with pytest.raises(InvalidTransition):
            plan_transition(OrderStatus.SHIPPED, OrderStatus.REFUNDED, TransitionSource.ADMIN)

    def test_cannot_go_back_to_pending_payment(self):
        with pytest.raises(InvalidTransition):
            plan_transition(OrderStatus.PAID, OrderStatus.PENDING_PAYMENT, TransitionSource.ADMIN)

    def test_admin_same_status_on_open_order_is_noop(self):
        assert plan_transition(OrderStatus.PROCESSING, OrderStatus.PROCESSING, TransitionSource.ADMIN).noop


class TestApplyTransition:
    def test_cancel_releases_each_line_once(self, db, make_variant, place_order, stock_of):
        first = make_variant(sku="KMJ-M-PTH", stock=10)
        second = make_variant(sku="KMJ-L-HTM", stock=5)
        order = place_order([(first.sku, 3), (second.sku, 1)])
        assert stock_of("KMJ-M-PTH") == 7
        assert stock_of("KMJ-L-HTM") == 4

        assert state_machine.apply_transition(db, order, OrderStatus.CANCELLED, TransitionSource.CARRIER)
        db.commit()
        assert not state_machine.apply_transition(db, order, OrderStatus.CANCELLED, TransitionSource.CARRIER)
        db.commit()

        assert stock_of("KMJ-M-PTH") == 10
        assert stock_of("KMJ-L-HTM") == 5
        db.refresh(order)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancelled_at is not None
        assert order.stock_released_at is not None

    def test_refused_transition_leaves_row_unchanged(self, db, make_variant, place_order):
        variant = make_variant(stock=3)
        order = place_order([(variant.sku, 1)])
        state_machine.apply_transition(db, order, OrderStatus.CANCELLED, TransitionSource.ADMIN)
        db.commit()
        updated_at = order.updated_at

        with pytest.raises(InvalidTransition):
            state_machine.apply_transition(db, order, OrderStatus.PAID, TransitionSource.PAYMENT)
        db.rollback()

        fresh = db.get(models.Order, order.id)
        assert fresh.status == OrderStatus.CANCELLED.value
        assert fresh.updated_at == updated_at
        assert fresh.paid_at is None

    def test_transition_is_logged_on_timeline(self, db, make_variant, place_order):
        variant = make_variant(stock=3)
        order = place_order([(variant.sku, 1)])
        state_machine.apply_transition(
            db, order, OrderStatus.PAID, TransitionSource.ADMIN, user_id="admin-1", reason="manual"
        )
        db.commit()

        events = db.query(models.OrderEvent).filter_by(order_id=order.id, event_type="status_changed").all()
        assert len(events) == 1
        assert events[0].old_value == OrderStatus.PENDING_PAYMENT.value
        assert events[0].new_value == OrderStatus.PAID.value
        assert events[0].source == "admin"
        assert events[0].description.endswith(": manual")

    def test_stale_status_is_reread_before_applying(self, db, session_factory, make_variant, place_order):
        variant = make_variant(stock=3)
        order = place_order([(variant.sku, 1)])
        order_id = order.id
        assert order.status == OrderStatus.PENDING_PAYMENT.value

        other = session_factory()
        try:
            other_order = other.get(models.Order, order_id)
            state_machine.apply_transition(other, other_order, OrderStatus.PAID, TransitionSource.PAYMENT)
            other.commit()
        finally:
            other.close()

        # ``order`` still says PENDING_PAYMENT in this session's identity map
        assert state_machine.apply_transition(db, order, OrderStatus.PROCESSING, TransitionSource.ADMIN)
        db.commit()
        db.refresh(order)
        assert order.status == OrderStatus.PROCESSING.value
