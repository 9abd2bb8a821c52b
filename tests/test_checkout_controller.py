"""Tests for CheckoutController."""

import asyncio

import pytest

from checkout_controller import CheckoutController
from errors import PreconditionFailed, ValidationError
from models import OrderStatus


FORM = {
    "real_name": "Amy Rakoto",
    "phone": "0341234567",
    "address": "Ivandry",
    "delivery_mode": "PICKUP",
    "delivery_date": "2026-11-02",
    "payment_method": "CASH",
}


@pytest.fixture
def order(handlers, live_session):
    result = asyncio.run(handlers.capture_line(live_session.id, "@amy", "JP1", "Red dress", 15000, 2))
    return result.order


class TestCheckoutController:
    def test_edit_many_saves_once(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            controller.edit_many(FORM)
            pending = controller.writer.pending
            context = await controller.save()
            return controller, pending, context

        controller, pending, context = asyncio.run(scenario())
        assert pending == FORM
        assert controller.writer.write_count == 1
        assert context.order.delivery_date == "2026-11-02"

    def test_edit_many_rejects_unknown_fields(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            with pytest.raises(ValidationError) as exc_info:
                controller.edit_many({"transport": "Cotisse", "colour": "red", "size": "M"})
            return exc_info.value, controller.writer.pending

        error, pending = asyncio.run(scenario())
        assert error.missing_fields == ["colour", "size"]
        assert pending == {}

    def test_open_starts_checkout(self, handlers, order):
        controller = CheckoutController(handlers, order.id, save_delay=10)
        context = asyncio.run(controller.open())
        assert context.order.status is OrderStatus.CHECKOUT_IN_PROGRESS
        assert controller.is_locked is False

    def test_edit_requires_open_form(self, handlers, order):
        controller = CheckoutController(handlers, order.id, save_delay=10)
        with pytest.raises(PreconditionFailed) as exc_info:
            controller.edit("transport", "Cotisse")
        assert exc_info.value.rule == "checkout_not_open"

    def test_draft_readiness_before_save(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            for name, value in FORM.items():
                controller.edit(name, value)
            draft = controller.readiness()
            progress = controller.progress()
            stored = await handlers.readiness(order.id)
            controller.writer.cancel()
            return draft, progress, stored

        draft, progress, stored = asyncio.run(scenario())
        assert draft.can_finalize is True
        assert progress["completion_step"] == 3
        assert progress["saving"] is True
        assert stored.can_finalize is False

    def test_finalize_flushes_pending_edits(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            for name, value in FORM.items():
                controller.edit(name, value)
            confirmed = await controller.finalize()
            return controller, confirmed

        controller, confirmed = asyncio.run(scenario())
        assert confirmed.status is OrderStatus.CONFIRMED
        assert controller.writer.write_count == 1
        assert controller.is_locked is True
        assert controller.context.customer.real_name == "Amy Rakoto"

    def test_edit_after_finalize_rejected(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            for name, value in FORM.items():
                controller.edit(name, value)
            await controller.finalize()
            controller.edit("transport", "Cotisse")

        with pytest.raises(PreconditionFailed) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.rule == "order_locked"

    def test_unknown_field(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            controller.edit("colour", "red")

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.missing_fields == ["colour"]

    def test_finalize_stops_on_failed_save(self, handlers, order, store):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            for name, value in FORM.items():
                controller.edit(name, value)
            controller.edit("deposit_amount", 999999)
            with pytest.raises(ValidationError):
                await controller.finalize()
            return controller, await store.get("orders", order.id)

        controller, row = asyncio.run(scenario())
        assert row["status"] == OrderStatus.CHECKOUT_IN_PROGRESS.value
        assert isinstance(controller.last_error, ValidationError)
        assert "deposit_amount" in controller.writer.pending

    def test_set_paid(self, handlers, order):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            controller.set_paid(True)
            progress = controller.progress()
            await controller.save()
            return controller, progress

        controller, progress = asyncio.run(scenario())
        assert progress["is_fully_paid"] is True
        assert controller.context.order.deposit_amount == 30000

    def test_close_saves_pending(self, handlers, order, store):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            controller.edit("transport", "Cotisse")
            summary = await controller.close()
            again = await controller.close()
            return summary, again, await store.get("orders", order.id)

        summary, again, row = asyncio.run(scenario())
        assert summary["dropped_fields"] == []
        assert again == {"status": "already_closed"}
        assert row["transport"] == "Cotisse"

    def test_close_can_discard(self, handlers, order, store):
        async def scenario():
            controller = CheckoutController(handlers, order.id, save_delay=10)
            await controller.open()
            controller.edit("transport", "Cotisse")
            summary = await controller.close(discard=True)
            return summary, await store.get("orders", order.id)

        summary, row = asyncio.run(scenario())
        assert summary["dropped_fields"] == ["transport"]
        assert row.get("transport") is None
