"""Tests for checkout editing and the order feeds."""

import asyncio

import pytest

from errors import NotFound, PreconditionFailed, ValidationError
from handlers import describe_checkout
from models import ContactKind, OrderStatus


async def capture(handlers, session, alias, code, price, quantity=1, description="Item"):
    result = await handlers.capture_line(session.id, alias, code, description, price, quantity)
    return result.order


class TestUpdateCheckout:
    def test_reports_every_invalid_field(self, handlers, live_session, snapshot):
        order = asyncio.run(capture(handlers, live_session, "@amy", "JP1", 15000))
        before = snapshot()

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(handlers.update_checkout_fields(order.id, {
                "delivery_mode": "drone",
                "delivery_date": "soon",
                "transport": "Cotisse"
            }))

        assert sorted(exc_info.value.missing_fields) == ["delivery_date", "delivery_mode"]
        assert snapshot() == before

    def test_deposit_above_total_writes_nothing(self, handlers, live_session, store):
        order = asyncio.run(capture(handlers, live_session, "@amy", "JP1", 15000))

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(handlers.update_checkout_field(order.id, "deposit_amount", 15001))

        assert exc_info.value.missing_fields == ["deposit_exceeds_total"]
        row = asyncio.run(store.get("orders", order.id))
        assert row.get("deposit_amount", 0) == 0
        assert row["status"] == OrderStatus.CREATED.value

    def test_stores_enum_values(self, handlers, live_session, store):
        async def scenario():
            order = await capture(handlers, live_session, "@amy", "JP1", 15000)
            await handlers.update_checkout_fields(order.id, {
                "payment_method": "especes",
                "delivery_mode": "recuperation",
                "deposit_amount": "5000"
            })
            return await store.get("orders", order.id)

        row = asyncio.run(scenario())
        assert row["payment_method"] == "CASH"
        assert row["delivery_mode"] == "PICKUP"
        assert row["deposit_amount"] == 5000.0

    def test_phone_edit_becomes_primary(self, handlers, live_session, store):
        async def scenario():
            order = await capture(handlers, live_session, "@amy", "JP1", 15000)
            await handlers.contacts.add_or_reuse(order.customer_id, ContactKind.PHONE, "0341111111")
            context = await handlers.update_checkout_field(order.id, "phone", "0342222222")
            phones = await handlers.contacts.list_entries(order.customer_id, ContactKind.PHONE)
            return context, phones, await store.get("orders", order.id)

        context, phones, row = asyncio.run(scenario())
        assert context.contacts.primary_phone.value == "0342222222"
        assert [p.value for p in phones if p.is_primary] == ["0342222222"]
        assert len(phones) == 2
        assert row["customer_phone_id"] == context.contacts.primary_phone.id

    def test_real_name_updates_customer(self, handlers, live_session):
        async def scenario():
            order = await capture(handlers, live_session, "@amy", "JP1", 15000)
            await handlers.update_checkout_field(order.id, "real_name", "  Amy Rakoto ")
            return await handlers.customers.get(order.customer_id)

        assert asyncio.run(scenario()).real_name == "Amy Rakoto"

    def test_paid_toggle(self, handlers, live_session):
        async def scenario():
            order = await capture(handlers, live_session, "@amy", "JP1", 15000, quantity=3)
            paid = await handlers.set_fully_paid(order.id, True)
            unpaid = await handlers.set_fully_paid(order.id, False)
            return paid, unpaid

        paid, unpaid = asyncio.run(scenario())
        assert paid.order.deposit_amount == 45000
        assert describe_checkout(paid)["is_fully_paid"] is True
        assert unpaid.order.deposit_amount == 0

    def test_describe_checkout(self, handlers, live_session):
        async def scenario():
            order = await capture(handlers, live_session, "@amy", "JP1", 15000)
            return await handlers.load_checkout_context(order.id)

        described = describe_checkout(asyncio.run(scenario()))
        assert described["total"] == 15000
        assert described["completion_step"] == 0
        assert described["locked"] is False
        assert described["readiness"]["can_finalize"] is False
        assert described["order"]["status"] == "CHECKOUT_IN_PROGRESS"

    def test_unknown_order(self, handlers):
        with pytest.raises(NotFound):
            asyncio.run(handlers.update_checkout_field("missing", "transport", "Cotisse"))


class TestConfirmedDuringEdit:
    def _confirm_on_lines_read(self, store, order_id):
        async def confirm():
            await store.update("orders", order_id, {"status": OrderStatus.CONFIRMED.value})
        store.on_lines_read = confirm

    def test_name_edit_rejected(self, racing):
        handlers, store, session = racing

        async def scenario():
            order = await capture(handlers, session, "@amy", "JP1", 15000)
            await handlers.load_checkout_context(order.id)
            self._confirm_on_lines_read(store, order.id)
            with pytest.raises(PreconditionFailed) as exc_info:
                await handlers.update_checkout_fields(order.id, {"real_name": "Someone Else"})
            return exc_info.value, await handlers.customers.get(order.customer_id)

        error, customer = asyncio.run(scenario())
        assert error.rule == "order_locked"
        assert customer.real_name != "Someone Else"

    def test_mixed_edit_writes_nothing(self, racing):
        handlers, store, session = racing

        async def scenario():
            order = await capture(handlers, session, "@amy", "JP1", 15000)
            self._confirm_on_lines_read(store, order.id)
            with pytest.raises(PreconditionFailed) as exc_info:
                await handlers.update_checkout_fields(order.id, {
                    "real_name": "Someone Else",
                    "phone": "0341234567",
                    "transport": "Cotisse",
                })
            phones = await handlers.contacts.list_entries(order.customer_id, ContactKind.PHONE)
            return (
                exc_info.value,
                await handlers.customers.get(order.customer_id),
                phones,
                await store.get("orders", order.id),
            )

        error, customer, phones, row = asyncio.run(scenario())
        assert error.rule == "order_locked"
        assert customer.real_name != "Someone Else"
        assert phones == []
        assert row["status"] == OrderStatus.CONFIRMED.value
        assert row.get("transport") is None


class TestPendingOrders:

    def _seed(self, handlers, session, store):
        async def seed():
            amy_first = await capture(handlers, session, "@amy", "JP1", 15000)
            await handlers.load_checkout_context(amy_first.id)
            amy_second = await capture(handlers, session, "@amy", "JP2", 5000)
            bob = await capture(handlers, session, "@bob", "JP3", 30000)
            await handlers.update_checkout_field(bob.id, "deposit_amount", 15000)

            carl = await handlers.customers.resolve_or_create_by_alias("@carl")
            await store.insert("orders", {
                "session_id": session.id,
                "customer_id": carl.id,
                "order_number": "CMD-EMPTY",
                "status": OrderStatus.CREATED.value
            })
            return amy_first, amy_second, bob
        return asyncio.run(seed())

    def test_grouped_and_sorted(self, handlers, live_session, store):
        amy_first, amy_second, bob = self._seed(handlers, live_session, store)

        groups = asyncio.run(handlers.pending_orders(live_session.id))

        assert [g["customer"]["alias"] for g in groups] == ["@bob", "@amy"]
        assert groups[0]["subtotal"] == 30000
        assert groups[1]["subtotal"] == 20000
        assert [o["order"]["id"] for o in groups[1]["orders"]] == [amy_first.id, amy_second.id]
        assert groups[0]["orders"][0]["can_finalize"] is True
        assert groups[1]["orders"][0]["can_finalize"] is False

    def test_query_filters_customers(self, handlers, live_session, store):
        self._seed(handlers, live_session, store)
        groups = asyncio.run(handlers.pending_orders(live_session.id, query="AM"))
        assert [g["customer"]["alias"] for g in groups] == ["@amy"]

    def test_confirmed_orders_leave_pending(self, handlers, live_session, store):
        amy_first, amy_second, bob = self._seed(handlers, live_session, store)
        asyncio.run(handlers.cancel_order(bob.id))

        groups = asyncio.run(handlers.pending_orders(live_session.id))
        assert [g["customer"]["alias"] for g in groups] == ["@amy"]

    def test_unknown_session(self, handlers):
        with pytest.raises(NotFound):
            asyncio.run(handlers.pending_orders("missing"))


class TestConfirmedOrders:
    def test_feed_resyncs_stale_total(self, handlers, live_session, store):
        async def scenario():
            order = await capture(handlers, live_session, "@amy", "JP1", 15000, quantity=2)
            await handlers.update_checkout_fields(order.id, {
                "real_name": "Amy Rakoto",
                "phone": "0341234567",
                "address": "Ivandry",
                "delivery_mode": "PICKUP",
                "delivery_date": "2026-11-02",
                "payment_method": "CASH"
            })
            await handlers.finalize_checkout(order.id)
            await store.update("orders", order.id, {"total_amount": 1})
            feed = await handlers.confirmed_orders()
            return order, feed, await store.get("orders", order.id)

        order, feed, row = asyncio.run(scenario())
        assert len(feed) == 1
        assert feed[0]["total"] == 30000
        assert feed[0]["order"]["total_amount"] == 30000
        assert feed[0]["customer"]["primary_phone"] == "0341234567"
        assert row["total_amount"] == 30000

    def test_pending_orders_excluded(self, handlers, live_session):
        asyncio.run(capture(handlers, live_session, "@amy", "JP1", 15000))
        assert asyncio.run(handlers.confirmed_orders()) == []


class TestCustomers:
    def test_search_and_set_primary(self, handlers):
        async def scenario():
            customer = await handlers.customers.resolve_or_create_by_alias("@amy")
            await handlers.contacts.add_or_reuse(customer.id, ContactKind.ADDRESS, "Ivandry")
            second = await handlers.contacts.add_or_reuse(customer.id, ContactKind.ADDRESS, "Analakely")
            entry = await handlers.set_primary_contact(customer.id, "address", second.id)
            found = await handlers.search_customers("amy")
            return second, entry, found

        second, entry, found = asyncio.run(scenario())
        assert entry["id"] == second.id
        assert entry["is_primary"] is True
        assert [c["alias"] for c in found] == ["@amy"]

    def test_invalid_contact_kind(self, handlers):
        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(handlers.set_primary_contact("c1", "email", "e1"))
        assert exc_info.value.missing_fields == ["kind"]

    def test_health(self, handlers):
        assert handlers.is_healthy() is True
        assert handlers.get_stats()["backend"] == "memory"
