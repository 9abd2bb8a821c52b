"""Tests for ContactRegistry."""

import asyncio

import pytest

from contacts import ContactRegistry
from errors import NotFound, ValidationError
from models import ContactKind
from store import InMemoryStore


@pytest.fixture
def registry():
    return ContactRegistry(InMemoryStore())


def primaries(registry, customer_id, kind=ContactKind.PHONE):
    entries = asyncio.run(registry.list_entries(customer_id, kind))
    return [e for e in entries if e.is_primary]


class TestAddOrReuse:
    def test_first_entry_becomes_primary(self, registry):
        async def scenario():
            first = await registry.add_or_reuse("c1", ContactKind.PHONE, "0341234567")
            second = await registry.add_or_reuse("c1", ContactKind.PHONE, "0329876543")
            return first, second

        first, second = asyncio.run(scenario())
        assert first.is_primary is True
        assert second.is_primary is False

    def test_kinds_are_independent(self, registry):
        async def scenario():
            await registry.add_or_reuse("c1", ContactKind.PHONE, "0341234567")
            return await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Lot II A 12")

        address = asyncio.run(scenario())
        assert address.is_primary is True
        assert address.value == "Lot II A 12"

    def test_same_value_is_reused(self, registry):
        async def scenario():
            first = await registry.add_or_reuse("c1", ContactKind.PHONE, "0341234567")
            again = await registry.add_or_reuse("c1", ContactKind.PHONE, "  0341234567 ")
            return first, again, await registry.list_entries("c1", ContactKind.PHONE)

        first, again, entries = asyncio.run(scenario())
        assert again.id == first.id
        assert len(entries) == 1

    def test_blank_value_records_nothing(self, registry):
        result = asyncio.run(registry.add_or_reuse("c1", ContactKind.PHONE, "   "))
        assert result is None
        assert asyncio.run(registry.list_entries("c1", ContactKind.PHONE)) == []

    def test_make_primary_moves_flag(self, registry):
        async def scenario():
            old = await registry.add_or_reuse("c1", ContactKind.PHONE, "0341234567")
            new = await registry.add_or_reuse("c1", ContactKind.PHONE, "0329876543", make_primary=True)
            return old, new

        old, new = asyncio.run(scenario())
        assert new.is_primary is True
        current = primaries(registry, "c1")
        assert [e.id for e in current] == [new.id]

    def test_make_primary_promotes_existing_value(self, registry):
        async def scenario():
            await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Analakely")
            second = await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Ivandry")
            promoted = await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Ivandry", make_primary=True)
            return second, promoted

        second, promoted = asyncio.run(scenario())
        assert promoted.id == second.id
        assert [e.id for e in primaries(registry, "c1", ContactKind.ADDRESS)] == [second.id]


class TestSetPrimary:
    def test_at_most_one_primary(self, registry):
        async def scenario():
            entries = []
            for value in ("1", "2", "3"):
                entries.append(await registry.add_or_reuse("c1", ContactKind.PHONE, value))
            for entry in entries:
                await registry.set_primary("c1", ContactKind.PHONE, entry.id)
                assert len([e for e in await registry.list_entries("c1", ContactKind.PHONE) if e.is_primary]) == 1
            return entries

        entries = asyncio.run(scenario())
        assert [e.id for e in primaries(registry, "c1")] == [entries[-1].id]

    def test_foreign_entry_not_found(self, registry):
        async def scenario():
            await registry.add_or_reuse("c1", ContactKind.PHONE, "1")
            other = await registry.add_or_reuse("c2", ContactKind.PHONE, "2")
            await registry.set_primary("c1", ContactKind.PHONE, other.id)

        with pytest.raises(NotFound):
            asyncio.run(scenario())

    def test_primary_listed_first(self, registry):
        async def scenario():
            await registry.add_or_reuse("c1", ContactKind.PHONE, "1")
            second = await registry.add_or_reuse("c1", ContactKind.PHONE, "2")
            await registry.set_primary("c1", ContactKind.PHONE, second.id)
            return second, await registry.list_entries("c1", ContactKind.PHONE)

        second, entries = asyncio.run(scenario())
        assert entries[0].id == second.id


class TestRemove:
    def test_removing_primary_leaves_none(self, registry):
        async def scenario():
            first = await registry.add_or_reuse("c1", ContactKind.PHONE, "1")
            second = await registry.add_or_reuse("c1", ContactKind.PHONE, "2")
            await registry.remove(ContactKind.PHONE, first.id)
            strict = await registry.primary_entry("c1", ContactKind.PHONE)
            display = await registry.primary_entry("c1", ContactKind.PHONE, fallback_to_oldest=True)
            return second, strict, display

        second, strict, display = asyncio.run(scenario())
        assert strict is None
        assert display.id == second.id

    def test_later_entry_after_primary_removed_is_secondary(self, registry):
        async def scenario():
            first = await registry.add_or_reuse("c1", ContactKind.PHONE, "0341")
            await registry.add_or_reuse("c1", ContactKind.PHONE, "0342")
            await registry.remove(ContactKind.PHONE, first.id)
            return await registry.add_or_reuse("c1", ContactKind.PHONE, "0343")

        third = asyncio.run(scenario())
        assert third.is_primary is False
        assert primaries(registry, "c1") == []

    def test_remove_missing(self, registry):

        with pytest.raises(NotFound):
            asyncio.run(registry.remove(ContactKind.ADDRESS, "missing"))

    def test_remove_all(self, registry):
        async def scenario():
            await registry.add_or_reuse("c1", ContactKind.PHONE, "1")
            await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Ivandry")
            await registry.add_or_reuse("c2", ContactKind.PHONE, "2")
            return await registry.remove_all("c1")

        assert asyncio.run(scenario()) == 2
        assert asyncio.run(registry.list_entries("c2", ContactKind.PHONE))


class TestUpdateValue:
    def test_updates_in_place(self, registry):
        async def scenario():
            entry = await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Ivandry")
            return entry, await registry.update_value(ContactKind.ADDRESS, entry.id, " Ankorondrano ")

        entry, updated = asyncio.run(scenario())
        assert updated.id == entry.id
        assert updated.value == "Ankorondrano"
        assert updated.is_primary is True

    def test_blank_rejected(self, registry):
        async def scenario():
            entry = await registry.add_or_reuse("c1", ContactKind.PHONE, "1")
            await registry.update_value(ContactKind.PHONE, entry.id, "")

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.missing_fields == ["phone"]


class TestConcurrentWrites:
    @pytest.fixture
    def registry(self, interleaving_store):
        return ContactRegistry(interleaving_store)

    def test_gathered_first_entries_keep_one_primary(self, registry):
        async def scenario():
            return await asyncio.gather(
                registry.add_or_reuse("c1", ContactKind.PHONE, "0341"),
                registry.add_or_reuse("c1", ContactKind.PHONE, "0342"),
            )

        entries = asyncio.run(scenario())
        assert sorted(e.is_primary for e in entries) == [False, True]
        assert len(primaries(registry, "c1")) == 1

    def test_gathered_set_primary_keeps_one_primary(self, registry):
        async def scenario():
            first = await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Analakely")
            second = await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Ivandry")
            third = await registry.add_or_reuse("c1", ContactKind.ADDRESS, "Ankorondrano")
            await asyncio.gather(
                registry.set_primary("c1", ContactKind.ADDRESS, second.id),
                registry.set_primary("c1", ContactKind.ADDRESS, third.id),
                registry.set_primary("c1", ContactKind.ADDRESS, first.id),
            )

        asyncio.run(scenario())
        assert len(primaries(registry, "c1", ContactKind.ADDRESS)) == 1
