"""Tests for line-item generation and synchronization."""

from dataclasses import replace

import pytest
from factories import TODAY, make_menu, make_quote

from billing_workflow.errors import IntegrityError, ValidationError
from billing_workflow.line_items import (
    CATEGORY_ORDER,
    LineItemSynchronizer,
    carry_forward_prices,
    format_menu_item,
    generate_line_items,
    line_item_key,
)
from billing_workflow.models import LineItem


class TestGenerateLineItems:
    """Tests for the target line-item set."""

    def test_default_menu_titles_in_display_order(self):
        items = generate_line_items(make_quote())

        assert [i.title for i in items] == [
            "Entree Meals",
            "Appetizers",
            "Additional Sides",
            "Desserts",
            "Service Charge",
            "Wait Staff Service",
            "Disposable Supplies",
            "Chafer Rental",
        ]
        assert [i.sort_order for i in items] == list(range(len(items)))
        assert all(i.unit_price == 0 and i.total_price == 0 for i in items)

    def test_categories_follow_precedence(self):
        quote = make_quote(
            menu=make_menu(
                appetizers=["vegan_sliders", "deviled_eggs"],
                dietary=["gluten_free_rolls"],
                supplies=["plates", "chafers", "ice"],
                ceremony=True,
                cocktail_hour=True,
                bussing_tables=True,
            )
        )
        items = generate_line_items(quote)
        ranks = [CATEGORY_ORDER.index(i.category) for i in items]

        assert ranks == sorted(ranks)
        assert [i.title for i in items if i.category == "service"] == [
            "Service Charge",
            "Wait Staff Service",
            "Table Bussing Service",
            "Ceremony Service",
            "Cocktail Hour Service",
        ]

    def test_package_bundles_proteins_two_sides_and_drinks(self):
        package = generate_line_items(make_quote())[0]

        assert package.category == "package"
        assert package.quantity == 50
        assert package.description == (
            "Brisket & Pulled Pork with Mac And Cheese and Collard Greens, "
            "dinner rolls and Sweet Tea"
        )

    def test_extra_sides_beyond_package(self):
        sides = [i for i in generate_line_items(make_quote()) if i.category == "sides"]

        assert len(sides) == 1
        assert sides[0].description == "Cornbread"

    def test_without_proteins_sides_and_drinks_stand_alone(self):
        quote = make_quote(menu=make_menu(proteins=[]))
        items = generate_line_items(quote)

        assert items[0].title == "Beverages"
        sides = [i for i in items if i.category == "sides"]
        assert sides[0].title == "Sides"
        assert sides[0].description == "Mac And Cheese, Collard Greens, Cornbread"

    def test_dietary_line_sized_to_tenth_of_guests(self):
        quote = make_quote(
            menu=make_menu(appetizers=["vegan_sliders", "deviled_eggs"], dietary=["gluten_free_rolls"])
        )
        items = generate_line_items(quote)
        dietary = [i for i in items if i.category == "dietary"]
        appetizers = [i for i in items if i.category == "appetizers"]

        assert dietary[0].quantity == 5
        assert dietary[0].description == "Gluten Free Rolls, Vegan Sliders"
        assert appetizers[0].description == "Deviled Eggs"

    def test_wait_staff_one_per_25_guests_for_four_hours(self):
        items = generate_line_items(make_quote(guest_count=60))
        staff = next(i for i in items if i.title == "Wait Staff Service")

        assert staff.quantity == 12

    def test_bussing_only_for_full_service(self):
        menu = make_menu(bussing_tables=True)
        full = generate_line_items(make_quote(menu=menu))
        drop_off = generate_line_items(make_quote(menu=menu, service_type="drop-off"))

        assert any(i.title == "Table Bussing Service" for i in full)
        assert not any(i.title == "Table Bussing Service" for i in drop_off)

    def test_is_deterministic(self):
        quote = make_quote()
        first = [(i.category, i.title, i.quantity) for i in generate_line_items(quote)]
        second = [(i.category, i.title, i.quantity) for i in generate_line_items(quote)]

        assert first == second

    @pytest.mark.parametrize("guest_count", [0, -5, None, 12.5])
    def test_rejects_bad_guest_count(self, guest_count):
        with pytest.raises(ValidationError):
            generate_line_items(make_quote(guest_count=guest_count))

    def test_format_menu_item(self):
        assert format_menu_item("mac_and-cheese") == "Mac And Cheese"


class TestCarryForwardPrices:
    """Tests for preserving admin-entered prices."""

    def test_key_normalizes_case_and_whitespace(self):
        assert line_item_key("Service ", "  Wait   Staff service") == ("service", "wait staff service")

    def test_matched_items_keep_unit_price(self):
        existing = [LineItem(title="Entree Meals", category="package", quantity=50, unit_price=1800, total_price=90000)]
        targets = [LineItem(title="entree  meals", category="package", quantity=50)]

        result = carry_forward_prices(targets, existing)

        assert result[0].unit_price == 1800
        assert result[0].total_price == 90000

    def test_changed_quantity_recomputes_total(self):
        existing = [LineItem(title="Desserts", category="desserts", quantity=50, unit_price=400, total_price=20000)]
        targets = [LineItem(title="Desserts", category="desserts", quantity=60)]

        assert carry_forward_prices(targets, existing)[0].total_price == 24000

    def test_new_items_start_unpriced(self):
        existing = [LineItem(title="Desserts", category="desserts", quantity=50, unit_price=400, total_price=20000)]
        targets = [LineItem(title="Ice Service", category="supplies", quantity=1)]

        result = carry_forward_prices(targets, existing)

        assert result[0].unit_price == 0
        assert result[0].total_price == 0

    def test_same_title_in_other_category_does_not_match(self):
        existing = [LineItem(title="Sides", category="package", quantity=1, unit_price=999, total_price=999)]
        targets = [LineItem(title="Sides", category="sides", quantity=1)]

        assert carry_forward_prices(targets, existing)[0].unit_price == 0


async def create_priced_invoice(repo, billing, quote, unit_price=1500):
    await repo.add_quote(quote)
    invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
    items = await repo.list_line_items(invoice_id)
    await billing.price_line_items(invoice_id, {i.id: unit_price for i in items}, TODAY)
    return invoice_id


class TestLineItemSynchronizer:
    """Tests for regenerating an invoice from its quote."""

    @pytest.mark.asyncio
    async def test_resync_of_unchanged_quote_preserves_prices(self, repo, billing):
        quote = make_quote()
        invoice_id = await create_priced_invoice(repo, billing, quote)
        before = await repo.list_line_items(invoice_id)

        invoice, items = await LineItemSynchronizer(repo).sync(invoice_id, quote, TODAY)

        assert [(i.title, i.unit_price, i.total_price) for i in items] == [
            (i.title, i.unit_price, i.total_price) for i in before
        ]
        assert invoice.version == 2

    @pytest.mark.asyncio
    async def test_menu_change_keeps_prices_and_adds_unpriced_item(self, repo, billing):
        quote = make_quote()
        invoice_id = await create_priced_invoice(repo, billing, quote)
        changed = replace(quote, menu=make_menu(supplies=["plates", "napkins", "chafers", "ice"]))
        await repo.add_quote(changed)

        invoice, items = await LineItemSynchronizer(repo).sync(invoice_id, changed, TODAY)
        by_title = {i.title: i for i in items}

        assert by_title["Ice Service"].unit_price == 0
        assert by_title["Entree Meals"].unit_price == 1500
        assert invoice.subtotal == sum(i.total_price for i in items)
        assert invoice.total_amount == invoice.subtotal + invoice.tax_amount

    @pytest.mark.asyncio
    async def test_sync_rebuilds_milestones_from_new_total(self, repo, billing):
        quote = make_quote()
        invoice_id = await create_priced_invoice(repo, billing, quote)
        bigger = replace(quote, guest_count=80)
        await repo.add_quote(bigger)

        invoice, _ = await LineItemSynchronizer(repo).sync(invoice_id, bigger, TODAY)
        milestones = await repo.list_milestones(invoice_id=invoice_id)

        assert sum(m.amount_cents for m in milestones) == invoice.total_amount
        assert sum(m.percentage for m in milestones) == 100

    @pytest.mark.asyncio
    async def test_persisted_total_mismatch_is_integrity_error(self, repo, billing, monkeypatch):
        quote = make_quote()
        invoice_id = await create_priced_invoice(repo, billing, quote)
        real_list = repo.list_line_items
        calls = []

        async def tampered(invoice_id):
            items = await real_list(invoice_id)
            calls.append(invoice_id)
            if len(calls) > 1:
                items[0].total_price += 1
            return items

        monkeypatch.setattr(repo, "list_line_items", tampered)

        with pytest.raises(IntegrityError):
            await LineItemSynchronizer(repo).sync(invoice_id, quote, TODAY)
