"""Invoice line items generated from a quote's menu selections.

Regeneration replaces the whole line-item set, but prices an admin already
entered are carried forward: a regenerated item that matches an existing one
by category and normalized title keeps its unit price. New items start at
zero and wait for manual pricing.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import date
from uuid import UUID

import structlog

from billing_workflow.errors import IntegrityError, ValidationError
from billing_workflow.models import (
    ComplianceLevel,
    Invoice,
    LineItem,
    PaymentStatus,
    Quote,
)
from billing_workflow.repository import BillingRepository
from billing_workflow.schedule import (
    build_payment_schedule,
    final_due_date,
    materialize_milestones,
    validate_milestones,
)
from billing_workflow.tax import calculate_tax

logger = structlog.get_logger(__name__)


CATEGORY_ORDER: tuple[str, ...] = (
    "package",
    "dietary",
    "appetizers",
    "sides",
    "desserts",
    "service",
    "supplies",
)

SERVICE_TYPE_LABELS = {
    "full-service": "Full Service Catering",
    "delivery-setup": "Delivery with Setup",
    "drop-off": "Drop Off Delivery",
    "full_service": "Full Service Catering",
    "drop_off": "Drop Off Delivery",
    "drop_off_with_setup": "Delivery with Setup",
}

DIETARY_KEYWORDS = ("vegan", "vegetarian", "veggie")
DISPOSABLE_SUPPLIES = ("plates", "cups", "napkins", "serving_utensils")
PACKAGE_SIDE_COUNT = 2
GUESTS_PER_SERVER = 25
SERVER_HOURS = 4
# Share of guests assumed to need a dietary plate.
DIETARY_GUEST_SHARE = 0.1


def format_menu_item(value: str) -> str:
    """Turn a menu id like ``mac_and-cheese`` into ``Mac And Cheese``."""
    words = re.split(r"[_\-\s]+", value.strip())
    return " ".join(word.capitalize() for word in words if word)


def format_service_type(service_type: str) -> str:
    return SERVICE_TYPE_LABELS.get(service_type, "Catering Service")


def is_dietary(value: str) -> bool:
    lowered = value.lower()
    return any(keyword in lowered for keyword in DIETARY_KEYWORDS)


def line_item_key(category: str, title: str) -> tuple[str, str]:
    """Stable match key: category plus case- and whitespace-normalized title."""
    return category.strip().lower(), " ".join(title.lower().split())


@dataclass
class _Draft:
    category: str
    title: str
    description: str
    quantity: int


def _package_items(quote: Quote) -> list[_Draft]:
    menu = quote.menu
    proteins = [format_menu_item(p) for p in menu.proteins]
    drinks = [format_menu_item(d) for d in menu.drinks]
    drafts = []
    if proteins:
        sides = [format_menu_item(s) for s in menu.sides[:PACKAGE_SIDE_COUNT]]
        description = " & ".join(proteins)
        if sides:
            description += f" with {' and '.join(sides)}"
        description += ", dinner rolls"
        if drinks:
            description += f" and {', '.join(drinks)}"
        drafts.append(_Draft("package", "Entree Meals", description, quote.guest_count))
    elif drinks:
        drafts.append(_Draft("package", "Beverages", ", ".join(drinks), quote.guest_count))
    return drafts


def _dietary_items(quote: Quote) -> list[_Draft]:
    selections = list(quote.menu.dietary)
    selections += [a for a in quote.menu.appetizers if is_dietary(a)]
    if not selections:
        return []
    quantity = max(1, math.floor(quote.guest_count * DIETARY_GUEST_SHARE))
    description = ", ".join(format_menu_item(s) for s in selections)
    return [_Draft("dietary", "Vegan/Vegetarian Selections", description, quantity)]


def _course_items(quote: Quote) -> list[_Draft]:
    menu = quote.menu
    drafts = []
    appetizers = [a for a in menu.appetizers if not is_dietary(a)]
    if appetizers:
        drafts.append(
            _Draft(
                "appetizers",
                "Appetizers",
                ", ".join(format_menu_item(a) for a in appetizers),
                quote.guest_count,
            )
        )

    # With a protein package the first sides are bundled in it.
    sides = menu.sides[PACKAGE_SIDE_COUNT:] if menu.proteins else menu.sides
    if sides:
        title = "Additional Sides" if menu.proteins else "Sides"
        drafts.append(
            _Draft(
                "sides",
                title,
                ", ".join(format_menu_item(s) for s in sides),
                quote.guest_count,
            )
        )

    if menu.desserts:
        drafts.append(
            _Draft(
                "desserts",
                "Desserts",
                ", ".join(format_menu_item(d) for d in menu.desserts),
                quote.guest_count,
            )
        )
    return drafts


def _service_items(quote: Quote) -> list[_Draft]:
    menu = quote.menu
    drafts = [_Draft("service", "Service Charge", format_service_type(quote.service_type), 1)]
    if menu.wait_staff:
        staff = max(1, math.ceil(quote.guest_count / GUESTS_PER_SERVER))
        drafts.append(
            _Draft(
                "service",
                "Wait Staff Service",
                f"Estimated {staff} staff members for {SERVER_HOURS} hours",
                staff * SERVER_HOURS,
            )
        )
    if menu.bussing_tables and quote.service_type in ("full-service", "full_service"):
        drafts.append(
            _Draft(
                "service",
                "Table Bussing Service",
                "Table clearing and maintenance during event",
                1,
            )
        )
    if menu.ceremony:
        drafts.append(_Draft("service", "Ceremony Service", "Food service during ceremony", 1))
    if menu.cocktail_hour:
        drafts.append(
            _Draft("service", "Cocktail Hour Service", "Pre-reception cocktail hour catering", 1)
        )
    return drafts


def _supply_items(quote: Quote) -> list[_Draft]:
    requested = [s.lower() for s in quote.menu.supplies]
    drafts = []
    disposables = [format_menu_item(s) for s in requested if s in DISPOSABLE_SUPPLIES]
    if disposables:
        drafts.append(
            _Draft(
                "supplies",
                "Disposable Supplies",
                f"{', '.join(disposables)} for {quote.guest_count} guests",
                quote.guest_count,
            )
        )
    if "chafers" in requested:
        chafers = max(1, math.ceil(len(quote.menu.sides) / 2))
        drafts.append(
            _Draft("supplies", "Chafer Rental", f"{chafers} chafers for buffet service", chafers)
        )
    if "ice" in requested:
        drafts.append(_Draft("supplies", "Ice Service", "Ice for beverages", 1))
    return drafts


def generate_line_items(quote: Quote) -> list[LineItem]:
    """Build the target line items for a quote, unpriced and in display order.

    Raises:
        ValidationError: If the guest count is not a positive integer.
    """
    if isinstance(quote.guest_count, bool) or not isinstance(quote.guest_count, int) or quote.guest_count < 1:
        raise ValidationError(
            "guest_count must be a positive integer",
            details={"quote_id": str(quote.id), "guest_count": repr(quote.guest_count)},
        )

    drafts = (
        _package_items(quote)
        + _dietary_items(quote)
        + _course_items(quote)
        + _service_items(quote)
        + _supply_items(quote)
    )
    # Stable sort keeps insertion order within a category.
    drafts.sort(key=lambda d: CATEGORY_ORDER.index(d.category))
    return [
        LineItem(
            title=d.title,
            category=d.category,
            quantity=d.quantity,
            description=d.description,
            sort_order=index,
        )
        for index, d in enumerate(drafts)
    ]


def carry_forward_prices(
    targets: Sequence[LineItem],
    existing: Iterable[LineItem],
) -> list[LineItem]:
    """Copy unit prices from existing items onto matching targets.

    Totals are recomputed as quantity x unit price, so an unchanged item keeps
    its total exactly and a changed guest count reprices consistently.
    """
    prices = {line_item_key(item.category, item.title): item.unit_price for item in existing}
    result = []
    for target in targets:
        unit_price = prices.get(line_item_key(target.category, target.title), 0)
        result.append(
            replace(target, unit_price=unit_price, total_price=target.quantity * unit_price)
        )
    return result


def line_items_subtotal(items: Iterable[LineItem]) -> int:
    return sum(item.total_price for item in items)


class LineItemSynchronizer:
    """Regenerates an invoice's line items, totals and milestones from its quote."""

    def __init__(self, repository: BillingRepository):
        self._repo = repository
        self._logger = logger.bind(component="line_item_synchronizer")

    async def paid_cents(self, invoice_id: UUID) -> int:
        payments = await self._repo.list_payments(invoice_id)
        return sum(p.amount_cents for p in payments if p.status == PaymentStatus.COMPLETED)

    async def apply(
        self,
        invoice: Invoice,
        quote: Quote,
        line_items: list[LineItem],
        reference_date: date,
        *,
        bump_version: bool,
    ) -> Invoice:
        """Persist a priced line-item set with recomputed totals and milestones."""
        totals = calculate_tax(line_items_subtotal(line_items), quote.is_government)
        schedule = build_payment_schedule(
            quote.event_date,
            reference_date,
            ComplianceLevel.GOVERNMENT if quote.is_government else ComplianceLevel.STANDARD,
            totals.total_amount,
        )
        milestones = materialize_milestones(
            invoice.id, schedule, paid_cents=await self.paid_cents(invoice.id)
        )
        validate_milestones(milestones)

        updated = await self._repo.regenerate_invoice(
            invoice.id,
            expected_version=invoice.version,
            expected_revision=invoice.revision,
            line_items=line_items,
            totals=totals,
            milestones=milestones,
            due_date=final_due_date(schedule, reference_date),
            bump_version=bump_version,
        )

        persisted = await self._repo.list_line_items(invoice.id)
        persisted_subtotal = line_items_subtotal(persisted)
        if persisted_subtotal != updated.subtotal:
            raise IntegrityError(
                "persisted line items do not add up to the invoice subtotal",
                details={
                    "invoice_id": str(invoice.id),
                    "line_item_total": persisted_subtotal,
                    "subtotal": updated.subtotal,
                },
            )
        return updated

    async def sync(self, invoice_id: UUID, quote: Quote, reference_date: date) -> tuple[Invoice, list[LineItem]]:
        """Regenerate the invoice's line items from the quote's current menu.

        Returns:
            The updated invoice (version incremented) and its new line items.
        """
        invoice = await self._repo.get_invoice(invoice_id)
        existing = await self._repo.list_line_items(invoice_id)
        targets = carry_forward_prices(generate_line_items(quote), existing)

        updated = await self.apply(invoice, quote, targets, reference_date, bump_version=True)
        self._logger.info(
            "line_items_synced",
            invoice_id=str(invoice_id),
            quote_id=str(quote.id),
            line_items=len(targets),
            carried_prices=sum(1 for t in targets if t.unit_price),
            version=updated.version,
        )
        return updated, targets
