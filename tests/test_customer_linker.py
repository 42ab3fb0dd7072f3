"""
Tests for Stripe customer correlation.
"""

import pytest
import stripe
from conftest import FIXED_NOW

from payment_reconciler.billing.customers import (
    CustomerLinkError,
    CustomerLinker,
    CustomerProfileHint,
    UserNotFoundError,
)
from payment_reconciler.models.billing import LocalUserCreate


@pytest.fixture
def linker(db, context, gateway) -> CustomerLinker:
    return CustomerLinker(db, context, gateway)


@pytest.fixture
async def unlinked_user(db) -> str:
    await db.create_user(
        LocalUserCreate(user_id="user-2", email="grace@example.com", first_name="Grace", last_name="Hopper"),
        now=FIXED_NOW,
    )
    return "user-2"


# ----------------------------------------------------------------------------
# link_or_create
# ----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_existing_link_is_returned_unchanged(linker, linked_user, gateway):
    assert await linker.link_or_create(linked_user) == "cus_123"
    gateway.create_customer.assert_not_called()


@pytest.mark.asyncio
async def test_creates_and_links_customer(linker, unlinked_user, gateway, db):
    customer_id = await linker.link_or_create(unlinked_user)

    assert customer_id == "cus_new"
    gateway.create_customer.assert_awaited_once_with(
        email="grace@example.com",
        name="Grace Hopper",
        metadata={"userId": "user-2"},
        idempotency_key="customer-link-user-2",
    )
    user = await db.get_user(unlinked_user)
    assert user.stripe_customer_id == "cus_new"


@pytest.mark.asyncio
async def test_profile_hint_overrides_name(linker, unlinked_user, gateway):
    await linker.link_or_create(unlinked_user, CustomerProfileHint(name="Rear Admiral Hopper"))

    assert gateway.create_customer.await_args.kwargs["name"] == "Rear Admiral Hopper"


@pytest.mark.asyncio
async def test_losing_a_link_race_returns_the_winner(linker, unlinked_user, gateway, db):
    async def create_while_another_caller_links(**kwargs):
        await db.link_stripe_customer(unlinked_user, "cus_winner", FIXED_NOW)
        return "cus_loser"

    gateway.create_customer.side_effect = create_while_another_caller_links

    assert await linker.link_or_create(unlinked_user) == "cus_winner"
    assert (await db.get_user(unlinked_user)).stripe_customer_id == "cus_winner"


@pytest.mark.asyncio
async def test_unknown_user_raises(linker):
    with pytest.raises(UserNotFoundError):
        await linker.link_or_create("nobody")


@pytest.mark.asyncio
async def test_without_gateway_raises(db, context, unlinked_user):
    linker = CustomerLinker(db, context, gateway=None)

    with pytest.raises(CustomerLinkError, match="not configured"):
        await linker.link_or_create(unlinked_user)


# ----------------------------------------------------------------------------
# resolve_user
# ----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resolves_local_link_without_calling_stripe(linker, linked_user, gateway):
    assert await linker.resolve_user("cus_123") == linked_user
    gateway.retrieve_customer.assert_not_called()


@pytest.mark.asyncio
async def test_resolves_and_links_from_customer_metadata(linker, unlinked_user, gateway, db):
    gateway.retrieve_customer.return_value = {"id": "cus_meta", "metadata": {"userId": "user-2"}}

    assert await linker.resolve_user("cus_meta") == unlinked_user
    assert (await db.get_user(unlinked_user)).stripe_customer_id == "cus_meta"


@pytest.mark.asyncio
async def test_metadata_pointing_at_user_linked_elsewhere_is_a_miss(linker, linked_user, gateway, db):
    gateway.retrieve_customer.return_value = {"id": "cus_other", "metadata": {"userId": linked_user}}

    assert await linker.resolve_user("cus_other") is None
    assert (await db.get_user(linked_user)).stripe_customer_id == "cus_123"


@pytest.mark.asyncio
async def test_missing_stripe_customer_is_a_miss(linker, gateway):
    gateway.retrieve_customer.side_effect = stripe.InvalidRequestError(
        "No such customer: 'cus_gone'", param="id"
    )

    assert await linker.resolve_user("cus_gone") is None


@pytest.mark.asyncio
async def test_transient_stripe_errors_propagate(linker, gateway):
    gateway.retrieve_customer.side_effect = stripe.APIConnectionError("connection reset")

    with pytest.raises(stripe.APIConnectionError):
        await linker.resolve_user("cus_flaky")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "customer",
    [
        {"id": "cus_x", "metadata": {}},
        {"id": "cus_x", "metadata": {"userId": "does-not-exist"}},
    ],
)
async def test_metadata_misses(linker, gateway, customer):
    gateway.retrieve_customer.return_value = customer

    assert await linker.resolve_user("cus_x") is None


@pytest.mark.asyncio
async def test_missing_customer_id_is_a_miss(linker, gateway):
    assert await linker.resolve_user(None) is None
    gateway.retrieve_customer.assert_not_called()


@pytest.mark.asyncio
async def test_without_gateway_only_local_lookup(db, context, linked_user):
    linker = CustomerLinker(db, context, gateway=None)

    assert await linker.resolve_user("cus_123") == linked_user
    assert await linker.resolve_user("cus_unknown") is None
