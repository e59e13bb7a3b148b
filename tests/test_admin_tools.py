"""
Tests for demo data seeding
"""
import pytest

from admin_tools import DEMO_ACCOUNTS, seed_demo_data
from crud.subscription import SubscriptionRepository


@pytest.mark.asyncio
async def test_seed_creates_accounts_once(test_db):
    created = await seed_demo_data(test_db)
    again = await seed_demo_data(test_db)

    assert len(created) == len(DEMO_ACCOUNTS)
    assert again == []

    repo = SubscriptionRepository(test_db)
    for user_id, _, price in DEMO_ACCOUNTS:
        subscription = await repo.get_latest_for_user(user_id)
        assert subscription.status == "active"
        assert subscription.monthly_price == price
