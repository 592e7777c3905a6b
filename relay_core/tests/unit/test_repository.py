"""Unit tests for the state-store repositories.

Covers:
- Event log append, terminal transitions and cursor queries
- One open subscription row per (tenant, provider)
- Entitlement upsert and the conditional grace-period expiry
- Billing event dedup and the unique external id
- Alert visibility for tenant and global views
- Active provider credential lookup and replacement
- Open payment attempt lookup and notification updates
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from relay_core.state.repository import (
    AlertRepository,
    BillingEventRepository,
    CredentialRepository,
    DomainEventRepository,
    EntitlementRepository,
    PaymentAttemptRepository,
    SubscriptionRepository,
)
from relay_core.state.tables import PaymentAttemptTable
from sqlalchemy.exc import IntegrityError

# ---------------------------------------------------------------------------
# DomainEventRepository
# ---------------------------------------------------------------------------


class TestDomainEventRepository:
    """Append-only event log."""

    @pytest.mark.asyncio
    async def test_append_assigns_increasing_ids(self, session) -> None:
        repo = DomainEventRepository(session)
        first = await repo.append("order.created", {"tenant_id": "t1"}, tenant_id="t1")
        second = await repo.append("order.closed", {"tenant_id": "t1", "order_id": "o1"}, tenant_id="t1")

        assert second > first
        row = await repo.get(first)
        assert row is not None
        assert row.status == "pending"
        assert row.payload == {"tenant_id": "t1"}

    @pytest.mark.asyncio
    async def test_max_id_empty_log(self, session) -> None:
        assert await DomainEventRepository(session).max_id() == 0

    @pytest.mark.asyncio
    async def test_max_id_returns_highest(self, session) -> None:
        repo = DomainEventRepository(session)
        await repo.append("order.created", {"tenant_id": "t1"})
        last = await repo.append("order.created", {"tenant_id": "t1"})
        assert await repo.max_id() == last

    @pytest.mark.asyncio
    async def test_mark_processed_stores_result(self, session) -> None:
        repo = DomainEventRepository(session)
        event_id = await repo.append("order.created", {"tenant_id": "t1"})

        assert await repo.mark_processed(event_id, {"id": "o1"}) is True

        session.expire_all()
        row = await repo.get(event_id)
        assert row.status == "processed"
        assert row.result == {"id": "o1"}
        assert row.error_message is None

    @pytest.mark.asyncio
    async def test_mark_failed_stores_message(self, session) -> None:
        repo = DomainEventRepository(session)
        event_id = await repo.append("order.created", {"tenant_id": "t1"})

        assert await repo.mark_failed(event_id, "boom") is True

        session.expire_all()
        row = await repo.get(event_id)
        assert row.status == "failed"
        assert row.error_message == "boom"

    @pytest.mark.asyncio
    async def test_terminal_status_reached_once(self, session) -> None:
        repo = DomainEventRepository(session)
        event_id = await repo.append("order.created", {"tenant_id": "t1"})

        assert await repo.mark_processed(event_id, None) is True
        assert await repo.mark_failed(event_id, "late failure") is False
        assert await repo.mark_processed(event_id, {"again": True}) is False

        session.expire_all()
        row = await repo.get(event_id)
        assert row.status == "processed"
        assert row.error_message is None

    @pytest.mark.asyncio
    async def test_list_processed_after_skips_pending_and_failed(self, session) -> None:
        repo = DomainEventRepository(session)
        pending = await repo.append("order.created", {"tenant_id": "t1"})
        failed = await repo.append("order.created", {"tenant_id": "t1"})
        done = await repo.append("order.created", {"tenant_id": "t1"})
        await repo.mark_failed(failed, "x")
        await repo.mark_processed(done)

        rows = await repo.list_processed_after(0)
        assert [r.id for r in rows] == [done]
        assert pending not in [r.id for r in rows]

    @pytest.mark.asyncio
    async def test_list_processed_after_is_exclusive_and_ordered(self, session) -> None:
        repo = DomainEventRepository(session)
        ids = []
        for _ in range(4):
            event_id = await repo.append("order.created", {"tenant_id": "t1"})
            await repo.mark_processed(event_id)
            ids.append(event_id)

        rows = await repo.list_processed_after(ids[0])
        assert [r.id for r in rows] == ids[1:]

        limited = await repo.list_processed_after(0, limit=2)
        assert [r.id for r in limited] == ids[:2]

    @pytest.mark.asyncio
    async def test_list_processed_after_tenant_filter(self, session) -> None:
        repo = DomainEventRepository(session)
        mine = await repo.append("order.created", {"tenant_id": "t1"}, tenant_id="t1")
        theirs = await repo.append("order.created", {"tenant_id": "t2"}, tenant_id="t2")
        await repo.mark_processed(mine)
        await repo.mark_processed(theirs)

        rows = await repo.list_processed_after(0, tenant_id="t1")
        assert [r.id for r in rows] == [mine]


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class TestSubscriptionRepository:
    """Open-row lookup and lifecycle updates."""

    @pytest.mark.asyncio
    async def test_get_open_none_when_empty(self, session) -> None:
        repo = SubscriptionRepository(session, tenant_id="t1")
        assert await repo.get_open("mercadopago") is None

    @pytest.mark.asyncio
    async def test_create_then_get_open(self, session) -> None:
        repo = SubscriptionRepository(session, tenant_id="t1")
        created = await repo.create("mercadopago", "active", external_subscription_id="sub-1")

        found = await repo.get_open("mercadopago")
        assert found is not None
        assert found.id == created.id
        assert found.external_subscription_id == "sub-1"

    @pytest.mark.asyncio
    async def test_terminal_rows_are_not_open(self, session) -> None:
        repo = SubscriptionRepository(session, tenant_id="t1")
        row = await repo.create("mercadopago", "active")
        await repo.update(row, "canceled", canceled_at=datetime(2026, 1, 1, tzinfo=UTC))

        assert await repo.get_open("mercadopago") is None
        await session.refresh(row)
        assert row.status == "canceled"

    @pytest.mark.asyncio
    async def test_get_open_scoped_to_tenant_and_provider(self, session) -> None:
        await SubscriptionRepository(session, tenant_id="t2").create("mercadopago", "active")
        await SubscriptionRepository(session, tenant_id="t1").create("other", "active")

        repo = SubscriptionRepository(session, tenant_id="t1")
        assert await repo.get_open("mercadopago") is None

    @pytest.mark.asyncio
    async def test_update_overwrites_fields(self, session) -> None:
        repo = SubscriptionRepository(session, tenant_id="t1")
        row = await repo.create("mercadopago", "active", metadata={"plan": "basic"})
        await repo.update(row, "past_due", external_subscription_id="sub-9", metadata={"plan": "pro"})

        found = await repo.get_open("mercadopago")
        assert found.status == "past_due"
        assert found.external_subscription_id == "sub-9"
        assert found.metadata_json == {"plan": "pro"}


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class TestEntitlementRepository:
    """Upsert semantics and conditional expiry."""

    @pytest.mark.asyncio
    async def test_upsert_inserts_then_overwrites(self, session) -> None:
        repo = EntitlementRepository(session, tenant_id="t1")
        await repo.upsert("active", ["mercadopago"], None)
        await repo.upsert("past_due", [], None)

        session.expire_all()
        row = await repo.get()
        assert row.subscription_status == "past_due"
        assert row.features_enabled == []

    @pytest.mark.asyncio
    async def test_get_missing_row(self, session) -> None:
        assert await EntitlementRepository(session, tenant_id="nobody").get() is None

    @pytest.mark.asyncio
    async def test_expire_if_in_grace_changes_grace_row(self, session) -> None:
        repo = EntitlementRepository(session, tenant_id="t1")
        await repo.upsert("grace_period", ["mercadopago"], datetime(2026, 1, 8, tzinfo=UTC))

        assert await repo.expire_if_in_grace() is True

        session.expire_all()
        row = await repo.get()
        assert row.subscription_status == "expired"
        assert row.features_enabled == []

    @pytest.mark.asyncio
    async def test_expire_if_in_grace_leaves_other_statuses(self, session) -> None:
        repo = EntitlementRepository(session, tenant_id="t1")
        await repo.upsert("active", ["mercadopago"], None)

        assert await repo.expire_if_in_grace() is False

        session.expire_all()
        row = await repo.get()
        assert row.subscription_status == "active"


# ---------------------------------------------------------------------------
# BillingEventRepository
# ---------------------------------------------------------------------------


class TestBillingEventRepository:
    """Dedup by provider event id."""

    @pytest.mark.asyncio
    async def test_exists_after_append(self, session) -> None:
        repo = BillingEventRepository(session)
        assert await repo.exists("evt-1") is False

        await repo.append(tenant_id="t1", event_type="subscription.updated", external_event_id="evt-1", payload={})
        assert await repo.exists("evt-1") is True

    @pytest.mark.asyncio
    async def test_duplicate_external_id_rejected(self, session) -> None:
        repo = BillingEventRepository(session)
        await repo.append(tenant_id="t1", event_type="a", external_event_id="evt-1", payload={})

        with pytest.raises(IntegrityError):
            await repo.append(tenant_id="t1", event_type="a", external_event_id="evt-1", payload={})

    @pytest.mark.asyncio
    async def test_null_external_ids_do_not_collide(self, session) -> None:
        repo = BillingEventRepository(session)
        first = await repo.append(tenant_id="t1", event_type="a", external_event_id=None, payload={})
        second = await repo.append(tenant_id="t1", event_type="a", external_event_id=None, payload={})
        assert first.id != second.id


# ---------------------------------------------------------------------------
# AlertRepository
# ---------------------------------------------------------------------------


async def _seed_alerts(session) -> dict[str, int]:
    repo = AlertRepository(session)
    ids = {}
    ids["own"] = (
        await repo.create(tenant_id="t1", scope="tenant", alert_type="subscription", severity="warning", title="own")
    ).id
    ids["other"] = (
        await repo.create(tenant_id="t2", scope="tenant", alert_type="subscription", severity="warning", title="other")
    ).id
    ids["broadcast"] = (
        await repo.create(tenant_id=None, scope="tenant", alert_type="system", severity="info", title="broadcast")
    ).id
    ids["admin"] = (
        await repo.create(tenant_id=None, scope="admin", alert_type="system", severity="critical", title="admin")
    ).id
    return ids


class TestAlertRepository:
    """Tenant and global alert views."""

    @pytest.mark.asyncio
    async def test_tenant_view_sees_own_and_broadcasts(self, session) -> None:
        ids = await _seed_alerts(session)
        rows = await AlertRepository(session, tenant_id="t1").list_visible()

        assert {r.id for r in rows} == {ids["own"], ids["broadcast"]}

    @pytest.mark.asyncio
    async def test_tenant_view_hides_admin_rows_for_that_tenant(self, session) -> None:
        repo = AlertRepository(session)
        ops = await repo.create(tenant_id="t1", scope="admin", alert_type="payment", severity="warning", title="ops")
        own = await repo.create(tenant_id="t1", scope="tenant", alert_type="payment", severity="critical", title="own")

        tenant_view = AlertRepository(session, tenant_id="t1")
        assert [r.id for r in await tenant_view.list_visible()] == [own.id]
        assert await tenant_view.unread_count() == 1
        assert not await tenant_view.mark_read(ops.id)
        assert len(await repo.list_visible()) == 2

    @pytest.mark.asyncio
    async def test_global_view_sees_everything(self, session) -> None:
        ids = await _seed_alerts(session)
        rows = await AlertRepository(session).list_visible()
        assert {r.id for r in rows} == set(ids.values())

    @pytest.mark.asyncio
    async def test_newest_first(self, session) -> None:
        ids = await _seed_alerts(session)
        rows = await AlertRepository(session, tenant_id="t1").list_visible()
        assert [r.id for r in rows] == [ids["broadcast"], ids["own"]]

    @pytest.mark.asyncio
    async def test_type_filter_and_pagination(self, session) -> None:
        ids = await _seed_alerts(session)
        repo = AlertRepository(session, tenant_id="t1")

        only_sub = await repo.list_visible(alert_type="subscription")
        assert [r.id for r in only_sub] == [ids["own"]]

        page = await repo.list_visible(limit=1, offset=1)
        assert [r.id for r in page] == [ids["own"]]

    @pytest.mark.asyncio
    async def test_unread_count_and_mark_read(self, session) -> None:
        ids = await _seed_alerts(session)
        repo = AlertRepository(session, tenant_id="t1")
        assert await repo.unread_count() == 2

        assert await repo.mark_read(ids["own"]) is True
        assert await repo.mark_read(ids["own"]) is False
        assert await repo.unread_count() == 1

        unread = await repo.list_visible(unread_only=True)
        assert [r.id for r in unread] == [ids["broadcast"]]

    @pytest.mark.asyncio
    async def test_mark_read_rejects_other_tenant(self, session) -> None:
        ids = await _seed_alerts(session)
        assert await AlertRepository(session, tenant_id="t1").mark_read(ids["other"]) is False

    @pytest.mark.asyncio
    async def test_mark_all_read_by_type(self, session) -> None:
        await _seed_alerts(session)
        repo = AlertRepository(session, tenant_id="t1")

        assert await repo.mark_all_read(alert_type="system") == 1
        assert await repo.unread_count() == 1
        assert await repo.mark_all_read() == 1
        assert await repo.unread_count() == 0

        # The other tenant's alert is untouched.
        assert await AlertRepository(session, tenant_id="t2").unread_count() == 1


# ---------------------------------------------------------------------------
# CredentialRepository
# ---------------------------------------------------------------------------


class TestCredentialRepository:
    """Connected provider accounts."""

    @pytest.mark.asyncio
    async def test_replace_deactivates_previous(self, session) -> None:
        repo = CredentialRepository(session)
        first = await repo.replace("t1", provider_user_id="77", app_id="app", access_token="at-1")
        second = await repo.replace("t1", provider_user_id="77", app_id="app", access_token="at-2")

        await session.refresh(first)
        assert first.status == "inactive"
        active = await repo.get_active("t1")
        assert active is not None
        assert active.id == second.id
        assert active.access_token == "at-2"

    @pytest.mark.asyncio
    async def test_find_by_user_and_email(self, session) -> None:
        repo = CredentialRepository(session)
        await repo.replace("t1", provider_user_id="77", app_id="app", access_token="at", contact_email="a@x.cl")
        await repo.replace("t2", provider_user_id="88", app_id="app", access_token="at")

        by_user = await repo.find_active_by_user("88")
        by_email = await repo.find_active_by_email("a@x.cl")
        assert by_user is not None and by_user.tenant_id == "t2"
        assert by_email is not None and by_email.tenant_id == "t1"
        assert await repo.find_active_by_user("99") is None

    @pytest.mark.asyncio
    async def test_deactivate_hides_credential(self, session) -> None:
        repo = CredentialRepository(session)
        await repo.replace("t1", provider_user_id="77", app_id="app", access_token="at")

        assert await repo.deactivate("t1") == 1
        assert await repo.find_active_by_user("77") is None
        assert await repo.deactivate("t1") == 0


# ---------------------------------------------------------------------------
# PaymentAttemptRepository
# ---------------------------------------------------------------------------


async def _attempt(session, tenant_id: str, order_id: str, status: str = "pending", **kwargs) -> PaymentAttemptTable:
    row = PaymentAttemptTable(tenant_id=tenant_id, order_id=order_id, status=status, amount_cents=1000, **kwargs)
    session.add(row)
    await session.flush()
    return row


class TestPaymentAttemptRepository:
    """Open attempt lookup per tenant."""

    @pytest.mark.asyncio
    async def test_terminal_attempts_are_not_open(self, session) -> None:
        await _attempt(session, "t1", "o1", status="approved")
        repo = PaymentAttemptRepository(session, tenant_id="t1")

        assert await repo.find_open_by_order("o1") is None
        pending = await _attempt(session, "t1", "o1")
        found = await repo.find_open_by_order("o1")
        assert found is not None and found.id == pending.id

    @pytest.mark.asyncio
    async def test_lookup_scoped_to_tenant(self, session) -> None:
        await _attempt(session, "t2", "o1", provider_transaction_id="pi-1")
        repo = PaymentAttemptRepository(session, tenant_id="t1")

        assert await repo.find_open_by_order("o1") is None
        assert await repo.find_open_by_transaction("pi-1") is None

    @pytest.mark.asyncio
    async def test_apply_notification(self, session) -> None:
        row = await _attempt(session, "t1", "o1")
        repo = PaymentAttemptRepository(session, tenant_id="t1")

        await repo.apply_notification(
            row,
            "processing",
            notification_id="n-1",
            response_data={"status": "in_process"},
            provider_transaction_id="555",
        )

        found = await repo.find_open_by_transaction("555")
        assert found is not None
        assert found.status == "processing"
        assert found.last_notification_id == "n-1"
        assert found.last_processed_at is not None
        assert found.response_data == {"status": "in_process"}
