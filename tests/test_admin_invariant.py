"""
Tests for guarded admin role/status changes.

The system must never be left without an ACTIVE ADMIN. Includes a
Hypothesis property test driving random sequences of admin mutations.
"""

import asyncio
from datetime import UTC, datetime
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from app.clock import FixedClock
from app.db.consistency import blocks_last_admin
from app.db.memory import InMemoryIdentityRepository
from app.models.api import UserRole, UserStatus
from app.models.domain import AdminActor
from app.services.admin_users import AdminUsersService


@pytest.fixture
def admin_users(services):
    return services.admin_users


def active_admins(repo: InMemoryIdentityRepository) -> list:
    return [
        u for u in repo.users.values() if u.role == UserRole.ADMIN and u.status == UserStatus.ACTIVE
    ]


class TestBlocksLastAdmin:
    """Tests for the pure invariant check."""

    def test_sole_admin_blocked(self):
        admin = uuid4()
        assert blocks_last_admin([admin], admin) is True

    def test_one_of_two_allowed(self):
        admin, other = uuid4(), uuid4()
        assert blocks_last_admin([admin, other], admin) is False

    def test_non_admin_target_allowed(self):
        assert blocks_last_admin([uuid4()], uuid4()) is False


class TestSetUserRole:
    """Tests for set_user_role."""

    @pytest.mark.asyncio
    async def test_demote_last_admin_blocked(self, admin_users, repo, make_user, make_actor):
        admin = await make_user(role=UserRole.ADMIN)

        result = await admin_users.set_user_role(make_actor(admin.id), admin.id, UserRole.USER)

        assert result.kind == "blocked_last_admin"
        assert repo.users[admin.id].role == UserRole.ADMIN
        assert repo.audit_log == []

    @pytest.mark.asyncio
    async def test_demote_with_other_admin(self, admin_users, repo, make_user, make_actor):
        admin = await make_user(role=UserRole.ADMIN)
        await make_user(role=UserRole.ADMIN)

        result = await admin_users.set_user_role(make_actor(admin.id), admin.id, UserRole.USER)

        assert result.kind == "ok"
        assert result.user.role == UserRole.USER
        entry = repo.audit_log[-1]
        assert (entry.kind, entry.old_value, entry.new_value) == ("role", "ADMIN", "USER")

    @pytest.mark.asyncio
    async def test_suspended_admin_does_not_count(self, admin_users, make_user, make_actor):
        """Only ACTIVE admins satisfy the invariant."""
        admin = await make_user(role=UserRole.ADMIN)
        await make_user(role=UserRole.ADMIN, status=UserStatus.SUSPENDED)

        result = await admin_users.set_user_role(make_actor(), admin.id, UserRole.USER)
        assert result.kind == "blocked_last_admin"

    @pytest.mark.asyncio
    async def test_promote(self, admin_users, make_user, make_actor):
        user = await make_user()
        result = await admin_users.set_user_role(make_actor(), user.id, UserRole.ADMIN)
        assert result.kind == "ok"
        assert result.user.role == UserRole.ADMIN

    @pytest.mark.asyncio
    async def test_same_role_no_audit(self, admin_users, repo, make_user, make_actor):
        user = await make_user()
        result = await admin_users.set_user_role(make_actor(), user.id, UserRole.USER)
        assert result.kind == "ok"
        assert repo.audit_log == []

    @pytest.mark.asyncio
    async def test_unknown_user(self, admin_users, make_actor):
        result = await admin_users.set_user_role(make_actor(), uuid4(), UserRole.ADMIN)
        assert result.kind == "not_found"

    @pytest.mark.asyncio
    async def test_deleted_user(self, admin_users, make_user, make_actor):
        user = await make_user(status=UserStatus.DELETED)
        result = await admin_users.set_user_role(make_actor(), user.id, UserRole.ADMIN)
        assert result.kind == "user_deleted"


class TestSetUserStatus:
    """Tests for set_user_status."""

    @pytest.mark.asyncio
    async def test_suspend_last_admin_blocked(self, admin_users, make_user, make_actor):
        admin = await make_user(role=UserRole.ADMIN)
        result = await admin_users.set_user_status(make_actor(), admin.id, UserStatus.SUSPENDED)
        assert result.kind == "blocked_last_admin"

    @pytest.mark.asyncio
    async def test_suspend_revokes_sessions(self, admin_users, services, repo, make_user, make_actor, device):
        user = await make_user()
        await services.sessions.issue_tokens_for_new_session(user, [], device)

        result = await admin_users.set_user_status(
            make_actor(), user.id, UserStatus.SUSPENDED, reason="abuse"
        )

        assert result.kind == "ok"
        row = repo.users[user.id]
        assert row.suspended_reason == "abuse"
        assert row.suspended_at is not None
        assert all(s.revoked_at is not None for s in repo.sessions.values())
        assert repo.audit_log[-1].reason == "abuse"

    @pytest.mark.asyncio
    async def test_reactivate_clears_suspension(self, admin_users, repo, make_user, make_actor):
        user = await make_user()
        await admin_users.set_user_status(make_actor(), user.id, UserStatus.SUSPENDED, "abuse")

        result = await admin_users.set_user_status(make_actor(), user.id, UserStatus.ACTIVE)

        assert result.kind == "ok"
        assert repo.users[user.id].suspended_at is None
        assert repo.users[user.id].suspended_reason is None

    @pytest.mark.asyncio
    async def test_deleted_status_rejected(self, admin_users, make_user, make_actor):
        user = await make_user()
        with pytest.raises(ValueError):
            await admin_users.set_user_status(make_actor(), user.id, UserStatus.DELETED)


# ============================================================================
# Property: at least one ACTIVE ADMIN survives any mutation sequence
# ============================================================================

mutations = st.lists(
    st.tuples(
        st.integers(min_value=0, max_value=4),
        st.sampled_from(
            [
                ("role", UserRole.USER),
                ("role", UserRole.ADMIN),
                ("status", UserStatus.SUSPENDED),
                ("status", UserStatus.ACTIVE),
            ]
        ),
    ),
    min_size=1,
    max_size=30,
)


class TestAdminInvariantProperty:
    """Hypothesis-driven invariant check."""

    @given(initial_admins=st.integers(min_value=1, max_value=3), ops=mutations)
    @settings(max_examples=100, deadline=None)
    def test_never_zero_active_admins(self, initial_admins, ops):
        """Any sequence of role/status changes keeps an ACTIVE ADMIN."""

        async def scenario() -> None:
            repo = InMemoryIdentityRepository()
            clock = FixedClock(datetime(2026, 1, 10, tzinfo=UTC))
            service = AdminUsersService(repo, clock)
            user_ids = []
            for i in range(5):
                user = await repo.create_user_with_password(f"u{i}@example.com", "hash", clock.now())
                if i < initial_admins:
                    repo.users[user.id].role = UserRole.ADMIN
                user_ids.append(user.id)

            actor = AdminActor(user_id=user_ids[0], session_id=uuid4(), trace_id="trace")
            for index, (kind, value) in ops:
                target = user_ids[index]
                if kind == "role":
                    await service.set_user_role(actor, target, value)
                else:
                    await service.set_user_status(actor, target, value)
                assert len(active_admins(repo)) >= 1

        asyncio.run(scenario())

    @given(ops=mutations)
    @settings(max_examples=50, deadline=None)
    def test_concurrent_demotions_keep_an_admin(self, ops):
        """Mutations racing on one event loop still leave an ACTIVE ADMIN."""

        async def scenario() -> None:
            repo = InMemoryIdentityRepository()
            clock = FixedClock(datetime(2026, 1, 10, tzinfo=UTC))
            service = AdminUsersService(repo, clock)
            user_ids = []
            for i in range(5):
                user = await repo.create_user_with_password(f"u{i}@example.com", "hash", clock.now())
                repo.users[user.id].role = UserRole.ADMIN
                user_ids.append(user.id)

            actor = AdminActor(user_id=user_ids[0], session_id=uuid4(), trace_id="trace")
            await asyncio.gather(
                *(
                    service.set_user_role(actor, user_ids[i], v)
                    if k == "role"
                    else service.set_user_status(actor, user_ids[i], v)
                    for i, (k, v) in ops
                )
            )
            assert len(active_admins(repo)) >= 1

        asyncio.run(scenario())
