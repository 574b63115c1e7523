"""
Tests for the session coordinator.

Every test runs one or more simulated nodes against one fake Redis server.
Nodes have no worker pool, so background work runs in the calling thread.

Tests:
- Session creation and the Redis layout it writes
- Session limits
- Lookup through the local cache and Redis
- Mutation propagation
- Removal in all its variants
- Queries and counters
- State swap and shutdown
"""

import pytest
from unittest.mock import MagicMock, patch


def _keys():
    from sessiond.storage import keys

    return keys


# ============================================================================
# Creation
# ============================================================================


@pytest.mark.integration
@pytest.mark.session
class TestCreateSession:
    """Tests for create_session."""

    def test_writes_record_and_indexes(self, coordinator, session_params, redis_client, clock):
        keys = _keys()

        session = coordinator.create_session(
            session_params(auth_id="auth-1", alternative_id="alt-1", brand="Acme")
        )

        session_id = session.session_id
        assert redis_client.exists(keys.session_key(session_id))
        assert redis_client.get(keys.alternative_id_key("alt-1")) == session_id
        assert redis_client.get(keys.auth_id_key("auth-1")) == session_id
        assert redis_client.smembers(keys.user_set_key(7, 42)) == {session_id}
        assert redis_client.zscore(keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME, session_id) == clock.now
        assert redis_client.zscore(keys.brand_set_key("acme"), session_id) == clock.now

    def test_stay_signed_in_goes_to_long_lifetime_set(self, coordinator, session_params, redis_client):
        keys = _keys()

        session = coordinator.create_session(session_params(stay_signed_in=True))

        assert redis_client.zscore(keys.REDIS_SORTEDSET_SESSIONIDS_LONG_LIFETIME, session.session_id) is not None
        assert redis_client.zcard(keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME) == 0

    def test_populates_session_fields(self, coordinator, session_params, clock):
        session = coordinator.create_session(session_params(user_agent="agent/1", hash="h"))

        assert len(session.session_id) == 32
        assert session.secret and session.random_token and session.alternative_id
        assert session.secret != session.random_token
        assert session.local_ip == "10.0.0.1"
        assert session.user_agent == "agent/1"
        assert session.login_time == clock.now
        assert session.hash == "h"

    def test_password_is_not_stored_in_clear(self, coordinator, session_params, redis_client):
        keys = _keys()

        session = coordinator.create_session(session_params(password="very-secret"))

        assert "very-secret" not in redis_client.get(keys.session_key(session.session_id))
        assert session.password == "very-secret"

    def test_session_is_cached_locally(self, coordinator, session_params):
        session = coordinator.create_session(session_params())

        assert coordinator.get_local_sessions() == [session]

    def test_increments_counters(self, coordinator, session_params):
        coordinator.create_session(session_params(brand="acme"))
        coordinator.create_session(session_params(stay_signed_in=True))

        assert coordinator.query_counter_for_number_of_sessions() == 2
        assert coordinator.query_counter_for_number_of_active_sessions() == 2
        assert coordinator.query_counter_for_number_of_short_term_sessions() == 1
        assert coordinator.query_counter_for_number_of_long_term_sessions() == 1
        assert coordinator.query_counter_for_number_of_sessions_by_brand("acme") == 1
        assert coordinator.query_counter_for_number_of_active_sessions_by_brand("acme") == 1
        assert coordinator.get_brand_ids_for_counters() == ["acme"]

    def test_posts_add_and_stored_events(self, make_coordinator, session_params):
        from sessiond.core.events import EventBus, TOPIC_ADD_SESSION, TOPIC_STORED_SESSION

        bus = EventBus()
        added = MagicMock()
        stored = MagicMock()
        bus.register(TOPIC_ADD_SESSION, added)
        bus.register(TOPIC_STORED_SESSION, stored)
        coordinator = make_coordinator(event_bus=bus)

        session = coordinator.create_session(session_params())

        added.assert_called_once_with(TOPIC_ADD_SESSION, session)
        stored.assert_called_once_with(TOPIC_STORED_SESSION, session)


@pytest.mark.integration
@pytest.mark.session
class TestSessionLimits:
    """Tests for limit enforcement on creation."""

    def test_max_sessions(self, make_coordinator, session_params):
        from sessiond.exceptions import MaxSessionsExceededError

        coordinator = make_coordinator(limits={"max_sessions": 2})
        coordinator.create_session(session_params(user_id=1))
        coordinator.create_session(session_params(user_id=2))

        with pytest.raises(MaxSessionsExceededError) as exc_info:
            coordinator.create_session(session_params(user_id=3))

        assert exc_info.value.code == "SES-0101"

    def test_max_sessions_per_user(self, make_coordinator, session_params):
        from sessiond.exceptions import MaxSessionsPerUserExceededError

        coordinator = make_coordinator(limits={"max_sessions_per_user_type": 2})
        coordinator.create_session(session_params())
        coordinator.create_session(session_params())

        with pytest.raises(MaxSessionsPerUserExceededError):
            coordinator.create_session(session_params())

        # Other users are not affected
        coordinator.create_session(session_params(user_id=8))

    def test_limit_per_user_type(self, make_coordinator, session_params):
        from sessiond.exceptions import MaxSessionsPerUserExceededError

        coordinator = make_coordinator(
            limits={"max_sessions_per_user_type": 0, "user_type_limits": {"guest": 1}},
            user_type_resolver=lambda user_id, context_id: "guest" if user_id == 9 else None,
        )
        coordinator.create_session(session_params(user_id=9))
        coordinator.create_session(session_params(user_id=1))
        coordinator.create_session(session_params(user_id=1))

        with pytest.raises(MaxSessionsPerUserExceededError):
            coordinator.create_session(session_params(user_id=9))

    def test_max_sessions_per_client(self, make_coordinator, session_params):
        from sessiond.exceptions import MaxSessionsPerClientExceededError

        coordinator = make_coordinator(limits={"max_sessions_per_client": 1})
        coordinator.create_session(session_params(client="web"))
        coordinator.create_session(session_params(client="mobile"))

        with pytest.raises(MaxSessionsPerClientExceededError) as exc_info:
            coordinator.create_session(session_params(client="web"))

        assert exc_info.value.client == "web"

    def test_duplicate_auth_id(self, coordinator, session_params):
        from sessiond.exceptions import DuplicateAuthIdError

        coordinator.create_session(session_params(auth_id="auth-1", login="first"))

        with pytest.raises(DuplicateAuthIdError) as exc_info:
            coordinator.create_session(session_params(auth_id="auth-1", login="second"))

        assert exc_info.value.existing_login == "first"

    def test_dangling_auth_id_mapping_is_replaced(self, coordinator, session_params, redis_client):
        keys = _keys()
        redis_client.set(keys.auth_id_key("auth-1"), "gone")

        session = coordinator.create_session(session_params(auth_id="auth-1"))

        assert redis_client.get(keys.auth_id_key("auth-1")) == session.session_id

    def test_rejection_writes_nothing(self, make_coordinator, session_params, redis_client):
        from sessiond.exceptions import SessionLimitExceededError

        coordinator = make_coordinator(limits={"max_sessions_per_user_type": 1})
        coordinator.create_session(session_params())

        with pytest.raises(SessionLimitExceededError):
            coordinator.create_session(session_params())

        assert coordinator.get_user_session_count(7, 42) == 1
        assert coordinator.query_counter_for_number_of_sessions() == 1


# ============================================================================
# Lookup
# ============================================================================


@pytest.mark.integration
@pytest.mark.session
class TestGetSession:
    """Tests for get_session and friends."""

    def test_local_hit(self, coordinator, session_params):
        session = coordinator.create_session(session_params())

        assert coordinator.get_session(session.session_id) is session

    def test_unknown_session(self, coordinator):
        assert coordinator.get_session("0123456789abcdef0123456789abcdef") is None

    def test_other_node_loads_from_redis(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        created = node_a.create_session(session_params(password="pw"))

        loaded = node_b.get_session(created.session_id)

        assert loaded == created
        assert loaded is not created
        assert loaded.password == "pw"
        assert node_b.get_local_sessions() == [loaded]

    def test_lookup_refreshes_lifetime(self, make_coordinator, session_params, redis_client, clock):
        keys = _keys()
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params(brand="acme"))

        clock.advance(1000)
        node_b.get_session(session.session_id)

        assert redis_client.zscore(keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME, session.session_id) == clock.now
        assert redis_client.zscore(keys.brand_set_key("acme"), session.session_id) == clock.now

    def test_peek_does_not_refresh_or_cache(self, make_coordinator, session_params, redis_client, clock):
        keys = _keys()
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params())
        created_at = clock.now

        clock.advance(1000)
        peeked = node_b.peek_session(session.session_id)

        assert peeked == session
        assert redis_client.zscore(keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME, session.session_id) == created_at
        assert node_b.get_local_sessions() == []

    def test_lookup_by_alternative_id(self, make_coordinator, session_params):
        from sessiond.storage.models import SessionId

        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params(alternative_id="alt-1"))

        assert node_b.get_session_by_alternative_id("alt-1") == session
        assert node_b.get_session(SessionId.of_alternative_id("alt-1")) == session
        assert node_a.get_session_by_alternative_id("alt-1") is session

    def test_dangling_alternative_id_is_removed(self, coordinator, redis_client):
        keys = _keys()
        redis_client.set(keys.alternative_id_key("alt-1"), "gone")

        assert coordinator.get_session_by_alternative_id("alt-1") is None
        assert not redis_client.exists(keys.alternative_id_key("alt-1"))

    def test_local_hit_of_removed_session_is_dropped(self, coordinator, session_params, redis_client):
        keys = _keys()
        session = coordinator.create_session(session_params())
        redis_client.delete(keys.session_key(session.session_id))

        assert coordinator.get_session(session.session_id) is None
        assert coordinator.get_local_sessions() == []
        assert redis_client.smembers(keys.user_set_key(7, 42)) == set()

    def test_existence_check_is_skipped_within_threshold(self, make_coordinator, session_params, redis_client, clock):
        keys = _keys()
        coordinator = make_coordinator(lifetime={"check_existence_threshold": 5000})
        session = coordinator.create_session(session_params())
        redis_client.delete(keys.session_key(session.session_id))

        clock.advance(1000)
        assert coordinator.get_session(session.session_id) is session

        clock.advance(5000)
        assert coordinator.get_session(session.session_id) is None

    def test_existence_check_can_be_disabled(self, make_coordinator, session_params, redis_client):
        keys = _keys()
        coordinator = make_coordinator(lifetime={"ensure_existence_on_local_fetch": False})
        session = coordinator.create_session(session_params())
        redis_client.delete(keys.session_key(session.session_id))

        assert coordinator.get_session(session.session_id) is session

    def test_ignore_local_storage(self, coordinator, session_params, redis_client):
        keys = _keys()
        session = coordinator.create_session(session_params())
        redis_client.delete(keys.session_key(session.session_id))

        assert coordinator.get_session(session.session_id, consider_local_storage=False) is None

    def test_ignore_local_storage_replaces_stale_copy(self, make_coordinator, session_params):
        from sessiond.storage.models import SessionAttributes

        node_a = make_coordinator(with_channel=False)
        node_b = make_coordinator(with_channel=False)
        session = node_a.create_session(session_params())
        assert node_b.get_session(session.session_id).local_ip == "10.0.0.1"

        # No invalidation reaches node B
        node_a.set_session_attributes(session.session_id, SessionAttributes(local_ip="10.9.9.9"))
        assert node_b.get_session(session.session_id).local_ip == "10.0.0.1"

        fresh = node_b.get_session(session.session_id, consider_local_storage=False)

        assert fresh.local_ip == "10.9.9.9"
        assert node_b.get_session(session.session_id) is fresh

    def test_invalidation_during_fetch_keeps_copy_out_of_cache(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params())
        fetch = node_b._get_session_from_redis

        def fetch_then_invalidate(*args, **kwargs):
            loaded = fetch(*args, **kwargs)
            node_b.get_state().local_cache.remove_by_id(session.session_id)
            return loaded

        node_b._get_session_from_redis = fetch_then_invalidate

        assert node_b.get_session(session.session_id) == session
        assert node_b.get_local_sessions() == []

    def test_local_hit_after_waiting_for_fetch_lock_is_verified(self, coordinator, session_params, redis_client):
        keys = _keys()
        session = coordinator.create_session(session_params())
        redis_client.delete(keys.session_key(session.session_id))
        cache = coordinator.get_state().local_cache
        lookups = iter([None, session])
        cache.get_by_session_id = lambda session_id: next(lookups)

        # Another thread holds the fetch mutex, so the lookup is not immediate
        with patch.object(coordinator._fetch_locks, "hold") as hold:
            hold.return_value.__enter__.return_value = False
            assert coordinator.get_session(session.session_id) is None

        assert redis_client.smembers(keys.user_set_key(7, 42)) == set()

    def test_lookup_without_fetch_lock(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator(lifetime={"try_lock_before_lookup": False})
        session = node_a.create_session(session_params())

        assert node_b.get_session(session.session_id) == session

    def test_restored_event_on_load(self, make_coordinator, session_params):
        from sessiond.core.events import EventBus, TOPIC_RESTORED_SESSION

        bus = EventBus()
        restored = MagicMock()
        bus.register(TOPIC_RESTORED_SESSION, restored)
        node_a = make_coordinator()
        node_b = make_coordinator(event_bus=bus)
        session = node_a.create_session(session_params())

        node_b.get_session(session.session_id)
        node_b.get_session(session.session_id)

        restored.assert_called_once()

    def test_record_of_other_version_is_dropped(self, coordinator, write_versioned_record, redis_client):
        keys = _keys()
        session_id = write_versioned_record(coordinator, version=0)

        assert coordinator.get_session(session_id) is None
        assert not redis_client.exists(keys.session_key(session_id))

    def test_is_active(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params())

        assert node_a.is_active(session.session_id)
        assert node_b.is_active(session.session_id)
        assert not node_b.is_active("missing")

    def test_has_for_context(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        node_a.create_session(session_params(context_id=5))

        assert node_a.has_for_context(5)
        assert node_b.has_for_context(5)
        assert not node_b.has_for_context(6)


@pytest.fixture
def write_versioned_record():
    """Write a session record with an arbitrary schema version straight to Redis."""
    from sessiond.storage.codec import SessionCodec
    from sessiond.storage.models import Session

    def _write(coordinator, version):
        state = coordinator.get_state()
        session = Session(session_id="feedfacefeedfacefeedfacefeedface", user_id=7, context_id=42, login="l")
        value = SessionCodec(state.obfuscator, version=version).encode(session)
        keys = _keys()
        client = coordinator.connector.client
        client.set(keys.session_key(session.session_id), value)
        client.sadd(keys.user_set_key(7, 42), session.session_id)
        return session.session_id

    return _write


# ============================================================================
# Mutation
# ============================================================================


@pytest.mark.integration
@pytest.mark.session
class TestMutation:
    """Tests for store_session, password and attribute changes."""

    def test_password_change_reaches_other_nodes(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params(password="old"))

        session.set_password("new")

        assert session.password == "new"
        assert node_b.get_session(session.session_id).password == "new"

    def test_password_change_removes_other_sessions_of_user(self, coordinator, session_params):
        kept = coordinator.create_session(session_params())
        other = coordinator.create_session(session_params())
        foreign = coordinator.create_session(session_params(user_id=8))

        coordinator.change_session_password(kept.session_id, "new")

        assert coordinator.get_session(kept.session_id) is not None
        assert coordinator.get_session(other.session_id) is None
        assert coordinator.get_session(foreign.session_id) is not None

    def test_password_change_of_missing_session(self, coordinator):
        from sessiond.exceptions import SessionNotFoundError

        with pytest.raises(SessionNotFoundError):
            coordinator.change_session_password("missing", "new")

    def test_attribute_change_reaches_other_nodes(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params(client="web"))

        session.set_client("mobile")
        session.set_local_ip("10.9.9.9")
        session.set_user_agent("agent/2")

        loaded = node_b.get_session(session.session_id)
        assert loaded.client == "mobile"
        assert loaded.local_ip == "10.9.9.9"
        assert loaded.user_agent == "agent/2"

    def test_attribute_change_updates_local_copy(self, coordinator, session_params):
        from sessiond.storage.models import SessionAttributes

        session = coordinator.create_session(session_params())

        coordinator.set_session_attributes(session.session_id, SessionAttributes(hash="h2"))

        assert coordinator.get_session(session.session_id).hash == "h2"

    def test_attribute_change_of_missing_session(self, coordinator):
        from sessiond.exceptions import SessionNotFoundError
        from sessiond.storage.models import SessionAttributes

        with pytest.raises(SessionNotFoundError):
            coordinator.set_session_attributes("missing", SessionAttributes(hash="h"))

    def test_empty_attribute_change_is_a_no_op(self, coordinator):
        from sessiond.storage.models import SessionAttributes

        coordinator.set_session_attributes("missing", SessionAttributes())

    def test_store_session_object(self, make_coordinator, session_params):
        from sessiond.storage.models import Session

        node_a = make_coordinator()
        node_b = make_coordinator()
        session = Session(session_id="abcdef0123456789abcdef0123456789", user_id=7, context_id=42, login="l")

        assert node_a.store_session(session) is True
        assert node_b.get_session(session.session_id) == session

    def test_store_session_add_if_absent(self, coordinator, session_params):
        session = coordinator.create_session(session_params())

        assert coordinator.store_session(session, add_if_absent=True) is False

    def test_store_session_by_id(self, make_coordinator, session_params, redis_client):
        keys = _keys()
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params())

        assert node_a.store_session(session.session_id) is True
        assert node_b.store_session(session.session_id) is True
        assert node_b.store_session("missing") is False

        redis_client.delete(keys.session_key(session.session_id))
        assert node_a.store_session(session.session_id) is False


# ============================================================================
# Removal
# ============================================================================


@pytest.mark.integration
@pytest.mark.session
class TestRemoval:
    """Tests for all removal variants."""

    def test_remove_session(self, coordinator, session_params, redis_client):
        keys = _keys()
        session = coordinator.create_session(
            session_params(auth_id="auth-1", alternative_id="alt-1", brand="acme")
        )

        assert coordinator.remove_session(session.session_id) is True

        assert not redis_client.exists(keys.session_key(session.session_id))
        assert not redis_client.exists(keys.alternative_id_key("alt-1"))
        assert not redis_client.exists(keys.auth_id_key("auth-1"))
        assert redis_client.scard(keys.user_set_key(7, 42)) == 0
        assert redis_client.zcard(keys.REDIS_SORTEDSET_SESSIONIDS_SHORT_LIFETIME) == 0
        assert redis_client.zcard(keys.brand_set_key("acme")) == 0
        assert coordinator.get_local_sessions() == []
        assert coordinator.remove_session(session.session_id) is False

    def test_remove_session_posts_event(self, make_coordinator, session_params):
        from sessiond.core.events import EventBus, TOPIC_REMOVE_SESSION

        bus = EventBus()
        removed = MagicMock()
        bus.register(TOPIC_REMOVE_SESSION, removed)
        coordinator = make_coordinator(event_bus=bus)
        session = coordinator.create_session(session_params())

        coordinator.remove_session(session.session_id)

        removed.assert_called_once_with(TOPIC_REMOVE_SESSION, session)

    def test_remove_sessions_counts_existing_only(self, coordinator, session_params):
        first = coordinator.create_session(session_params())
        second = coordinator.create_session(session_params())

        assert coordinator.remove_sessions([first.session_id, second.session_id, "missing", first.session_id]) == 2

    def test_remove_user_sessions(self, coordinator, session_params, redis_client):
        keys = _keys()
        coordinator.create_session(session_params())
        coordinator.create_session(session_params())
        other = coordinator.create_session(session_params(user_id=8))

        assert coordinator.remove_user_sessions(7, 42) == 2

        assert not redis_client.exists(keys.user_set_key(7, 42))
        assert [session.session_id for session in coordinator.get_local_sessions()] == [other.session_id]

    def test_remove_and_return_user_sessions(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params())

        removed = node_b.remove_and_return_user_sessions(7, 42)

        assert removed == [session]
        assert node_a.get_session(session.session_id) is None

    def test_remove_local_user_sessions_keeps_redis(self, coordinator, session_params):
        session = coordinator.create_session(session_params())

        removed = coordinator.remove_local_user_sessions(7, 42)

        assert removed == [session]
        assert coordinator.get_local_sessions() == []
        assert coordinator.get_user_session_count(7, 42) == 1

    def test_remove_context_sessions(self, coordinator, session_params):
        coordinator.create_session(session_params(user_id=1, context_id=1))
        coordinator.create_session(session_params(user_id=2, context_id=1))
        kept = coordinator.create_session(session_params(user_id=1, context_id=2))

        assert coordinator.remove_context_sessions(1) == 2

        assert not coordinator.has_for_context(1)
        assert coordinator.get_session(kept.session_id) is not None

    def test_remove_context_sessions_global(self, coordinator, session_params):
        coordinator.create_session(session_params(context_id=1))
        coordinator.create_session(session_params(context_id=2))
        coordinator.create_session(session_params(context_id=3))

        assert coordinator.remove_context_sessions_global([1, 2]) == 2
        assert coordinator.has_for_context(3)

    def test_remove_all_sessions(self, coordinator, session_params, redis_client):
        keys = _keys()
        coordinator.create_session(session_params(user_id=1))
        coordinator.create_session(session_params(user_id=2))
        orphan = coordinator.create_session(session_params(user_id=3))
        # Primary record without membership entry
        redis_client.srem(keys.user_set_key(3, 42), orphan.session_id)

        assert coordinator.remove_all_sessions() == 3

        assert list(redis_client.scan_iter(keys.all_sessions_pattern())) == []
        assert list(redis_client.scan_iter(keys.all_user_sets_pattern())) == []
        assert coordinator.get_local_sessions() == []

    def test_remove_sessions_by_filter(self, coordinator, session_params):
        from sessiond.storage.models import SessionFilter

        mobile = coordinator.create_session(session_params(client="mobile"))
        web = coordinator.create_session(session_params(client="web"))

        removed = coordinator.remove_sessions_by_filter(SessionFilter(lambda s: s.client == "mobile"))

        assert removed == [mobile.session_id]
        assert coordinator.get_session(web.session_id) is not None

    def test_removal_decrements_counters(self, coordinator, session_params):
        first = coordinator.create_session(session_params(brand="acme"))
        coordinator.create_session(session_params())

        coordinator.remove_session(first.session_id)

        assert coordinator.query_counter_for_number_of_sessions() == 1
        assert coordinator.query_counter_for_number_of_sessions_by_brand("acme") == 0
        # Active count is reconciled by the expiry job; queries clamp it to the total
        assert coordinator.query_counter_for_number_of_active_sessions() == 1

    def test_active_counters_read_with_total_in_one_operation(self, coordinator, redis_client):
        keys = _keys()
        redis_client.hset(
            keys.REDIS_HASH_SESSION_COUNTER,
            mapping={
                keys.COUNTER_SESSION_ACTIVE: 5,
                keys.COUNTER_SESSION_TOTAL: 0,
                keys.brand_active_counter("acme"): 4,
                keys.brand_total_counter("acme"): 3,
            },
        )
        spy = MagicMock(wraps=coordinator.connector.execute_operation)

        with patch.object(coordinator.connector, "execute_operation", spy):
            assert coordinator.query_counter_for_number_of_active_sessions() == 0
            assert coordinator.query_counter_for_number_of_active_sessions_by_brand("acme") == 3

        assert spy.call_count == 2


# ============================================================================
# Queries
# ============================================================================


@pytest.mark.integration
@pytest.mark.session
class TestQueries:
    """Tests for read-only queries."""

    def test_user_session_count_and_active_sessions(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        first = node_a.create_session(session_params())
        second = node_a.create_session(session_params())

        assert node_b.get_user_session_count(7, 42) == 2
        ids = {session.session_id for session in node_b.get_active_sessions(7, 42)}
        assert ids == {first.session_id, second.session_id}

    def test_active_session_ids(self, coordinator, session_params, clock):
        first = coordinator.create_session(session_params())
        second = coordinator.create_session(session_params(stay_signed_in=True))

        assert set(coordinator.get_active_session_ids()) == {first.session_id, second.session_id}

        clock.advance(coordinator.get_state().session_default_lifetime + 1)
        assert coordinator.get_active_session_ids() == []

    def test_number_of_active_sessions(self, coordinator, session_params):
        coordinator.create_session(session_params(user_id=1))
        coordinator.create_session(session_params(user_id=2))
        coordinator.create_session(session_params(user_id=2))

        assert coordinator.get_number_of_active_sessions() == 3

    def test_any_active_session_for_user(self, make_coordinator, session_params, redis_client):
        keys = _keys()
        node_a = make_coordinator()
        node_b = make_coordinator()
        session = node_a.create_session(session_params())
        redis_client.sadd(keys.user_set_key(7, 42), "gone")

        found = node_b.get_any_active_session_for_user(7, 42)

        assert found == session
        assert node_a.get_any_active_session_for_user(7, 42) is session
        assert node_b.get_any_active_session_for_user(8, 42) is None

    def test_any_active_session_drops_dangling_members(self, coordinator, redis_client):
        keys = _keys()
        redis_client.sadd(keys.user_set_key(7, 42), "gone-1", "gone-2")

        assert coordinator.get_any_active_session_for_user(7, 42) is None
        assert redis_client.scard(keys.user_set_key(7, 42)) == 0

    def test_find_first_matching_session_for_user(self, make_coordinator, session_params):
        node_a = make_coordinator()
        node_b = make_coordinator()
        node_a.create_session(session_params(client="web"))
        mobile = node_a.create_session(session_params(client="mobile"))

        found = node_b.find_first_matching_session_for_user(7, 42, lambda s: s.client == "mobile")

        assert found == mobile
        assert node_b.find_first_matching_session_for_user(7, 42, lambda s: s.client == "cli") is None
        assert node_a.find_first_matching_session_for_user(
            7, 42, lambda s: s.client == "mobile", ignore_local=True
        ) == mobile

    def test_find_sessions(self, coordinator, session_params, redis_client):
        from sessiond.storage.models import SessionFilter

        keys = _keys()
        first = coordinator.create_session(session_params(user_id=1, context_id=1))
        second = coordinator.create_session(session_params(user_id=2, context_id=1))
        third = coordinator.create_session(session_params(user_id=1, context_id=2))
        redis_client.sadd(keys.user_set_key(1, 1), "gone")

        assert set(coordinator.find_sessions(SessionFilter())) == {
            first.session_id,
            second.session_id,
            third.session_id,
        }
        assert set(coordinator.find_sessions(SessionFilter.for_context(1))) == {
            first.session_id,
            second.session_id,
        }
        assert coordinator.find_sessions(SessionFilter.for_user(1, 2)) == [third.session_id]
        assert not redis_client.sismember(keys.user_set_key(1, 1), "gone")


# ============================================================================
# State and lifecycle
# ============================================================================


@pytest.mark.integration
@pytest.mark.session
class TestLifecycle:
    """Tests for state swapping and shutdown."""

    def test_set_state_destroys_previous(self, coordinator, make_state, session_params):
        old_state = coordinator.get_state()
        coordinator.create_session(session_params())
        new_state = make_state()

        coordinator.set_state(new_state)

        assert coordinator.get_state() is new_state
        assert len(old_state.local_cache) == 0
        assert new_state.version > old_state.version

    def test_sessions_survive_state_swap(self, coordinator, make_state, session_params):
        session = coordinator.create_session(session_params(password="pw"))

        coordinator.set_state(make_state())

        loaded = coordinator.get_session(session.session_id)
        assert loaded == session
        assert loaded.password == "pw"

    def test_shut_down(self, coordinator, session_params):
        from sessiond.exceptions import SessiondShutDownError

        coordinator.shut_down()

        with pytest.raises(SessiondShutDownError):
            coordinator.get_state()
        with pytest.raises(SessiondShutDownError):
            coordinator.create_session(session_params())
