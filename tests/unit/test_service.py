"""
Unit tests for EntityService.

Tests cover:
- Query path (cache-only answers, confirmed absence, default query)
- CRUD operations and the error policy
- Readonly guard
- Credential failure retry
- Post-processing (caster, post-load hook)
"""

import logging

import pytest

from entitymesh import (
    MISSING,
    AuthError,
    AuthState,
    BackendError,
    CanonicalQuery,
    ConfigError,
    DBError,
    EntityService,
    ReadonlyError,
    ServiceOperation,
    ServiceOptions,
    ValidationError,
    VerboseLevel,
    qb,
)


@pytest.fixture
def articles(broker):
    return EntityService("articles", broker)


@pytest.fixture
def strict_articles(broker):
    return EntityService("articles", broker, throw_errors=True)


@pytest.fixture
def users(broker):
    return EntityService("users", broker)


class TestConstruction:
    """Tests for service setup."""

    def test_bound_to_routed_server(self, articles, broker):
        assert articles.server_name == "cms"
        assert articles.entity_name == "articles"
        assert broker.get_service_by_entity("articles") is articles

    def test_prefixed_entity(self, broker):
        comments = EntityService("cms:comments", broker)
        assert comments.entity_name == "comments"
        assert comments.server_name == "cms"

    def test_unrouted_entity_raises(self, broker):
        with pytest.raises(ConfigError):
            EntityService("invoices", broker)

    def test_options_and_overrides(self, broker):
        service = EntityService("articles", broker, ServiceOptions(readonly=True), throw_errors=True)
        assert service.readonly
        assert service.options.throw_errors


class TestQuery:
    """Tests for the read path."""

    @pytest.mark.asyncio
    async def test_query_filter(self, articles):
        items = await articles.query(qb().equal("status", "published").sort("id"))
        assert [item["id"] for item in items] == [10, 12]

    @pytest.mark.asyncio
    async def test_query_accepts_dict(self, articles):
        items = await articles.query({"filter": {"id": {"_eq": 11}}})
        assert items[0]["title"] == "Draft"

    @pytest.mark.asyncio
    async def test_query_one(self, articles, cms_adapter):
        item = await articles.query_one(qb().sort("-id"))
        assert item["id"] == 12
        assert cms_adapter.calls[-1].args[0]["limit"] == 1

    @pytest.mark.asyncio
    async def test_query_one_nothing(self, articles):
        assert await articles.query_one(qb().equal("id", 999)) is None

    @pytest.mark.asyncio
    async def test_query_one_leaves_caller_query(self, articles):
        builder = qb().limit(50)
        await articles.query_one(builder)
        assert builder.q.limit == 50

    @pytest.mark.asyncio
    async def test_default_query_merged_per_key(self, broker, cms_adapter):
        service = EntityService(
            "articles",
            broker,
            default_query=CanonicalQuery(fields=["id", "title"], sort=["-id"], limit=2),
        )
        await service.query(qb().limit(1))

        sent = cms_adapter.calls[-1].args[0]
        assert sent["fields"] == ["id", "title"]
        assert sent["sort"] == ["-id"]
        assert sent["limit"] == 1

    @pytest.mark.asyncio
    async def test_default_page_size(self, articles, cms_adapter):
        await articles.get_all()
        assert cms_adapter.calls[-1].args[0]["limit"] == 100

        items = await articles.query(qb().limit(-1))
        assert cms_adapter.calls[-1].args[0]["limit"] == -1
        assert len(items) == 3

    @pytest.mark.asyncio
    async def test_unlimited_query_confirms_absence(self, articles):
        articles.cache_enable()
        await articles.query(qb().in_("id", [10, 500]).limit(-1))
        assert articles.cache_get(500) is None

    @pytest.mark.asyncio
    async def test_get_by_id(self, articles):
        item = await articles.get_by_id(10)
        assert item["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_get_by_ids(self, articles, cms_adapter):
        items = await articles.get_by_ids([10, 11, 10])
        assert sorted(item["id"] for item in items) == [10, 11]
        assert await articles.get_by_ids([]) == []
        assert cms_adapter.count("query") == 1

    @pytest.mark.asyncio
    async def test_get_by_field_null(self, articles):
        items = await articles.get_by_field("author", None)
        assert [item["id"] for item in items] == [12]

    @pytest.mark.asyncio
    async def test_get_one_by_fields(self, articles):
        item = await articles.get_one_by_fields({"status": "published", "title": "Orphan"})
        assert item["id"] == 12

    @pytest.mark.asyncio
    async def test_get_by_fields_limit(self, articles):
        items = await articles.get_by_fields({"status": "published"}, limit=None)
        assert len(items) == 2

    @pytest.mark.asyncio
    async def test_get_value_by_fields(self, articles):
        assert await articles.get_value_by_fields("title", {"id": 11}) == "Draft"
        assert await articles.get_value_by_fields("title", {"id": 999}) is None

    @pytest.mark.asyncio
    async def test_get_field_val_by_id(self, articles, cms_adapter):
        assert await articles.get_field_val_by_id("status", 10) == "published"
        assert cms_adapter.calls[-1].args[0]["fields"] == ["status", "id"]

    @pytest.mark.asyncio
    async def test_get_real_item(self, articles):
        loaded = {"id": 1, "title": "already here"}
        assert await articles.get_real_item(loaded) is loaded
        assert (await articles.get_real_item(11))["title"] == "Draft"
        assert await articles.get_real_item(None) is None

    @pytest.mark.asyncio
    async def test_normalize_items(self, articles):
        loaded = {"id": 1, "title": "already here"}
        items = await articles.normalize_items([10, loaded, None, 999])
        assert [item["id"] for item in items] == [10, 1]

    @pytest.mark.asyncio
    async def test_query_error_returns_empty(self, articles, cms_adapter):
        cms_adapter.fail_next("query", BackendError("kaput", code=500))

        assert await articles.query() == []
        assert articles.had_error()
        assert "kaput" in str(articles.last_error)

    @pytest.mark.asyncio
    async def test_query_error_raises_when_strict(self, strict_articles, cms_adapter):
        cms_adapter.fail_next("query", BackendError("kaput", code=500))
        with pytest.raises(DBError, match="kaput"):
            await strict_articles.query()

    @pytest.mark.asyncio
    async def test_error_is_reset_by_next_call(self, articles, cms_adapter):
        cms_adapter.fail_next("query", BackendError("kaput", code=500))
        await articles.query()
        await articles.query()
        assert not articles.had_error()

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_is_wrapped(self, strict_articles, cms_adapter):
        cms_adapter.fail_next("query", RuntimeError("socket closed"))
        with pytest.raises(BackendError) as exc_info:
            await strict_articles.query()
        assert exc_info.value.table == "articles"


class TestQueryCache:
    """Tests for cache use on the query path."""

    @pytest.mark.asyncio
    async def test_cached_id_answers_without_backend(self, articles, cms_adapter):
        articles.cache_enable()
        articles.cache_set({"id": 7, "title": "cached"})

        items = await articles.query({"filter": {"id": {"_eq": 7}}})

        assert items == [{"id": 7, "title": "cached"}]
        assert cms_adapter.count("query") == 0

    @pytest.mark.asyncio
    async def test_results_are_cached(self, articles, cms_adapter):
        articles.cache_enable()
        await articles.get_by_id(10)
        await articles.get_by_id(10)
        assert cms_adapter.count("query") == 1

    @pytest.mark.asyncio
    async def test_skip_cache(self, articles, cms_adapter):
        articles.cache_enable()
        await articles.get_by_id(10)
        await articles.query(qb().equal("id", 10).skip_cache())
        assert cms_adapter.count("query") == 2

    @pytest.mark.asyncio
    async def test_missing_id_is_remembered(self, articles, cms_adapter):
        articles.cache_enable()

        assert await articles.get_by_id(999) is None
        assert articles.cache_get(999) is None
        assert await articles.get_by_id(999) is None

        assert cms_adapter.count("query") == 1

    @pytest.mark.asyncio
    async def test_id_in_needs_every_id(self, articles, cms_adapter):
        articles.cache_enable()
        articles.cache_set({"id": 10, "title": "cached"})

        items = await articles.get_by_ids([10, 11])

        assert cms_adapter.count("query") == 1
        assert len(items) == 2

        # Both cached now
        await articles.get_by_ids([10, 11])
        assert cms_adapter.count("query") == 1

    @pytest.mark.asyncio
    async def test_id_in_with_absent_ids(self, articles, cms_adapter):
        articles.cache_enable()
        await articles.get_by_ids([10, 500])

        items = await articles.get_by_ids([10, 500])

        assert [item["id"] for item in items] == [10]
        assert cms_adapter.count("query") == 1

    @pytest.mark.asyncio
    async def test_indexed_field_equality(self, users, accounts_adapter):
        users.cache_enable(["email"])
        await users.get_by_id(7)

        item = await users.get_one_by_field("email", "bob@example.com")

        assert item["name"] == "Bob"
        assert accounts_adapter.count("query") == 1

    @pytest.mark.asyncio
    async def test_partial_fields_not_cached(self, articles):
        articles.cache_enable()
        await articles.get_by_id(10, fields=["id"])
        assert articles.cache_get(10) is MISSING

    @pytest.mark.asyncio
    async def test_limited_result_does_not_confirm_absence(self, articles):
        articles.cache_enable()
        await articles.query(qb().in_("id", [10, 11, 12]).limit(1))
        assert articles.cache_get(11) is MISSING

    @pytest.mark.asyncio
    async def test_projection_without_id_does_not_confirm_absence(self, articles, cms_adapter):
        articles.cache_enable()
        await articles.get_by_ids([10, 500], fields=["title"])

        assert articles.cache_get(10) is MISSING
        assert articles.cache_get(500) is MISSING

        item = await articles.get_by_id(10)
        assert item["title"] == "Hello"
        assert cms_adapter.count("query") == 2

    @pytest.mark.asyncio
    async def test_string_ids_from_backend_count_as_returned(self, articles, cms_adapter, monkeypatch):
        backend_query = cms_adapter.query

        async def stringify_ids(server, entity, wire_query):
            items = await backend_query(server, entity, wire_query)
            return [{**item, "id": str(item["id"])} for item in items]

        monkeypatch.setattr(cms_adapter, "query", stringify_ids)
        articles.cache_enable()

        await articles.get_by_ids([10, 500])

        assert articles.cache_get(10) is MISSING
        assert articles.cache_get(500) is None

    def test_cache_round_trip_forgets(self, articles):
        articles.cache_enable()
        item = {"id": 3, "title": "x"}
        articles.cache_set(item)
        articles.cache_delete(3)
        assert articles.cache_get(3) is MISSING

    def test_cache_set_null(self, articles):
        articles.cache_enable(["slug"])
        articles.cache_set_null(5, "slug", "gone")
        assert articles.cache_get(5) is None
        assert articles.cache_get_by_field("slug", "gone") is None

    def test_cache_info_and_clear(self, articles):
        articles.cache_enable(max_items=5)
        articles.cache_set({"id": 1})
        assert articles.cache_info()["size"] == 1
        articles.cache_clear()
        assert articles.cache_info()["size"] == 0


class TestMutations:
    """Tests for add/update/upsert/delete."""

    @pytest.mark.asyncio
    async def test_add_one(self, articles, cms_adapter):
        created = await articles.add({"title": "New"})
        assert created["id"] == 13
        assert cms_adapter.collections["articles"][13]["title"] == "New"

    @pytest.mark.asyncio
    async def test_add_many(self, articles):
        created = await articles.add([{"title": "A"}, {"title": "B"}])
        assert [item["id"] for item in created] == [13, 14]

    @pytest.mark.asyncio
    async def test_add_caches(self, articles, cms_adapter):
        articles.cache_enable()
        created = await articles.add({"title": "New"})
        assert articles.cache_get(created["id"]) == created

    @pytest.mark.asyncio
    async def test_add_skip_post_process(self, articles):
        articles.cache_enable()
        created = await articles.add({"title": "New"}, skip_post_process=True)
        assert articles.cache_get(created["id"]) is MISSING

    @pytest.mark.asyncio
    async def test_add_duplicate_returns_error_string(self, articles):
        result = await articles.add({"id": 10, "title": "dup"})
        assert isinstance(result, str)
        assert "unique" in result

    @pytest.mark.asyncio
    async def test_update_with_embedded_id(self, articles, cms_adapter):
        updated = await articles.update({"id": 10, "title": "Changed"})

        assert updated["title"] == "Changed"
        call = cms_adapter.calls[-1]
        assert call.args == (10, {"title": "Changed"})

    @pytest.mark.asyncio
    async def test_update_with_explicit_id(self, articles):
        updated = await articles.update({"title": "Changed"}, 11)
        assert updated["id"] == 11

    @pytest.mark.asyncio
    async def test_update_without_id_fails(self, articles, cms_adapter):
        result = await articles.update({"title": "x"})
        assert isinstance(result, str)
        assert isinstance(articles.last_error, ValidationError)
        assert cms_adapter.count("update_one") == 0

    @pytest.mark.asyncio
    async def test_update_without_id_raises_when_strict(self, strict_articles):
        with pytest.raises(ValidationError):
            await strict_articles.update({"title": "x"})

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self, articles, cms_adapter):
        result = await articles.upsert({"id": 10, "title": "Up"})
        assert result["title"] == "Up"
        assert cms_adapter.count("create_one") == 0

    @pytest.mark.asyncio
    async def test_upsert_adds_missing(self, articles, cms_adapter):
        result = await articles.upsert({"id": 50, "title": "Fresh"})
        assert result["id"] == 50
        assert cms_adapter.count("update_one") == 1
        assert cms_adapter.count("create_one") == 1

    @pytest.mark.asyncio
    async def test_upsert_without_id_adds(self, articles, cms_adapter):
        result = await articles.upsert({"title": "No id"})
        assert result["id"] == 13
        assert cms_adapter.count("update_one") == 0

    @pytest.mark.asyncio
    async def test_upsert_failed_update_on_existing_id_surfaces_duplicate(self, articles, cms_adapter):
        # Update fails for another reason while the entity exists: the add
        # with the same id is rejected by the backend's unique key
        cms_adapter.fail_next("update_one", BackendError("validation failed", code=400))

        result = await articles.upsert({"id": 10, "title": "Race"})

        assert isinstance(result, str)
        assert "unique" in result
        assert cms_adapter.collections["articles"][10]["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_batch_update(self, articles, cms_adapter):
        updated = await articles.batch_update({"status": "archived", "id": 1}, [10, 11])
        assert {item["status"] for item in updated} == {"archived"}
        assert cms_adapter.calls[-1].args == ([10, 11], {"status": "archived"})

    @pytest.mark.asyncio
    async def test_batch_update_empty_ids(self, articles, cms_adapter):
        assert await articles.batch_update({"status": "x"}, []) == []
        assert cms_adapter.count("update_many") == 0

    @pytest.mark.asyncio
    async def test_batch_update_skip_post_process_invalidates(self, articles):
        articles.cache_enable()
        await articles.get_by_id(10)
        await articles.batch_update({"status": "x"}, [10], skip_post_process=True)
        assert articles.cache_get(10) is MISSING

    @pytest.mark.asyncio
    async def test_delete(self, articles, cms_adapter):
        articles.cache_enable()
        await articles.get_by_id(10)

        assert await articles.delete(10) is True
        assert 10 not in cms_adapter.collections["articles"]
        assert articles.cache_get(10) is MISSING

    @pytest.mark.asyncio
    async def test_delete_missing_returns_error(self, articles):
        result = await articles.delete(999)
        assert isinstance(result, str)
        assert articles.last_error.code == 404

    @pytest.mark.asyncio
    async def test_delete_ids(self, articles, cms_adapter):
        assert await articles.delete_ids([10, 11]) is True
        assert list(cms_adapter.collections["articles"]) == [12]

    @pytest.mark.asyncio
    async def test_delete_ids_limit(self, articles, cms_adapter):
        result = await articles.delete_ids([1, 2, 3], limit=2)
        assert isinstance(result, str)
        assert cms_adapter.count("delete_many") == 0

    @pytest.mark.asyncio
    async def test_delete_ids_empty(self, articles, cms_adapter):
        assert await articles.delete_ids([]) is True
        assert cms_adapter.count("delete_many") == 0

    @pytest.mark.asyncio
    async def test_batch_delete(self, articles, cms_adapter):
        articles.cache_enable()
        await articles.get_by_id(12)

        result = await articles.batch_delete(qb().equal("status", "published").limit(10))

        assert result is True
        assert list(cms_adapter.collections["articles"]) == [11]
        assert articles.cache_get(12) is MISSING

    @pytest.mark.asyncio
    async def test_batch_delete_requires_limit(self, articles, cms_adapter):
        result = await articles.batch_delete(qb().equal("status", "published"))
        assert isinstance(result, str)
        assert cms_adapter.count("delete_by_query") == 0


class TestReadonly:
    """A readonly service never reaches the backend for mutations."""

    @pytest.fixture
    def readonly(self, broker):
        return EntityService("articles", broker, readonly=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation, args",
        [
            ("add", ({"title": "x"},)),
            ("update", ({"id": 10, "title": "x"},)),
            ("upsert", ({"id": 10, "title": "x"},)),
            ("batch_update", ({"title": "x"}, [10])),
            ("delete", (10,)),
            ("delete_ids", ([10],)),
            ("batch_delete", (qb().limit(1),)),
        ],
    )
    async def test_mutation_rejected(self, readonly, cms_adapter, operation, args):
        result = await getattr(readonly, operation)(*args)

        assert isinstance(result, str)
        assert isinstance(readonly.last_error, ReadonlyError)
        assert cms_adapter.calls == []

    @pytest.mark.asyncio
    async def test_mutation_raises_when_strict(self, broker, cms_adapter):
        service = EntityService("articles", broker, readonly=True, throw_errors=True)
        with pytest.raises(ReadonlyError):
            await service.add({"title": "x"})
        assert cms_adapter.calls == []

    @pytest.mark.asyncio
    async def test_reads_still_work(self, readonly):
        assert (await readonly.get_by_id(10))["title"] == "Hello"


class TestAuthentication:
    """Tests for login handling around backend calls."""

    @pytest.mark.asyncio
    async def test_first_call_logs_in(self, users, accounts_adapter, broker):
        item = await users.get_by_id(7)

        assert item["name"] == "Bob"
        assert accounts_adapter.count("login") == 1
        assert broker.get_server("accounts").auth_state == AuthState.LOGGED_IN

    @pytest.mark.asyncio
    async def test_server_without_credentials_skips_login(self, articles, cms_adapter):
        await articles.get_all()
        assert cms_adapter.count("login") == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_login(self, broker, accounts_adapter):
        import asyncio

        accounts_adapter.login_delay = 0.05
        first = EntityService("users", broker)
        second = EntityService("accounts:users", broker)

        results = await asyncio.gather(first.get_by_id(7), second.get_by_id(8))

        assert [item["name"] for item in results] == ["Bob", "Ann"]
        assert accounts_adapter.count("login") == 1

    @pytest.mark.asyncio
    async def test_expired_session_retried_once(self, users, accounts_adapter):
        await users.login()
        accounts_adapter.expire_session("accounts")

        item = await users.get_by_id(8)

        assert item["name"] == "Ann"
        assert accounts_adapter.count("login") == 2
        assert accounts_adapter.count("query") == 2

    @pytest.mark.asyncio
    async def test_persistent_auth_failure_surfaces(self, broker, accounts_adapter):
        users = EntityService("users", broker, throw_errors=True)
        await users.login()
        accounts_adapter.fail_next("query", BackendError("Token expired.", code=401))
        accounts_adapter.fail_next("query", BackendError("Token expired.", code=401))

        with pytest.raises(DBError) as exc_info:
            await users.get_by_id(7)
        assert exc_info.value.is_auth_failure
        assert accounts_adapter.count("query") == 2

    @pytest.mark.asyncio
    async def test_error_state_raises_auth_error(self, broker, accounts_adapter):
        users = EntityService("users", broker, throw_errors=True)
        broker.upsert_server("accounts", {"auth_state": AuthState.ERROR})

        with pytest.raises(AuthError):
            await users.get_all()
        assert accounts_adapter.count("query") == 0

    @pytest.mark.asyncio
    async def test_logout(self, users, broker):
        await users.login()
        assert await users.logout() == AuthState.NOT_LOGGED_IN
        assert not broker.get_server("accounts").is_logged_in

    @pytest.mark.asyncio
    async def test_update_server_goes_through_broker(self, users, broker):
        received = []
        broker.subscribe("accounts", lambda changes, server: received.append(changes))

        users.update_server({"login": "bob"})
        await broker.drain_notifications()

        assert received == [{"login": "bob"}]
        assert users.has_credentials()


class TestPostProcessing:
    """Tests for caster and post-load hook."""

    @pytest.mark.asyncio
    async def test_caster(self, broker):
        service = EntityService("articles", broker, caster_schema={"rating": "number"})
        item = await service.get_by_id(10)
        assert item["rating"] == 4.5

    @pytest.mark.asyncio
    async def test_post_load_modifier(self, broker):
        def add_slug(item):
            item["slug"] = item["title"].lower()

        service = EntityService("articles", broker, post_load_modifier=add_slug)
        item = await service.get_by_id(10)
        assert item["slug"] == "hello"

    @pytest.mark.asyncio
    async def test_post_load_modifier_replacement(self, broker):
        service = EntityService("articles", broker, post_load_modifier=lambda item: {"id": item["id"]})
        assert await service.get_by_id(11) == {"id": 11}


class TestLogging:
    """Tests for verbose level and error logging."""

    @pytest.mark.asyncio
    async def test_errors_logged(self, articles, cms_adapter, caplog):
        cms_adapter.fail_next("query", BackendError("kaput", code=500))
        with caplog.at_level(logging.DEBUG, logger="entitymesh"):
            await articles.query()
        assert any("kaput" in record.message for record in caplog.records)

    @pytest.mark.asyncio
    async def test_errors_to_console_off(self, broker, cms_adapter, caplog):
        service = EntityService("articles", broker, errors_to_console=False)
        cms_adapter.fail_next("query", BackendError("kaput", code=500))
        with caplog.at_level(logging.DEBUG, logger="entitymesh.runtime.service"):
            await service.query()
        assert not any("kaput" in record.message for record in caplog.records)

    def test_verbose_level_filters(self, broker, caplog):
        service = EntityService("articles", broker, verbose_level=VerboseLevel.ERROR)
        with caplog.at_level(logging.DEBUG, logger="entitymesh.runtime.service"):
            service._log("chatty", VerboseLevel.INFO)
            service._log("important", VerboseLevel.ERROR)
        assert [record.message for record in caplog.records] == ["important"]


class TestCall:
    """Tests for the operation table."""

    @pytest.mark.asyncio
    async def test_call_by_operation(self, articles):
        item = await articles.call(ServiceOperation.GET_BY_ID, 10)
        assert item["id"] == 10

    @pytest.mark.asyncio
    async def test_call_by_name(self, articles):
        items = await articles.call("get_by_ids", [10, 11])
        assert len(items) == 2

    @pytest.mark.asyncio
    async def test_unknown_operation(self, articles):
        with pytest.raises(ValueError):
            await articles.call("drop_table")
