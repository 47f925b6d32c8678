"""
Unit tests for cross-server relation loading.
"""

import logging

import pytest

from entitymesh import BackendError, EntityService, qb
from entitymesh.runtime import DeepFieldResolver


@pytest.fixture
def users(broker):
    return EntityService("users", broker)


@pytest.fixture
def articles(broker, users):
    return EntityService("articles", broker, deep_fields={"author": "users"})


class TestFieldPlanning:
    """Tests for field stripping and load plans."""

    @pytest.fixture
    def resolver(self, articles):
        return DeepFieldResolver(articles, {"nested": "users", "author": "users"})

    def test_strip_fields(self, resolver):
        fields = ["nested.id", "nested.name", "f", "id"]
        assert resolver.strip_fields(fields) == ["f", "id", "nested"]

    def test_strip_keeps_bare_deep_field_once(self, resolver):
        assert resolver.strip_fields(["author", "author.name"]) == ["author"]

    def test_plan_everything_without_fields(self, resolver):
        assert resolver.plan(None) == {"nested": None, "author": None}
        assert resolver.plan(["*"]) == {"nested": None, "author": None}

    def test_plan_sub_fields(self, resolver):
        plan = resolver.plan(["id", "author.name", "author.email", "nested"])
        assert plan == {"author": ["name", "email"], "nested": None}

    def test_plan_star_sub_field(self, resolver):
        assert resolver.plan(["author.*"]) == {"author": None}

    def test_plan_skips_plain_fields(self, resolver):
        assert resolver.plan(["id", "title"]) == {}


class TestResolution:
    """Tests for merging loaded relations back in place."""

    @pytest.mark.asyncio
    async def test_scalar_becomes_object(self, articles):
        item = await articles.get_by_id(10)
        assert item["author"] == {"id": 7, "name": "Bob", "email": "bob@example.com"}

    @pytest.mark.asyncio
    async def test_list_keeps_order(self, articles):
        item = await articles.get_by_id(11)
        assert [author["name"] for author in item["author"]] == ["Bob", "Ann"]

    @pytest.mark.asyncio
    async def test_null_left_alone(self, articles):
        item = await articles.get_by_id(12)
        assert item["author"] is None

    @pytest.mark.asyncio
    async def test_one_batched_load_per_field(self, articles, accounts_adapter):
        items = await articles.get_all()

        assert len(items) == 3
        assert accounts_adapter.count("query", "users") == 1
        sent = accounts_adapter.calls[-1].args[0]
        assert sorted(sent["filter"]["id"]["_in"]) == [7, 8]

    @pytest.mark.asyncio
    async def test_sub_fields_requested_from_target(self, articles, cms_adapter, accounts_adapter):
        item = await articles.get_by_id(10, fields=["id", "author.name"])

        # Owning server only gets the foreign key
        assert cms_adapter.calls[-1].args[0]["fields"] == ["id", "author"]
        assert accounts_adapter.calls[-1].args[0]["fields"] == ["name", "id"]
        assert item == {"id": 10, "author": {"name": "Bob", "id": 7}}

    @pytest.mark.asyncio
    async def test_object_carrying_id(self, articles, cms_adapter):
        cms_adapter.load("articles", [{"id": 20, "title": "Nested", "author": {"id": 8}}])
        item = await articles.get_by_id(20)
        assert item["author"]["name"] == "Ann"

    @pytest.mark.asyncio
    async def test_unknown_id_left_as_gap(self, articles, cms_adapter, caplog):
        cms_adapter.load("articles", [{"id": 21, "title": "Ghost", "author": 404}])

        with caplog.at_level(logging.WARNING):
            item = await articles.get_by_id(21)

        assert item["author"] == 404
        assert any("not found" in record.message for record in caplog.records)

    @pytest.mark.asyncio
    async def test_target_failure_keeps_host(self, articles, accounts_adapter):
        accounts_adapter.fail_next("query", BackendError("users down", code=503))

        item = await articles.get_by_id(10)

        assert item["title"] == "Hello"
        assert item["author"] == 7

    @pytest.mark.asyncio
    async def test_missing_target_service(self, broker, caplog):
        tags = EntityService("tags", broker, deep_fields={"owner": "owners"})
        await tags.add({"id": 1, "owner": 3})

        with caplog.at_level(logging.ERROR):
            items = await tags.query(qb().equal("id", 1))

        assert items[0]["owner"] == 3
        assert any("owners" in record.message for record in caplog.records)

    @pytest.mark.asyncio
    async def test_uses_target_cache(self, articles, users, accounts_adapter):
        users.cache_enable()
        await articles.get_by_id(10)
        await articles.get_by_id(10)
        assert accounts_adapter.count("query", "users") == 1
