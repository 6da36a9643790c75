"""Unit tests for target scope resolution."""

from unittest.mock import MagicMock

from src.monitoring.models import Campaign, TargetScope
from src.monitoring.scope_resolver import ScopeResolver


def ids(campaigns):
    return [c.id for c in campaigns]


class TestScopeResolver:
    def test_campaign_ids_skip_missing(self, store):
        resolver = ScopeResolver(store)
        result = resolver.resolve(TargetScope(type="campaigns", ids=["c1", "missing", "c3"]))
        assert ids(result) == ["c1", "c3"]

    def test_clients_concatenate(self, store):
        resolver = ScopeResolver(store)
        result = resolver.resolve(TargetScope(type="clients", ids=["client-b", "client-a"]))
        assert ids(result) == ["c3", "c1", "c2"]

    def test_users_sharing_a_client_are_deduplicated(self, store):
        store.user_clients["user-a"] = ["client-a"]
        store.user_clients["user-b"] = ["client-a", "client-b"]
        resolver = ScopeResolver(store)
        result = resolver.resolve(TargetScope(type="users", ids=["user-a", "user-b"]))
        assert ids(result) == ["c1", "c2", "c3"]

    def test_user_without_assignment_contributes_nothing(self, store):
        store.user_clients["user-empty"] = []
        resolver = ScopeResolver(store)
        assert resolver.resolve(TargetScope(type="users", ids=["user-empty", "unknown"])) == []

    def test_duplicate_campaign_ids(self, store):
        resolver = ScopeResolver(store)
        result = resolver.resolve(TargetScope(type="campaigns", ids=["c1", "c1", "c2", "c1"]))
        assert ids(result) == ["c1", "c2"]

    def test_scope_type_is_case_insensitive(self, store):
        resolver = ScopeResolver(store)
        assert ids(resolver.resolve(TargetScope(type="Campaigns", ids=["c2"]))) == ["c2"]

    def test_unknown_scope_type(self, store):
        resolver = ScopeResolver(store)
        assert resolver.resolve(TargetScope(type="teams", ids=["c1"])) == []
        assert resolver.resolve(TargetScope()) == []

    def test_failing_lookup_skips_only_that_id(self):
        entities = MagicMock()
        entities.get_campaign.side_effect = [
            RuntimeError("connection reset"),
            Campaign("c2", "Second"),
        ]
        resolver = ScopeResolver(entities)
        result = resolver.resolve(TargetScope(type="campaigns", ids=["c1", "c2"]))
        assert ids(result) == ["c2"]


class TestTargetScopeParsing:
    def test_from_json_string(self):
        scope = TargetScope.from_raw('{"type": "clients", "ids": ["a", 2]}')
        assert scope.type == "clients"
        assert scope.ids == ["a", "2"]

    def test_from_pascal_case_keys(self):
        scope = TargetScope.from_raw({"Type": "Users", "Ids": ["u1"]})
        assert scope.scope_type is not None
        assert scope.ids == ["u1"]

    def test_malformed_input(self):
        assert TargetScope.from_raw("not json").ids == []
        assert TargetScope.from_raw(None).scope_type is None
