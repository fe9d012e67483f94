"""
Tests for heimdallr.model - rule registration and the restrict entry point.
"""

from __future__ import annotations

import logging

import pytest

from heimdallr import (
    CollectionProxy,
    ConfigurationError,
    MemoryModel,
    MemoryScope,
    RecordProxy,
    is_restrictable,
    named_scope,
)
from tests.models import Article, SubArticle, Tag, User


class Ledger(MemoryModel):
    fields = ("id", "owner_id", "amount")

    @named_scope
    def large(scope, threshold=100):
        return scope.where(lambda entry: entry.amount >= threshold)


class SubLedger(Ledger):
    pass


def ledger_rules(rules, user):
    rules.scope("fetch", lambda scope: scope.where(owner_id=user.id))
    rules.can("view")


def open_ledger_rules(rules, user):
    rules.scope("fetch")
    rules.can("view", ["amount"])


@pytest.fixture
def ledgers(john, banned):
    Ledger.register_restrictions(ledger_rules)
    return [
        Ledger.create(owner_id=john.id, amount=50),
        Ledger.create(owner_id=john.id, amount=500),
        Ledger.create(owner_id=banned.id, amount=5),
    ]


class TestRegistration:
    """Tests for attaching rule blocks to models."""

    def test_decorator_returns_block(self):
        def rules_block(rules, user):
            rules.scope("fetch")

        assert Ledger.register_restrictions(rules_block) is rules_block
        assert Ledger.has_restrictions()

    def test_replacing_warns(self, caplog):
        Ledger.register_restrictions(ledger_rules)

        with caplog.at_level(logging.WARNING, logger="heimdallr.model"):
            Ledger.register_restrictions(open_ledger_rules)

        assert "Replacing the restrictions registered for Ledger" in caplog.text

    def test_replacing_recompiles(self, ledgers, john):
        assert Ledger.restrict(john).count() == 2

        Ledger.register_restrictions(open_ledger_rules)

        assert Ledger.restrict(john).count() == 3
        assert Ledger.heimdallr_evaluator().block is open_ledger_rules

    def test_model_without_rules(self):
        assert not Tag.has_restrictions()
        with pytest.raises(ConfigurationError, match="Tag restrictions"):
            Tag.heimdallr_evaluator()

    def test_rules_without_fetch_scope(self, john):
        def incomplete_rules(rules, user):
            rules.can("view")

        Ledger.register_restrictions(incomplete_rules)

        with pytest.raises(ConfigurationError, match="fetch"):
            Ledger.restrict(john)

    def test_is_restrictable(self, public_article, tags):
        assert is_restrictable(Article)
        assert is_restrictable(public_article)
        assert not is_restrictable(Tag)
        assert not is_restrictable(tags[0])
        assert not is_restrictable(object())
        assert not is_restrictable(dict)


class TestSubtypes:
    """Tests for rule inheritance."""

    def test_subtype_inherits_block(self, ledgers, john):
        SubLedger.create(owner_id=john.id, amount=1)

        assert SubLedger.heimdallr_evaluator().block is ledger_rules
        assert SubLedger.heimdallr_evaluator() is not Ledger.heimdallr_evaluator()
        assert SubLedger.heimdallr_evaluator().model is SubLedger
        assert SubLedger.restrict(john).count() == 1

    def test_subtype_follows_parent_replacement(self, ledgers, john):
        SubLedger.heimdallr_evaluator()

        Ledger.register_restrictions(open_ledger_rules)

        assert SubLedger.heimdallr_evaluator().block is open_ledger_rules

    def test_subtype_can_override(self, ledgers, john, banned):
        def sub_rules(rules, user):
            rules.scope("fetch", lambda scope: scope.none())

        try:
            SubLedger.register_restrictions(sub_rules)
            SubLedger.create(owner_id=john.id, amount=1)

            assert SubLedger.restrict(john).count() == 0
            assert Ledger.restrict(john).count() == 3
        finally:
            del SubLedger._heimdallr_block
            del SubLedger._heimdallr_evaluator

        assert SubLedger.heimdallr_evaluator().block is ledger_rules

    def test_article_subtype(self, articles):
        assert SubArticle.heimdallr_evaluator().block is Article.heimdallr_evaluator().block


class TestNamedScopes:
    """Tests for @named_scope declarations."""

    def test_scopes_are_collected(self):
        assert Ledger.heimdallr_scopes == frozenset({"large"})
        assert SubLedger.heimdallr_scopes == frozenset({"large"})
        assert Article.heimdallr_scopes == frozenset({"published_only", "by_owner"})
        assert User.heimdallr_scopes == frozenset()

    def test_named_scope_on_model(self, ledgers):
        assert isinstance(Ledger.large(), MemoryScope)
        assert Ledger.large().count() == 1
        assert Ledger.large(threshold=10).count() == 2

    def test_named_scope_on_scope(self, ledgers, john):
        assert Ledger.query().where(owner_id=john.id).large(threshold=10).count() == 2

    def test_named_scope_on_restricted_collection(self, ledgers, banned):
        assert Ledger.restrict(banned).large(threshold=1).count() == 1
        assert Ledger.restrict(banned).large().count() == 0


class TestRestrictDispatch:
    """Tests for restrict() on models and records."""

    def test_on_model(self, ledgers, john):
        collection = Ledger.restrict(john)

        assert isinstance(collection, CollectionProxy)
        assert collection.model is Ledger
        assert collection.context is john
        assert not collection.options.implicit

    def test_on_model_implicit(self, ledgers, john):
        assert Ledger.restrict(john, implicit=True).options.implicit

    def test_on_record(self, ledgers, john):
        proxy = ledgers[0].restrict(john)

        assert isinstance(proxy, RecordProxy)
        assert proxy.insecure() is ledgers[0]
        assert proxy.amount == 50

    def test_on_record_with_eager_loads(self, public_article, looser):
        proxy = public_article.restrict(looser, eager_loaded=["comments"])

        assert proxy.options.is_eager_loaded("comments")

    def test_restrictions(self, ledgers, john):
        table = Ledger.restrictions(john)

        assert table.model is Ledger
        assert table.allowed("view") == frozenset(Ledger.fields)


class TestMemoization:
    """Tests for rule block memoization through the model."""

    def test_equal_contexts_do_not_recompile(self, ledgers, john):
        evaluator = Ledger.heimdallr_evaluator()
        Ledger.restrictions(john)
        compiled = evaluator.evaluations

        same_user = User.query().find(john.id)
        assert same_user is not john
        Ledger.restrictions(same_user)
        Ledger.restrict(john).count()

        assert evaluator.evaluations == compiled

    def test_different_contexts_recompile(self, ledgers, john, banned):
        evaluator = Ledger.heimdallr_evaluator()
        Ledger.restrictions(john)
        compiled = evaluator.evaluations

        Ledger.restrictions(banned)

        assert evaluator.evaluations == compiled + 1

    def test_tables_are_shared_while_memoized(self, ledgers, john):
        assert Ledger.restrictions(john) is Ledger.restrictions(john)

    def test_records_share_the_table_without_record_rules(self, ledgers, john):
        """Test that record proxies reuse the table when rules ignore the record."""
        evaluator = Ledger.heimdallr_evaluator()
        collection = Ledger.restrict(john)
        compiled = evaluator.evaluations

        assert len(collection.all()) == 2
        assert Ledger.restrict(john).count() == 2
        assert evaluator.evaluations == compiled

    def test_record_tables_do_not_evict_the_collection_table(self, articles, john):
        """Test that per-record compilation leaves the record-less memo alone."""
        evaluator = Article.heimdallr_evaluator()
        collection = Article.restrict(john)
        compiled = evaluator.evaluations

        assert len(collection.all()) == 2
        assert Article.restrict(john).count() == 2
        assert evaluator.evaluations == compiled + 2
