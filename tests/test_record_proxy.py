"""
Tests for heimdallr.proxy.record - reads, writes, saves and deletions
through a restricted record.
"""

from __future__ import annotations

import pytest

from heimdallr import (
    AlreadyRestrictedError,
    CollectionProxy,
    ConfigurationError,
    InsecureOperationError,
    MemoryScope,
    PermissionDeniedError,
    RecordInvalidError,
    RecordProxy,
    override_config,
)
from tests.models import Article, Comment, Tag, User


class TestReading:
    """Tests for the view whitelist."""

    def test_whitelisted_fields_are_readable(self, public_article, looser):
        """Test reading viewable fields."""
        proxy = public_article.restrict(looser)

        assert proxy.id == public_article.id
        assert proxy.content == "public"
        assert proxy.owner_id == public_article.owner_id

    def test_hidden_field_raises_in_explicit_mode(self, public_article, looser):
        """Test that non-owners cannot read the secrecy level."""
        proxy = public_article.restrict(looser)

        with pytest.raises(PermissionDeniedError) as exc_info:
            proxy.secrecy_level

        assert exc_info.value.field == "secrecy_level"
        assert exc_info.value.action == "view"

    def test_owner_and_admin_read_everything(self, public_article, john, admin):
        """Test that owners and admins can read the secrecy level."""
        assert public_article.restrict(john).secrecy_level == 3
        assert public_article.restrict(admin).secrecy_level == 3

    def test_implicit_mode_returns_none(self, public_article, looser):
        """Test the implicit strategy."""
        assert public_article.restrict(looser, implicit=True).secrecy_level is None
        assert public_article.restrict(looser).implicit().secrecy_level is None

    def test_explicit_switches_back(self, public_article, looser):
        """Test that explicit() restores raising reads."""
        proxy = public_article.restrict(looser).implicit().explicit()

        with pytest.raises(PermissionDeniedError):
            proxy.secrecy_level

    def test_implicit_does_not_soften_other_errors(self, public_article, looser):
        """Test that implicit mode only affects whitelist denials."""
        proxy = public_article.restrict(looser, implicit=True)

        with pytest.raises(AttributeError):
            proxy.no_such_field

    def test_get_strips_markers(self, public_article, looser):
        """Test trailing ?, ! and = in string names."""
        proxy = public_article.restrict(looser)

        assert proxy.get("content?") == "public"
        assert proxy.get("published?") is True
        with pytest.raises(PermissionDeniedError):
            proxy.get("secrecy_level?")

    def test_item_access(self, public_article, looser):
        """Test reading through subscription."""
        proxy = public_article.restrict(looser)

        assert proxy["content"] == "public"
        with pytest.raises(PermissionDeniedError):
            proxy["secrecy_level"]

    def test_unknown_attribute_raises_attribute_error(self, public_article, looser):
        """Test attributes the record does not have."""
        proxy = public_article.restrict(looser)

        with pytest.raises(AttributeError):
            proxy.no_such_field

    def test_methods_need_whitelisting(self, public_article, looser):
        """Test that record methods are not callable unless whitelisted."""
        proxy = public_article.restrict(looser)

        with pytest.raises(PermissionDeniedError):
            proxy.summary

    def test_attributes_hide_non_viewable_values(self, public_article, looser, john):
        """Test the attributes mapping."""
        attributes = public_article.restrict(looser).attributes

        assert attributes["content"] == "public"
        assert attributes["secrecy_level"] is None
        assert public_article.restrict(john).attributes["secrecy_level"] == 3


class TestWriting:
    """Tests for assignment and saving."""

    def test_assignment_is_not_checked(self, public_article, looser):
        """Test that writes go through until save."""
        proxy = public_article.restrict(looser)

        proxy.secrecy_level = 1
        proxy["content"] = "changed"

        assert public_article.secrecy_level == 1
        assert public_article.content == "changed"

    def test_owner_updates_validated_field(self, secret_article, john):
        """Test a permitted update."""
        proxy = secret_article.restrict(john)
        proxy.secrecy_level = 3

        assert proxy.save() is True
        assert Article.query().get(secret_article.id).secrecy_level == 3

    def test_invalid_value_fails_validation(self, secret_article, john):
        """Test that validators of the action run on save."""
        proxy = secret_article.restrict(john)

        assert proxy.update_attributes({"secrecy_level": 8}) is False
        assert proxy.errors.full_messages() == ["secrecy_level is not included in the list"]
        assert not proxy.is_valid()
        assert Article.query().get(secret_article.id).secrecy_level == 10

    def test_invalid_value_raises_in_strict_save(self, secret_article, john):
        """Test update_attributes_or_raise."""
        proxy = secret_article.restrict(john)

        with pytest.raises(RecordInvalidError):
            proxy.update_attributes_or_raise({"secrecy_level": 8})

    def test_non_whitelisted_change_is_denied(self, secret_article, john):
        """Test that changing a field outside the update whitelist raises."""
        proxy = secret_article.restrict(john)
        proxy.content = "rewritten"

        with pytest.raises(PermissionDeniedError) as exc_info:
            proxy.save()

        assert exc_info.value.field == "content"
        assert "content" in proxy.errors
        assert Article.query().get(secret_article.id).content == "secret"

    def test_private_names_are_refused(self, secret_article, john):
        """Test that record bookkeeping cannot be rewritten to hide changes."""
        proxy = secret_article.restrict(john)
        proxy.content = "rewritten"

        with pytest.raises(InsecureOperationError):
            proxy._original = dict(secret_article.attributes())
        with pytest.raises(InsecureOperationError):
            proxy.set("_persisted", False)

        with pytest.raises(PermissionDeniedError):
            proxy.save()
        assert Article.query().get(secret_article.id).content == "secret"

    def test_increment_and_decrement(self, secret_article, john):
        """Test counters on a whitelisted field."""
        proxy = secret_article.restrict(john)

        assert proxy.decrement("secrecy_level", 8) is proxy
        proxy.increment("secrecy_level")

        assert proxy.save() is True
        assert Article.query().get(secret_article.id).secrecy_level == 3

    def test_increment_treats_none_as_zero(self, john):
        proxy = Article.restrict(john).new(content="draft")
        proxy.increment("secrecy_level")

        assert proxy.insecure().secrecy_level == 1

    def test_toggle_is_checked_on_save(self, public_article, john):
        """Test that toggling a field outside the whitelist is denied on save."""
        proxy = public_article.restrict(john).toggle("published")

        assert public_article.published is False
        with pytest.raises(PermissionDeniedError) as exc_info:
            proxy.save()
        assert exc_info.value.field == "published"

    def test_unpermitted_action_is_denied(self, public_article, looser):
        """Test that non-owners cannot update at all."""
        proxy = public_article.restrict(looser)

        with pytest.raises(PermissionDeniedError) as exc_info:
            proxy.update_attributes({"secrecy_level": 3})

        assert exc_info.value.action == "update"
        assert exc_info.value.field is None

    def test_admin_updates_anything(self, secret_article, admin):
        """Test an unrestricted update."""
        proxy = secret_article.restrict(admin)

        assert proxy.update_attributes_or_raise({"secrecy_level": 10, "content": "x"})
        assert Article.query().get(secret_article.id).content == "x"

    def test_save_without_validation_is_insecure(self, secret_article, admin):
        """Test that validation cannot be skipped through a proxy."""
        with pytest.raises(InsecureOperationError):
            secret_article.restrict(admin).save(validate=False)

    def test_fixture_drift_is_denied(self, john):
        """Test that fixed fields cannot be changed on create."""
        proxy = Article.restrict(john).new(content="draft", secrecy_level=1)
        proxy.owner_id = 999

        with pytest.raises(PermissionDeniedError) as exc_info:
            proxy.save()

        assert exc_info.value.field == "owner_id"
        assert proxy.errors.on("owner_id")
        assert Article.query().count() == 0

    def test_fixture_value_saves(self, john):
        """Test that fixture values and whitelisted fields save."""
        proxy = Article.restrict(john).new(content="draft", secrecy_level=1)

        assert proxy.save() is True
        assert Article.query().find(proxy.id).owner_id == john.id

    def test_previous_errors_are_cleared(self, secret_article, john):
        """Test that each save starts with empty errors."""
        proxy = secret_article.restrict(john)
        proxy.update_attributes({"secrecy_level": 8})
        assert proxy.errors

        assert proxy.update_attributes({"secrecy_level": 2}) is True
        assert not proxy.errors


class TestDeleting:
    """Tests for the delete scope."""

    def test_non_owner_cannot_destroy(self, public_article, looser):
        """Test that deletion outside the delete scope raises."""
        with pytest.raises(PermissionDeniedError):
            public_article.restrict(looser).destroy()

        assert Article.query().count() == 1

    def test_owner_destroys(self, public_article, john):
        """Test deletion inside the delete scope."""
        public_article.restrict(john).destroy()

        assert Article.query().count() == 0

    def test_admin_deletes(self, secret_article, admin):
        """Test delete() without callbacks."""
        secret_article.restrict(admin).delete()

        assert Article.query().count() == 0

    def test_destroy_runs_callbacks(self, john):
        """Test that destroy() goes through the record's callbacks."""
        destroyed = []

        class Journal(Article):
            def before_destroy(self):
                destroyed.append(self.id)

        journal = Journal.create(owner_id=john.id, content="j", secrecy_level=0)
        journal.restrict(john).destroy()

        assert destroyed == [journal.id]

    def test_new_record_is_not_destroyable(self, john):
        """Test that unsaved records cannot be destroyed."""
        proxy = Article.restrict(john).new(content="x")

        assert not proxy.is_destroyable()
        with pytest.raises(PermissionDeniedError):
            proxy.destroy()


class TestAssociations:
    """Tests for restricted association access."""

    def test_single_association_is_restricted(self, public_article, looser):
        """Test that belongs_to returns a record proxy."""
        owner = public_article.restrict(looser).owner

        assert isinstance(owner, RecordProxy)
        assert owner.name == "John"
        with pytest.raises(PermissionDeniedError):
            owner.banned

    def test_association_inherits_strategy(self, public_article, looser):
        """Test that implicit mode propagates to associations."""
        owner = public_article.restrict(looser, implicit=True).owner

        assert owner.banned is None

    def test_missing_association_is_none(self, looser):
        """Test an association without a target."""
        article = Article.create(content="orphan", secrecy_level=0)

        assert article.restrict(looser).owner is None

    def test_has_one_association(self, john, looser):
        """Test that has_one returns a record proxy."""
        User.create(name="Buddy", dude_id=john.id)

        buddy = john.restrict(looser).buddy

        assert isinstance(buddy, RecordProxy)
        assert buddy.name == "Buddy"

    def test_collection_association_applies_fetch_scope(self, public_article, comments, looser):
        """Test that has_many returns a collection over the target's fetch scope."""
        collection = public_article.restrict(looser).comments

        assert isinstance(collection, CollectionProxy)
        assert collection.count() == 1
        assert [comment.body for comment in collection] == ["Nice"]

    def test_eager_annotation_without_preloaded_rows(self, public_article, comments, looser):
        """Test that an eager-load annotation alone does not bypass the fetch scope."""
        collection = public_article.restrict(looser, eager_loaded=["comments"]).comments

        assert collection.count() == 1
        assert [comment.body for comment in collection] == ["Nice"]

    def test_collection_association_queries_live(self, public_article, comments, looser):
        """Test that non-eager associations hit the store."""
        proxy = public_article.restrict(looser)
        Comment.query().delete_all()

        assert proxy.comments.count() == 0

    def test_relation_like_method(self, articles, john, looser):
        """Test that declared relation-like methods are restricted."""
        assert articles[1].restrict(john).drafts.count() == 1
        assert articles[1].restrict(looser).drafts.count() == 0

    def test_unrestricted_association_is_insecure(self, public_article, tags, looser):
        """Test associations to models without restrictions."""
        with pytest.raises(InsecureOperationError):
            public_article.restrict(looser).tags

    def test_unrestricted_association_allowed_by_configuration(self, public_article, tags, looser):
        """Test allow_insecure_associations."""
        with override_config(allow_insecure_associations=True):
            raw = public_article.restrict(looser).tags

        assert isinstance(raw, MemoryScope)
        assert raw.pluck("name") == ["python"]


class TestIntrospection:
    """Tests for the security predicates and reflection."""

    def test_visibility(self, secret_article, public_article, john, looser, banned):
        assert secret_article.restrict(john).is_visible()
        assert public_article.restrict(looser).is_visible()
        assert not secret_article.restrict(looser).is_visible()
        assert not public_article.restrict(banned).is_visible()

    def test_modifiable(self, public_article, john, admin, looser):
        assert public_article.restrict(john).is_modifiable()
        assert public_article.restrict(admin).is_modifiable()
        assert not public_article.restrict(looser).is_modifiable()

    def test_destroyable(self, public_article, john, admin, looser):
        assert public_article.restrict(john).is_destroyable()
        assert public_article.restrict(admin).is_destroyable()
        assert not public_article.restrict(looser).is_destroyable()

    def test_creatable(self, public_article, john, banned):
        assert Article.restrict(john).new(content="x").is_creatable()
        assert not Article.restrict(banned).new(content="x").is_creatable()
        assert not public_article.restrict(john).is_creatable()

    def test_reflection(self, public_article, john):
        proxy = public_article.restrict(john)
        reflection = proxy.reflect_on_security()

        assert proxy.class_name == "Article"
        assert proxy.restrictions.can("update")
        assert reflection["operations"] == ["view", "update", "destroy"]
        assert reflection["options"] == {"implicit": False, "eager_loaded": {}}
        assert "secrecy_level" in reflection["restrictions"]["allowed_fields"]["update"]

    def test_insecure_returns_record(self, public_article, looser):
        assert public_article.restrict(looser).insecure() is public_article


class TestRestrictTwice:
    """Tests for re-restricting a proxy."""

    def test_same_context_returns_self(self, public_article, looser):
        proxy = public_article.restrict(looser)

        assert proxy.restrict(looser) is proxy

    def test_different_context_raises(self, public_article, looser, john):
        proxy = public_article.restrict(looser)

        with pytest.raises(AlreadyRestrictedError):
            proxy.restrict(john)

    def test_different_options_raise(self, public_article, looser):
        proxy = public_article.restrict(looser)

        with pytest.raises(AlreadyRestrictedError):
            proxy.restrict(looser, implicit=True)

    def test_same_eager_loads_return_self(self, public_article, looser):
        proxy = public_article.restrict(looser, eager_loaded=["comments"])

        assert proxy.restrict(looser, eager_loaded=["comments"]) is proxy
        assert proxy.restrict(looser, eager_loaded={"comments": {}}) is proxy
        assert proxy.restrict(looser) is proxy

    def test_different_eager_loads_raise(self, public_article, looser):
        proxy = public_article.restrict(looser, eager_loaded=["comments"])

        with pytest.raises(AlreadyRestrictedError):
            proxy.restrict(looser, eager_loaded=["owner"])
        with pytest.raises(AlreadyRestrictedError):
            public_article.restrict(looser).restrict(looser, eager_loaded="comments")

    def test_proxy_cannot_wrap_proxy(self, public_article, looser):
        proxy = public_article.restrict(looser)

        with pytest.raises(AlreadyRestrictedError):
            RecordProxy(looser, proxy)

    def test_model_without_rules(self, tags, looser):
        with pytest.raises(ConfigurationError):
            tags[0].restrict(looser)

        with pytest.raises(ConfigurationError):
            Tag.restrict(looser)
