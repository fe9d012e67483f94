"""
Pytest fixtures for Heimdallr tests.

Provides common fixtures used across all test modules.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest

from heimdallr import default_store, reset_config
from tests.models import Article, Comment, Tag, User

# ============================================================================
# Global State
# ============================================================================


@pytest.fixture(autouse=True)
def clean_state() -> Generator[None, None, None]:
    """Start every test with an empty store and the default configuration."""
    default_store.clear()
    reset_config()
    yield
    default_store.clear()
    reset_config()


# ============================================================================
# Security Context Fixtures
# ============================================================================


@pytest.fixture
def john() -> User:
    """A persisted regular user who owns the seeded articles."""
    return User.create(name="John", admin=False, banned=False)


@pytest.fixture
def banned() -> User:
    """A persisted user who may not do anything."""
    return User.create(name="Banned", admin=False, banned=True)


@pytest.fixture
def admin() -> User:
    """An administrator (not persisted)."""
    return User(name="Admin", admin=True, banned=False)


@pytest.fixture
def looser() -> User:
    """A regular user who owns nothing (not persisted)."""
    return User(name="Looser", admin=False, banned=False)


# ============================================================================
# Record Fixtures
# ============================================================================


@pytest.fixture
def secret_article(john: User) -> Article:
    """A classified article owned by john."""
    return Article.create(owner_id=john.id, content="secret", secrecy_level=10, published=False)


@pytest.fixture
def public_article(john: User) -> Article:
    """A non-classified article owned by john."""
    return Article.create(owner_id=john.id, content="public", secrecy_level=3, published=True)


@pytest.fixture
def articles(secret_article: Article, public_article: Article) -> list[Article]:
    """Both seeded articles."""
    return [secret_article, public_article]


@pytest.fixture
def comments(public_article: Article, john: User) -> list[Comment]:
    """One visible and one hidden comment on the public article."""
    return [
        Comment.create(article_id=public_article.id, author_id=john.id, body="Nice", hidden=False),
        Comment.create(article_id=public_article.id, author_id=john.id, body="Spam", hidden=True),
    ]


@pytest.fixture
def tags(public_article: Article) -> list[Tag]:
    """Tags of the public article; Tag has no restrictions."""
    return [Tag.create(article_id=public_article.id, name="python")]
