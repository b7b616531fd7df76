"""Tests for relation resolvers with lazy and eager loading."""

import logging

import pytest

from quarry import (
    LoadMode,
    Mapped,
    RelationMisconfigured,
    RelationNotFound,
    Session,
    Settings,
    UnsupportedOperation,
    belongs_to,
    belongs_to_many,
    declarative_base,
    has_many,
    has_one,
    mapped_column,
)
from quarry.relationships import distinct_keys

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]

    profile = has_one("Profile")
    posts = has_many("Post")


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int]
    bio: Mapped[str]


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int]
    title: Mapped[str]

    author = belongs_to(User)
    tags = belongs_to_many("Tag", "post_tags")


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]

    posts = belongs_to_many(Post, "post_tags")


@pytest.fixture
def schema(execute):
    """Create the blog schema with test data."""
    execute("CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)")
    execute("CREATE TABLE profiles (id INTEGER PRIMARY KEY, user_id INTEGER, bio TEXT)")
    execute("CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER, title TEXT)")
    execute("CREATE TABLE tags (id INTEGER PRIMARY KEY, name TEXT)")
    execute("CREATE TABLE post_tags (post_id INTEGER, tag_id INTEGER)")

    for name in ("Alice", "Bob", "Charlie"):
        execute("INSERT INTO users (name) VALUES (?)", [name])
    execute("INSERT INTO profiles (id, user_id, bio) VALUES (1, 1, 'Alice bio'), (2, 2, 'Bob bio')")
    execute(
        "INSERT INTO posts (id, user_id, title) VALUES (?, ?, ?), (?, ?, ?), (?, ?, ?), (?, ?, ?)",
        [1, 1, "A1", 2, 1, "A2", 3, 2, "B1", 4, 3, "C1"],
    )
    execute("INSERT INTO tags (id, name) VALUES (1, 'python'), (2, 'sql'), (3, 'orm')")
    # post 1 is linked to tag 2 twice
    execute("INSERT INTO post_tags (post_id, tag_id) VALUES (1, 1), (1, 2), (1, 2), (2, 3), (3, 1)")


class TestRelationDefinition:
    """Tests for declarations and key conventions."""

    def test_relations_registered(self):
        assert set(User.__relationships__) == {"profile", "posts"}
        assert set(Post.__relationships__) == {"author", "tags"}

    def test_relation_attributes_removed_from_class(self):
        assert "posts" not in User.__dict__

    def test_has_many_keys(self):
        posts = User.__relationships__["posts"]
        assert posts.foreign_key == "user_id"
        assert posts.local_key == "id"
        assert posts.target is Post

    def test_belongs_to_keys(self):
        author = Post.__relationships__["author"]
        assert author.foreign_key == "user_id"
        assert author.owner_key == "id"

    def test_belongs_to_many_keys(self):
        tags = Post.__relationships__["tags"]
        assert tags.pivot == "post_tags"
        assert tags.pivot_parent_key == "post_id"
        assert tags.pivot_related_key == "tag_id"

    def test_overrides_win(self):
        local = declarative_base()

        class Author(local):
            __tablename__ = "authors"
            id: Mapped[int] = mapped_column(primary_key=True)
            uuid: Mapped[str]
            books = has_many("Book", foreign_key="writer_uuid", local_key="uuid")

        class Book(local):
            __tablename__ = "books"
            id: Mapped[int] = mapped_column(primary_key=True)
            writer_uuid: Mapped[str]

        books = Author.__relationships__["books"]
        assert books.foreign_key == "writer_uuid"
        assert books.local_key == "uuid"

    def test_unresolvable_target(self):
        local = declarative_base()

        class Orphan(local):
            __tablename__ = "orphans"
            id: Mapped[int] = mapped_column(primary_key=True)
            parents = has_many("Missing")

        with pytest.raises(RelationMisconfigured):
            Orphan.__relationships__["parents"].target


class TestLazyLoading:
    """Tests for per-access resolution."""

    def test_has_many_on_access(self, session, schema, count_queries):
        user = session.get(User, 1)
        count_queries()
        assert [p.title for p in user.posts] == ["A1", "A2"]
        assert count_queries() == 1
        # Cached on the entity after the first access
        user.posts
        assert count_queries() == 0

    def test_has_one(self, session, schema):
        assert session.get(User, 2).profile.bio == "Bob bio"
        assert session.get(User, 3).profile is None

    def test_belongs_to(self, session, schema):
        post = session.get(Post, 3)
        assert post.author.name == "Bob"

    def test_belongs_to_many_without_duplicates(self, session, schema):
        post = session.get(Post, 1)
        assert sorted(t.name for t in post.tags) == ["python", "sql"]
        assert session.get(Post, 4).tags == []

    def test_inverse_belongs_to_many(self, session, schema):
        tag = session.get(Tag, 1)
        assert sorted(p.id for p in tag.posts) == [1, 3]

    def test_pivot_column_not_hydrated(self, session, schema):
        tag = session.get(Post, 1).tags[0]
        assert "_pivot_key" not in tag.to_dict()

    def test_detached_entity_raises(self):
        with pytest.raises(AttributeError, match="detached"):
            User(name="Nobody").posts

    def test_explicit_load(self, session, schema, count_queries):
        user = session.get(User, 1)
        count_queries()
        posts = session.load(user, "posts")
        assert len(posts) == 2
        assert user.posts is posts
        assert count_queries() == 1

    def test_explicit_load_unknown_relation(self, session, schema):
        with pytest.raises(RelationNotFound):
            session.load(session.get(User, 1), "comments")


class TestEagerLoading:
    """Tests for batched resolution."""

    def test_has_many_one_extra_query(self, session, schema, count_queries):
        count_queries()
        users = session.query(User).with_("posts").order_by("id", "asc").get()
        assert count_queries() == 2
        assert [[p.title for p in u.posts] for u in users] == [["A1", "A2"], ["B1"], ["C1"]]
        # Nothing left to load
        assert count_queries() == 0

    def test_query_count_independent_of_batch_size(self, session, schema, execute, count_queries):
        for i in range(20):
            execute("INSERT INTO users (name) VALUES (?)", [f"extra{i}"])
        count_queries()
        users = session.query(User).with_("posts", "profile").get()
        assert len(users) == 23
        assert count_queries() == 3

    def test_eager_matches_lazy(self, session, schema):
        eager = session.query(User).with_("posts").order_by("id", "asc").get()
        relation = User.__relationships__["posts"]
        for user in eager:
            lazy = relation.load(session, user)
            assert [p.to_dict() for p in user.posts] == [p.to_dict() for p in lazy]

    def test_has_one(self, session, schema):
        users = session.query(User).with_("profile").order_by("id", "asc").get()
        assert [u.profile.bio if u.profile else None for u in users] == ["Alice bio", "Bob bio", None]

    def test_belongs_to(self, session, schema, count_queries):
        count_queries()
        posts = session.query(Post).with_("author").order_by("id", "asc").get()
        assert count_queries() == 2
        assert [p.author.name for p in posts] == ["Alice", "Alice", "Bob", "Charlie"]

    def test_belongs_to_many(self, session, schema, count_queries):
        count_queries()
        posts = session.query(Post).with_("tags").order_by("id", "asc").get()
        assert count_queries() == 2
        names = [sorted(t.name for t in p.tags) for p in posts]
        assert names == [["python", "sql"], ["orm"], ["python"], []]

    def test_belongs_to_many_eager_matches_lazy(self, session, schema):
        eager = session.query(Post).with_("tags").get()
        relation = Post.__relationships__["tags"]
        for post in eager:
            lazy = relation.load(session, post)
            assert sorted(t.id for t in post.tags) == sorted(t.id for t in lazy)

    def test_identical_graphs(self, session, schema):
        eager = session.query(User).with_("posts", "profile").order_by("id", "asc").get()
        lazy = session.query(User).order_by("id", "asc").get()
        for user in lazy:
            user.posts, user.profile
        assert [u.to_dict(include_relationships=True) for u in eager] == [
            u.to_dict(include_relationships=True) for u in lazy
        ]

    def test_with_deduplicates_names(self, session, schema, count_queries):
        count_queries()
        session.query(User).with_("posts", ["posts"]).get()
        assert count_queries() == 2

    def test_empty_result_issues_no_relation_query(self, session, schema, count_queries):
        count_queries()
        assert session.query(User).where("id", 99).with_("posts").get() == []
        assert count_queries() == 1

    def test_missing_key_column(self, session, schema):
        with pytest.raises(RelationMisconfigured):
            session.query(User).select("name").with_("posts").get()

    def test_distinct_keys_keep_first_seen_order(self):
        parents = [{"id": 3}, {"id": 1}, {"id": None}, {"id": 3}, Post(id=2, user_id=1, title="x")]
        assert distinct_keys(parents, "id") == [3, 1, 2]

    def test_prefetch(self, session, schema, count_queries):
        users = session.find_all(User)
        count_queries()
        session.prefetch(users, "posts", "profile")
        assert count_queries() == 2
        alice = next(u for u in users if u.name == "Alice")
        assert len(alice.posts) == 2
        assert alice.profile.bio == "Alice bio"
        assert count_queries() == 0


class TestRelationPolicy:
    """Tests for undeclared relation names."""

    def test_strict_raises(self, session, schema):
        with pytest.raises(RelationNotFound) as exc_info:
            session.query(User).with_("comments").get()
        assert exc_info.value.relation == "comments"
        assert exc_info.value.entity == "User"

    def test_strict_raises_on_empty_result(self, session, schema):
        with pytest.raises(RelationNotFound):
            session.query(User).where("id", 99).with_("comments").get()

    def test_non_strict_skips(self, connection, schema, caplog):
        session = Session(connection, Settings(strict_relations=False))
        with caplog.at_level(logging.WARNING, logger="quarry.hydration"):
            users = session.query(User).with_("comments", "posts").get()
        assert len(users) == 3
        assert "comments" in caplog.text
        assert "posts" in users[0]._loaded_relationships


class TestRelationPagination:
    """Tests for paginating a HasMany relation."""

    def test_lazy_paginate(self, session, schema):
        alice = session.get(User, 1)
        pager = User.__relationships__["posts"].paginate(session, alice, per_page=1)
        assert pager.page_count == 2
        assert [p.title for p in pager.page(2)] == ["A2"]

    def test_eager_paginate_unsupported(self, session, schema):
        alice = session.get(User, 1)
        with pytest.raises(UnsupportedOperation):
            User.__relationships__["posts"].paginate(session, alice, per_page=1, mode=LoadMode.EAGER)
