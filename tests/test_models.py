"""Tests for entity definition and hydration setters."""

import pickle
import sys
import types
from datetime import date, datetime

import pytest

from quarry import (
    JSON,
    HydrationError,
    Mapped,
    ModelResolutionError,
    declarative_base,
    has_many,
    mapped_column,
)
from quarry.base import Base as RootBase
from quarry.inflection import foreign_key_for, pluralize, singularize, tableize

Base = declarative_base()


class Timestamped(Base):
    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(default=datetime.now)


class User(Timestamped):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str]
    email: Mapped[str] = mapped_column(converter=str.lower)
    age: Mapped[int | None]
    active: Mapped[bool] = mapped_column(default=True)

    posts = has_many("Post")


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str]
    user_id: Mapped[int]
    published_on: Mapped[date | None]
    metadata: Mapped[dict] = mapped_column(JSON, nullable=True)
    labels: Mapped[list | None]


class ArticleTag(Base):
    article_id: Mapped[int]
    tag_id: Mapped[int]


class Category(Base):
    id: Mapped[int]
    name: Mapped[str]


def test_model_tablename():
    """__tablename__ is kept when given and derived from the class name otherwise."""
    assert User.__tablename__ == "users"
    assert ArticleTag.__tablename__ == "article_tags"
    assert Category.__tablename__ == "categories"


def test_model_columns():
    """Columns come from mapped_column() and bare Mapped annotations."""
    assert set(User.__columns__) == {"created_at", "id", "name", "email", "age", "active"}
    assert set(Post.__columns__) == {"id", "title", "user_id", "published_on", "metadata", "labels"}


def test_model_primary_key():
    assert User.__primary_key__ == "id"
    # Falls back to an "id" column
    assert Category.__primary_key__ == "id"
    assert Category.__columns__["id"].primary_key is True
    assert ArticleTag.__primary_key__ is None


def test_column_properties():
    """Types and nullability are inferred from annotations."""
    assert User.__columns__["age"].nullable is True
    assert User.__columns__["age"].python_type is int
    assert User.__columns__["name"].nullable is False
    assert User.__columns__["active"].python_type is bool
    assert Post.__columns__["metadata"].is_json is True
    assert Post.__columns__["labels"].is_json is True
    assert Post.__columns__["labels"].nullable is True


def test_mixin_columns_are_copied():
    assert "created_at" in User.__columns__
    assert User.__columns__["created_at"] is not Timestamped.__columns__["created_at"]


def test_registry():
    registry = Base.__registry__
    assert registry.resolve("User") is User
    assert registry.resolve("users") is User
    assert registry.resolve(Post) is Post
    assert "Timestamped" not in registry


def test_registry_unknown_name():
    with pytest.raises(ModelResolutionError) as exc_info:
        Base.__registry__.resolve("Ghost")
    assert exc_info.value.code == 1206


def test_registries_are_separate():
    other = declarative_base()

    class Widget(other):
        id: Mapped[int]

    assert "Widget" in other.__registry__
    assert "Widget" not in Base.__registry__


def test_root_base_requires_declarative_base():
    with pytest.raises(TypeError):

        class Loose(RootBase):
            id: Mapped[int]


def test_model_instantiation():
    user = User(name="Alice", email="alice@example.com")
    assert user.name == "Alice"
    assert user.active is True
    assert user.age is None
    assert isinstance(user.created_at, datetime)
    # Autoincrement keys stay unset until saved
    assert "id" not in user.__dict__


def test_unknown_keyword_rejected():
    with pytest.raises(TypeError):
        User(nickname="Al")


def test_model_to_dict():
    user = User(id=1, name="Alice", email="a@x.io", age=30, active=False, created_at=datetime(2024, 1, 1))
    assert user.to_dict() == {
        "created_at": datetime(2024, 1, 1),
        "id": 1,
        "name": "Alice",
        "email": "a@x.io",
        "age": 30,
        "active": False,
    }


def test_model_to_dict_with_relationships():
    user = User(id=1, name="Alice", email="a@x.io")
    user._set_relationship("posts", [Post(id=5, title="Hi", user_id=1)])
    data = user.to_dict(include_relationships=True)
    assert data["posts"][0]["title"] == "Hi"


def test_model_from_dict():
    user = User.from_dict({"name": "Bob", "email": "b@x.io", "unknown": 1})
    assert user.name == "Bob"


def test_model_repr():
    assert repr(User(id=7, name="A", email="a")) == "<User id=7>"
    assert repr(ArticleTag(article_id=1, tag_id=2)) == "<ArticleTag>"


class TestHydrationSetters:
    """Tests for building entities from rows."""

    def test_from_row_converts_values(self):
        user = User._from_row(
            {"id": 1, "name": "Alice", "email": "ALICE@X.IO", "age": None, "active": 0,
             "created_at": "2024-05-01T10:00:00"}
        )
        assert user.email == "alice@x.io"
        assert user.active is False
        assert user.created_at == datetime(2024, 5, 1, 10, 0)
        assert user.age is None

    def test_from_row_decodes_json_and_dates(self):
        post = Post._from_row(
            {"id": 1, "title": "T", "user_id": 1, "published_on": "2024-02-03",
             "metadata": '{"k": [1, 2]}', "labels": '["a"]'}
        )
        assert post.metadata == {"k": [1, 2]}
        assert post.labels == ["a"]
        assert post.published_on == date(2024, 2, 3)

    def test_unknown_column_raises(self):
        with pytest.raises(HydrationError) as exc_info:
            User._from_row({"id": 1, "nickname": "Al"})
        assert exc_info.value.column == "nickname"
        assert exc_info.value.entity == "User"

    def test_unknown_column_ignored(self):
        user = User._from_row({"id": 1, "nickname": "Al"}, unknown_columns="ignore")
        assert user.id == 1
        assert "nickname" not in user.__dict__

    def test_from_row_skips_defaults(self):
        user = User._from_row({"id": 1})
        assert "active" not in user.__dict__


def test_pickle_drops_session():
    user = User(id=1, name="Alice", email="a@x.io")
    object.__setattr__(user, "_session", object())
    user._set_relationship("posts", [])

    restored = pickle.loads(pickle.dumps(user))

    assert restored._session is None
    assert restored.name == "Alice"
    assert restored.posts == []


def test_column_dump():
    assert Post.__columns__["metadata"].dump({"a": 1}) == '{"a": 1}'
    assert Post.__columns__["title"].dump("x") == "x"


class TestInflection:
    """Tests for table and key naming conventions."""

    @pytest.mark.parametrize(
        ("plural", "singular"),
        [("users", "user"), ("categories", "category"), ("addresses", "address"),
         ("boxes", "box"), ("churches", "church"), ("wishes", "wish"),
         ("glass", "glass")],
    )
    def test_singularize(self, plural, singular):
        assert singularize(plural) == singular

    def test_pluralize(self):
        assert pluralize("category") == "categories"
        assert pluralize("day") == "days"
        assert pluralize("box") == "boxes"

    def test_tableize(self):
        assert tableize("HTTPRequest") == "http_requests"
        assert tableize("ArticleTag") == "article_tags"

    def test_foreign_key_for(self):
        assert foreign_key_for("categories") == "category_id"
        assert foreign_key_for("users") == "user_id"


class TestRelationInheritance:
    """Tests for relations declared on mixins and entity bases."""

    def test_mixin_relation_is_bound_per_entity(self):
        local = declarative_base()

        class Authored(local):
            __abstract__ = True

            notes = has_many("Note")

        class Writer(Authored):
            id: Mapped[int]

        class Editor(Authored):
            id: Mapped[int]

        class Note(local):
            id: Mapped[int]

        assert "notes" not in vars(Authored)
        assert Writer.__relationships__["notes"].owner is Writer
        assert Editor.__relationships__["notes"].owner is Editor
        assert Writer.__relationships__["notes"] is not Editor.__relationships__["notes"]
        assert Writer.__relationships__["notes"].foreign_key == "writer_id"
        assert Writer.__relationships__["notes"].target is Note

    def test_mixin_relation_resolves_through_getattr(self):
        local = declarative_base()

        class Authored(local):
            __abstract__ = True

            notes = has_many("Note")

        class Writer(Authored):
            id: Mapped[int]

        with pytest.raises(AttributeError, match="detached"):
            Writer(id=1).notes

    def test_subclass_inherits_relations(self):
        local = declarative_base()

        class Member(local):
            id: Mapped[int]

            posts = has_many("Post", foreign_key="member_id")

        class Admin(Member):
            __tablename__ = "admins"

        assert set(Admin.__relationships__) == {"posts"}
        assert Admin.__relationships__["posts"].owner is Admin
        assert Member.__relationships__["posts"].owner is Member
        assert Admin.__relationships__["posts"].foreign_key == "member_id"


def test_string_annotations_are_resolved(monkeypatch):
    module = types.ModuleType("annotated_events")
    monkeypatch.setitem(sys.modules, module.__name__, module)
    exec(  # noqa: S102
        "from __future__ import annotations\n"
        "from datetime import date\n"
        "from quarry import Mapped, declarative_base\n"
        "Base = declarative_base()\n"
        "class Event(Base):\n"
        "    id: Mapped[int]\n"
        "    happened_on: Mapped[date | None]\n",
        module.__dict__,
    )
    columns = module.Event.__columns__
    assert columns["happened_on"].python_type is date
    assert columns["happened_on"].nullable is True
