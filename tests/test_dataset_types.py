"""Tests for databridge.services.dataset_types."""

from collections.abc import Generator

import pytest

from databridge.services.dataset_types import (
    IMAGES,
    POSTS,
    USERS,
    Column,
    DatasetType,
    MappedRecord,
    detect_import_type,
    get_dataset_type,
    parse_json_object,
    register,
    registered_types,
    unregister,
)
from db.enums import SideEffect


@pytest.fixture()
def orders_type() -> Generator[DatasetType, None, None]:
    dt: DatasetType = DatasetType(
        name="orders",
        columns=(Column("Order ID", "order_id"), Column("Total", "total")),
        record_fields={"Order ID": "order_id", "Total": "total"},
        required_headers=("Order ID",),
        signature_headers=("Order ID",),
        match_fields=("order_id",),
    )
    register(dt)
    yield dt
    unregister("orders")


class TestRegistry:
    def test_builtins_registered_in_order(self) -> None:
        assert registered_types()[:3] == ["posts", "users", "images"]

    def test_duplicate_registration_rejected(self) -> None:
        with pytest.raises(ValueError):
            register(POSTS)

    def test_replace(self) -> None:
        assert register(POSTS, replace=True) is POSTS
        assert get_dataset_type("posts") is POSTS

    def test_custom_type_detected(self, orders_type: DatasetType) -> None:
        assert get_dataset_type("orders") is orders_type
        assert detect_import_type(["Order ID", "Total"]) == "orders"

    def test_unknown(self) -> None:
        assert get_dataset_type("nope") is None


class TestDetectImportType:
    @pytest.mark.parametrize(
        ("headers", "expected"),
        [
            (["Site ID", "Post Title", "Post Type"], "posts"),
            (["post_title"], "posts"),
            (["Site ID", "Username", "Email"], "users"),
            (["username", "email"], "users"),
            (["Site ID", "Image URL"], "images"),
            (["image_url"], "images"),
            (["Something", "Else"], "posts"),
        ],
    )
    def test_detects(self, headers: list[str], expected: str) -> None:
        assert detect_import_type(headers) == expected

    def test_posts_win_over_users(self) -> None:
        assert detect_import_type(["Post Title", "Username"]) == "posts"

    def test_whitespace_in_headers(self) -> None:
        assert detect_import_type([" Username ", "Email"]) == "users"


class TestTemplates:
    def test_posts_columns(self) -> None:
        assert len(POSTS.headers) == 19
        assert POSTS.headers[0] == "Site ID"
        assert POSTS.headers[-1] == "SEO Metadata"
        assert POSTS.id_field == "post_id"

    def test_users_columns(self) -> None:
        assert USERS.headers == [
            "Site ID", "Site Name", "User ID", "Username", "Email",
            "Display Name", "Registration Date", "User Role", "User Meta",
        ]

    def test_images_has_no_fixed_header(self) -> None:
        assert IMAGES.fixed_header is False

    def test_sub_type_header(self) -> None:
        assert POSTS.sub_type_header == "Post Type"
        assert USERS.sub_type_header is None

    def test_side_effects(self) -> None:
        assert POSTS.side_effects == {
            "categories": SideEffect.TAXONOMIES,
            "tags": SideEffect.TAXONOMIES,
            "custom_fields": SideEffect.CUSTOM_FIELDS,
            "featured_image_url": SideEffect.MEDIA,
        }


class TestHeaders:
    def test_normalize_field_names(self) -> None:
        assert POSTS.normalize_headers(["site_id", "post_title", " post_type "]) == [
            "Site ID", "Post Title", "Post Type",
        ]

    def test_normalize_record_field_names(self) -> None:
        assert USERS.normalize_headers(["user_login", "user_email"]) == ["Username", "Email"]

    def test_unknown_headers_kept(self) -> None:
        assert POSTS.normalize_headers(["Mystery"]) == ["Mystery"]

    def test_missing_headers(self) -> None:
        assert POSTS.missing_headers(["Site ID", "Post Content"]) == ["Post Title", "Post Type"]
        assert USERS.missing_headers(["Site ID", "Username", "Email"]) == []


class TestToRecord:
    def test_posts_mapping(self) -> None:
        mapped: MappedRecord = POSTS.to_record({
            "Site ID": "1",
            "Post Title": "Hello",
            "Post Type": "post",
            "Author ID": "7",
            "Parent ID": "",
            "Categories": "News, Events",
            "Tags": "",
            "Custom Fields": '{"color": "blue"}',
            "Featured Image URL": "https://example.com/a.jpg",
        })
        assert mapped.fields == {"post_title": "Hello", "post_type": "post", "post_author": "7"}
        assert mapped.metadata == {
            "categories": ["News", "Events"],
            "custom_fields": {"color": "blue"},
            "featured_image_url": "https://example.com/a.jpg",
        }

    def test_invalid_json_ignored(self) -> None:
        mapped: MappedRecord = POSTS.to_record({"Post Title": "x", "Custom Fields": "not json"})
        assert "custom_fields" not in mapped.metadata

    def test_label(self) -> None:
        assert POSTS.label({"post_title": "Hello"}) == "Hello"
        assert USERS.label({}) == ""


class TestParseJsonObject:
    def test_object(self) -> None:
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_non_object(self) -> None:
        assert parse_json_object("[1]") is None
        assert parse_json_object("{oops") is None
