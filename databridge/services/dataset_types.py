"""Dataset type registry.

Each dataset type (posts, users, images, ...) is described by data: its CSV
columns, the headers an import requires, how a CSV row maps onto a record and
which fields identify a duplicate. Adding a type means registering one more
``DatasetType``; no pipeline code changes.
"""

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from databridge.services._helpers import split_list
from db.enums import DatasetKind, SideEffect

RowByHeader = Mapping[str, str]


def parse_json_object(raw: str) -> dict[str, object] | None:
    """Decode a JSON object cell. Anything that is not an object is ignored."""
    try:
        value: object = json.loads(raw)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


@dataclass(frozen=True)
class Column:
    """One CSV column: display header and the row key it is read from."""

    header: str
    field: str


@dataclass(frozen=True)
class MetadataColumn:
    """A column committed as secondary metadata after the primary record."""

    header: str
    key: str
    side_effect: SideEffect
    parse: Callable[[str], object] = str


@dataclass(frozen=True)
class MappedRecord:
    fields: dict[str, str]
    metadata: dict[str, object]


@dataclass(frozen=True)
class DatasetType:
    name: str
    columns: tuple[Column, ...]
    # header -> record field, used when importing
    record_fields: Mapping[str, str] = field(default_factory=dict)
    metadata_columns: tuple[MetadataColumn, ...] = ()
    required_headers: tuple[str, ...] = ()
    required_fields: tuple[str, ...] = ()
    signature_headers: tuple[str, ...] = ()
    sub_type_field: str | None = None
    label_field: str | None = None
    match_fields: tuple[str, ...] = ()
    fixed_header: bool = True
    # export column that carries the stored record id
    id_field: str | None = None

    @property
    def headers(self) -> list[str]:
        return [c.header for c in self.columns]

    @property
    def field_names(self) -> list[str]:
        return [c.field for c in self.columns]

    def normalize_headers(self, headers: Iterable[str]) -> list[str]:
        """Map raw field-name headers ("post_title") onto display headers."""
        by_field: dict[str, str] = {c.field: c.header for c in self.columns}
        for header, record_field in self.record_fields.items():
            by_field.setdefault(record_field, header)
        for meta in self.metadata_columns:
            by_field.setdefault(meta.key, meta.header)
        return [by_field.get(h.strip(), h.strip()) for h in headers]

    @property
    def sub_type_header(self) -> str | None:
        for header, record_field in self.record_fields.items():
            if record_field == self.sub_type_field:
                return header
        return None

    @property
    def side_effects(self) -> dict[str, SideEffect]:
        """Metadata key -> the side effect that governs it."""
        return {meta.key: meta.side_effect for meta in self.metadata_columns}

    def missing_headers(self, headers: Sequence[str]) -> list[str]:
        present: set[str] = set(headers)
        return [h for h in self.required_headers if h not in present]

    def to_record(self, row: RowByHeader) -> MappedRecord:
        """Map a header-keyed row onto record fields; blank cells are omitted."""
        fields: dict[str, str] = {}
        for header, record_field in self.record_fields.items():
            value: str = row.get(header) or ""
            if value.strip():
                fields[record_field] = value

        metadata: dict[str, object] = {}
        for meta in self.metadata_columns:
            raw: str = row.get(meta.header) or ""
            if not raw.strip():
                continue
            parsed: object = meta.parse(raw)
            if parsed:
                metadata[meta.key] = parsed
        return MappedRecord(fields=fields, metadata=metadata)

    def label(self, fields: Mapping[str, str]) -> str:
        if self.label_field:
            return fields.get(self.label_field, "")
        return ""


# ── Built-in types ────────────────────────────────────────────────────────────

POSTS = DatasetType(
    name=DatasetKind.POSTS.value,
    columns=(
        Column("Site ID", "site_id"),
        Column("Site Name", "site_name"),
        Column("Post ID", "post_id"),
        Column("Post Title", "post_title"),
        Column("Post Content", "post_content"),
        Column("Post Excerpt", "post_excerpt"),
        Column("Post Status", "post_status"),
        Column("Post Type", "post_type"),
        Column("Author ID", "post_author_id"),
        Column("Author Name", "post_author_name"),
        Column("Post Date", "post_date"),
        Column("Post Modified", "post_modified"),
        Column("Featured Image ID", "featured_image_id"),
        Column("Featured Image URL", "featured_image_url"),
        Column("Categories", "categories"),
        Column("Tags", "tags"),
        Column("Custom Fields", "custom_fields"),
        Column("Parent ID", "parent_id"),
        Column("SEO Metadata", "seo_metadata"),
    ),
    record_fields={
        "Post Title": "post_title",
        "Post Content": "post_content",
        "Post Excerpt": "post_excerpt",
        "Post Status": "post_status",
        "Post Type": "post_type",
        "Author ID": "post_author",
        "Post Date": "post_date",
        "Parent ID": "post_parent",
    },
    metadata_columns=(
        MetadataColumn("Categories", "categories", SideEffect.TAXONOMIES, split_list),
        MetadataColumn("Tags", "tags", SideEffect.TAXONOMIES, split_list),
        MetadataColumn("Custom Fields", "custom_fields", SideEffect.CUSTOM_FIELDS, parse_json_object),
        MetadataColumn("Featured Image URL", "featured_image_url", SideEffect.MEDIA),
    ),
    required_headers=("Site ID", "Post Title", "Post Type"),
    required_fields=("site_id", "post_id", "post_title", "post_type"),
    signature_headers=("post_title", "Post Title"),
    sub_type_field="post_type",
    label_field="post_title",
    match_fields=("post_title", "post_type"),
    id_field="post_id",
)

USERS = DatasetType(
    name=DatasetKind.USERS.value,
    columns=(
        Column("Site ID", "site_id"),
        Column("Site Name", "site_name"),
        Column("User ID", "user_id"),
        Column("Username", "username"),
        Column("Email", "email"),
        Column("Display Name", "display_name"),
        Column("Registration Date", "registration_date"),
        Column("User Role", "user_role"),
        Column("User Meta", "user_meta"),
    ),
    record_fields={
        "Username": "user_login",
        "Email": "user_email",
        "Display Name": "display_name",
        "User Role": "role",
    },
    metadata_columns=(
        MetadataColumn("User Meta", "user_meta", SideEffect.USER_META, parse_json_object),
    ),
    required_headers=("Site ID", "Username", "Email"),
    required_fields=("site_id", "user_id", "username", "email"),
    signature_headers=("username", "Username"),
    label_field="user_login",
    match_fields=("user_email",),
    id_field="user_id",
)

IMAGES = DatasetType(
    name=DatasetKind.IMAGES.value,
    columns=(
        Column("Site ID", "site_id"),
        Column("Image URL", "image_url"),
        Column("Image Title", "image_title"),
        Column("Alt Text", "alt_text"),
        Column("Caption", "caption"),
        Column("Parent ID", "parent_id"),
    ),
    record_fields={
        "Image URL": "url",
        "Image Title": "title",
        "Alt Text": "alt_text",
        "Caption": "caption",
        "Parent ID": "post_parent",
    },
    required_headers=("Site ID", "Image URL"),
    signature_headers=("image_url", "Image URL"),
    label_field="url",
    match_fields=("url",),
    fixed_header=False,
)


# ── Registry ──────────────────────────────────────────────────────────────────

_REGISTRY: dict[str, DatasetType] = {}


def register(dataset_type: DatasetType, *, replace: bool = False) -> DatasetType:
    if dataset_type.name in _REGISTRY and not replace:
        raise ValueError(f"Dataset type {dataset_type.name!r} is already registered")
    _REGISTRY[dataset_type.name] = dataset_type
    return dataset_type


def unregister(name: str) -> None:
    _REGISTRY.pop(name, None)


def get_dataset_type(name: str) -> DatasetType | None:
    return _REGISTRY.get(name)


def registered_types() -> list[str]:
    return list(_REGISTRY)


def detect_import_type(headers: Sequence[str]) -> str:
    """Guess the dataset type from a header row.

    Best effort: the first registered type with a signature column present
    wins, in registration order (posts, users, images, then custom types).
    Falls back to posts when nothing matches.
    """
    present: set[str] = {h.strip() for h in headers}
    for dataset_type in _REGISTRY.values():
        if any(sig in present for sig in dataset_type.signature_headers):
            return dataset_type.name
    return POSTS.name


for _builtin in (POSTS, USERS, IMAGES):
    register(_builtin)
