"""Enumeration types for the Data Bridge."""

from enum import Enum


class DatasetKind(str, Enum):
    """Dataset types with a registered header template."""

    POSTS = "posts"
    USERS = "users"
    IMAGES = "images"


class DuplicateHandling(str, Enum):
    """What to do when an imported row matches an existing record."""

    SKIP = "skip"
    UPDATE = "update"
    CREATE_NEW = "create_new"


class MissingTypeAction(str, Enum):
    """What to do when an imported row names a sub-type the target lacks."""

    SKIP = "skip"
    CONVERT_TO_DEFAULT = "convert_to_default"
    REJECT = "reject"


class ImportStage(str, Enum):
    """Lifecycle of a single import job."""

    PARSING = "parsing"
    TYPE_DETECTION = "type_detection"
    STRUCTURE_VALIDATION = "structure_validation"
    COMMITTING = "committing"
    FINALIZED = "finalized"
    FAILED = "failed"  # Terminal, reachable from any stage


class SideEffect(str, Enum):
    """Optional sub-imports applied after a record commits."""

    MEDIA = "media"
    TAXONOMIES = "taxonomies"
    CUSTOM_FIELDS = "custom_fields"
    USER_META = "user_meta"
