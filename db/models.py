"""SQLAlchemy ORM models for the record store, secrets and the import log.

Kept in step with migrations/*.sql; the SQL files are the source of truth for
deployed databases, ``Base.metadata.create_all`` is used for in-memory tests.
"""

from typing import Any

from sqlalchemy import ForeignKey, Index, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)

    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


class Records(Base):
    __tablename__ = "records"

    id: Mapped[str] = mapped_column(primary_key=True)
    kind: Mapped[str] = mapped_column(nullable=False, index=True)
    sub_type: Mapped[str | None] = mapped_column()
    target_collection_id: Mapped[str | None] = mapped_column()
    fields: Mapped[str] = mapped_column(nullable=False, default="{}")
    meta: Mapped[str] = mapped_column(nullable=False, default="{}")
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)
    field_values = relationship(
        "RecordFieldValues",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="RecordFieldValues.name",
    )


class RecordFieldValues(Base):
    """One row per record field, so duplicate lookups can run in SQL."""

    __tablename__ = "record_field_values"

    record_id: Mapped[str] = mapped_column(
        ForeignKey("records.id", ondelete="CASCADE"),
        primary_key=True,
    )
    name: Mapped[str] = mapped_column(primary_key=True)
    value: Mapped[str] = mapped_column(nullable=False)
    record = relationship("Records", back_populates="field_values")

    __table_args__ = (Index("ix_record_field_values_name_value", "name", "value"),)


class AppSecrets(Base):
    __tablename__ = "app_secrets"

    name: Mapped[str] = mapped_column(primary_key=True)
    value: Mapped[str] = mapped_column(nullable=False)
    created_at: Mapped[str] = mapped_column(nullable=False)


class ImportLogs(Base):
    __tablename__ = "import_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    timestamp: Mapped[str] = mapped_column(nullable=False, index=True)
    import_type: Mapped[str] = mapped_column(nullable=False)
    results: Mapped[str] = mapped_column(nullable=False)
    options: Mapped[str] = mapped_column(nullable=False)
