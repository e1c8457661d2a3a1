from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class SampleRecord(Base):
    """Rows created by ``setup-test`` for exercising the pipeline end to end."""

    __tablename__ = "sample_records"

    key_field: Mapped[str] = mapped_column(String(64), primary_key=True)
    field1: Mapped[str | None] = mapped_column(String(64), nullable=True)
    field2: Mapped[str | None] = mapped_column(String(64), nullable=True)
    condition: Mapped[str] = mapped_column(String(1), default="t", index=True)
    county: Mapped[str | None] = mapped_column(String(3), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
