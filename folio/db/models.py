"""
Catalog tables: books, their annotation transactions and the two taxonomy
term kinds (generic subjects and specific tags).
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from folio.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


transaction_generic_subjects = Table(
    "transaction_generic_subjects",
    Base.metadata,
    Column("transaction_id", String, ForeignKey("summary_transactions.id", ondelete="CASCADE"), primary_key=True),
    Column("generic_subject_id", String, ForeignKey("generic_subjects.id", ondelete="CASCADE"), primary_key=True),
)

transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", String, ForeignKey("summary_transactions.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Book(Base):
    """Parent catalog record described by the first row of an import sheet."""
    __tablename__ = "books"
    __table_args__ = (UniqueConstraint("user_id", "library_number", name="uq_books_user_library_number"),)

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, index=True, nullable=False)
    library_number = Column(String, nullable=False)
    book_name = Column(String, nullable=False)
    book_summary = Column(Text, nullable=True)
    page_numbers = Column(String, nullable=True)
    grade = Column(String, nullable=True)
    remark = Column(Text, nullable=True)
    edition = Column(String, nullable=True)
    publisher_name = Column(String, nullable=True)
    cover_image_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    editors = relationship("BookEditor", cascade="all, delete-orphan", order_by="BookEditor.position")
    images = relationship("BookImage", cascade="all, delete-orphan", order_by="BookImage.position")


class BookEditor(Base):
    __tablename__ = "book_editors"

    id = Column(String, primary_key=True, default=_new_id)
    book_id = Column(String, ForeignKey("books.id", ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=True)
    position = Column(Integer, default=0)


class BookImage(Base):
    __tablename__ = "book_images"

    id = Column(String, primary_key=True, default=_new_id)
    book_id = Column(String, ForeignKey("books.id", ondelete="CASCADE"), index=True, nullable=False)
    url = Column(String, nullable=False)
    position = Column(Integer, default=0)


class GenericSubject(Base):
    """Broad taxonomy term. ``name_key`` enforces case-insensitive uniqueness."""
    __tablename__ = "generic_subjects"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    name_key = Column(String, unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class Tag(Base):
    """Specific taxonomy term with an optional category."""
    __tablename__ = "tags"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    name_key = Column(String, unique=True, index=True, nullable=False)
    category = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class SummaryTransaction(Base):
    """One annotation row of a book, identified by ``sr_no`` and/or title."""
    __tablename__ = "summary_transactions"

    id = Column(String, primary_key=True, default=_new_id)
    book_id = Column(String, ForeignKey("books.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    sr_no = Column(Integer, nullable=False)
    title = Column(String, nullable=True)
    keywords = Column(Text, nullable=True)
    relevant_paragraph = Column(JSON, nullable=True)  # plain text or {"english": ..., "hindi": ...}
    foot_note = Column(Text, nullable=True)
    paragraph_no = Column(String, nullable=True)
    page_no = Column(String, nullable=True)
    information_rating = Column(String, nullable=True)
    remark = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    conclusion = Column(Text, nullable=True)
    image_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    generic_subjects = relationship("GenericSubject", secondary=transaction_generic_subjects, order_by="GenericSubject.name")
    tags = relationship("Tag", secondary=transaction_tags, order_by="Tag.name")
    images = relationship("TransactionImage", cascade="all, delete-orphan", order_by="TransactionImage.position")


class TransactionImage(Base):
    __tablename__ = "transaction_images"

    id = Column(String, primary_key=True, default=_new_id)
    transaction_id = Column(String, ForeignKey("summary_transactions.id", ondelete="CASCADE"), index=True, nullable=False)
    url = Column(String, nullable=False)
    position = Column(Integer, default=0)
