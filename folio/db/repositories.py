"""
Persistence operations used by the import pipeline and the export serializer.

Every method opens and closes its own session so the repository can be shared
by the row worker threads of an import job. Results are returned as plain
dictionaries; ORM instances never leave this module.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from folio.db.models import (
    Book,
    BookEditor,
    BookImage,
    GenericSubject,
    SummaryTransaction,
    Tag,
    TransactionImage,
)
from folio.db.session import get_session_local
from folio.utils.text import normalize_text

logger = logging.getLogger(__name__)

BOOK_FIELDS = (
    "library_number",
    "book_name",
    "book_summary",
    "page_numbers",
    "grade",
    "remark",
    "edition",
    "publisher_name",
    "cover_image_url",
)

TRANSACTION_FIELDS = (
    "sr_no",
    "title",
    "keywords",
    "relevant_paragraph",
    "foot_note",
    "paragraph_no",
    "page_no",
    "information_rating",
    "remark",
    "summary",
    "conclusion",
    "image_url",
)


class DuplicateEntityError(Exception):
    """Raised when an insert violates a uniqueness constraint (another writer won)."""

    def __init__(self, entity: str, key: str, message: str = None):
        self.entity = entity
        self.key = key
        self.message = message or f"{entity} '{key}' already exists."
        super().__init__(self.message)


class BookNotFoundError(Exception):
    """Raised when a book does not exist or belongs to another user."""

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book '{book_id}' not found")


def _book_to_dict(book: Book, include_related: bool = False) -> Dict[str, Any]:
    data = {"id": book.id, "user_id": book.user_id}
    for field in BOOK_FIELDS:
        data[field] = getattr(book, field)
    data["created_at"] = book.created_at
    data["updated_at"] = book.updated_at
    if include_related:
        data["editors"] = [{"name": editor.name, "role": editor.role} for editor in book.editors]
        data["images"] = [image.url for image in book.images]
    return data


def _subject_to_dict(subject: GenericSubject) -> Dict[str, Any]:
    return {
        "id": subject.id,
        "name": subject.name,
        "description": subject.description,
    }


def _tag_to_dict(tag: Tag) -> Dict[str, Any]:
    return {
        "id": tag.id,
        "name": tag.name,
        "category": tag.category,
        "description": tag.description,
    }


def _transaction_to_dict(transaction: SummaryTransaction) -> Dict[str, Any]:
    data = {
        "id": transaction.id,
        "book_id": transaction.book_id,
        "user_id": transaction.user_id,
        "created_at": transaction.created_at,
    }
    for field in TRANSACTION_FIELDS:
        data[field] = getattr(transaction, field)
    data["generic_subjects"] = [_subject_to_dict(subject) for subject in transaction.generic_subjects]
    data["tags"] = [_tag_to_dict(tag) for tag in transaction.tags]
    data["images"] = [image.url for image in transaction.images]
    return data


class CatalogRepository:
    """Create/update/find operations on books, transactions and taxonomy terms."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session_local()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _insert(self, entity: str, key: str, instance: Any, to_dict) -> Dict[str, Any]:
        try:
            with self._session() as session:
                session.add(instance)
                session.flush()
                return to_dict(instance)
        except IntegrityError as exc:
            logger.debug("Unique constraint hit while creating %s '%s': %s", entity, key, exc.orig)
            raise DuplicateEntityError(entity, key) from exc

    # ------------------------------------------------------------------ books

    def find_book(self, user_id: str, library_number: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            book = session.scalars(
                select(Book).where(Book.user_id == user_id, Book.library_number == library_number.strip())
            ).first()
            return _book_to_dict(book) if book else None

    def get_book(self, user_id: str, book_id: str) -> Dict[str, Any]:
        with self._session() as session:
            book = session.scalars(
                select(Book)
                .options(selectinload(Book.editors), selectinload(Book.images))
                .where(Book.id == book_id, Book.user_id == user_id)
            ).first()
            if book is None:
                raise BookNotFoundError(book_id)
            return _book_to_dict(book, include_related=True)

    def create_book(
        self,
        user_id: str,
        data: Dict[str, Any],
        editors: Optional[List[Dict[str, Any]]] = None,
        image_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        book = Book(user_id=user_id, **{field: data.get(field) for field in BOOK_FIELDS})
        book.editors = [
            BookEditor(name=editor["name"], role=editor.get("role"), position=index)
            for index, editor in enumerate(editors or [])
        ]
        book.images = [BookImage(url=url, position=index) for index, url in enumerate(image_urls or [])]
        return self._insert("Book", data.get("library_number", ""), book, _book_to_dict)

    def update_book(
        self,
        book_id: str,
        data: Dict[str, Any],
        editors: Optional[List[Dict[str, Any]]] = None,
        image_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Overwrite only the fields present in ``data``; editors and images are replaced when given."""
        with self._session() as session:
            book = session.get(Book, book_id)
            if book is None:
                raise BookNotFoundError(book_id)
            for field, value in data.items():
                if field in BOOK_FIELDS:
                    setattr(book, field, value)
            if editors is not None:
                book.editors = [
                    BookEditor(name=editor["name"], role=editor.get("role"), position=index)
                    for index, editor in enumerate(editors)
                ]
            if image_urls is not None:
                book.images = [BookImage(url=url, position=index) for index, url in enumerate(image_urls)]
            session.flush()
            return _book_to_dict(book)

    # --------------------------------------------------------- taxonomy terms

    def find_generic_subject(self, name: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            subject = session.scalars(
                select(GenericSubject).where(GenericSubject.name_key == normalize_text(name))
            ).first()
            return _subject_to_dict(subject) if subject else None

    def create_generic_subject(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        clean_name = name.strip()
        subject = GenericSubject(name=clean_name, name_key=normalize_text(clean_name), description=description)
        return self._insert("GenericSubject", clean_name, subject, _subject_to_dict)

    def update_generic_subject(self, subject_id: str, **fields: Any) -> Dict[str, Any]:
        with self._session() as session:
            subject = session.get(GenericSubject, subject_id)
            for field, value in fields.items():
                setattr(subject, field, value)
            session.flush()
            return _subject_to_dict(subject)

    def list_generic_subjects(self) -> List[Dict[str, Any]]:
        with self._session() as session:
            subjects = session.scalars(select(GenericSubject).order_by(GenericSubject.name)).all()
            return [_subject_to_dict(subject) for subject in subjects]

    def find_tag(self, name: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            tag = session.scalars(select(Tag).where(Tag.name_key == normalize_text(name))).first()
            return _tag_to_dict(tag) if tag else None

    def create_tag(
        self,
        name: str,
        category: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        clean_name = name.strip()
        tag = Tag(name=clean_name, name_key=normalize_text(clean_name), category=category, description=description)
        return self._insert("Tag", clean_name, tag, _tag_to_dict)

    def update_tag(self, tag_id: str, **fields: Any) -> Dict[str, Any]:
        with self._session() as session:
            tag = session.get(Tag, tag_id)
            for field, value in fields.items():
                setattr(tag, field, value)
            session.flush()
            return _tag_to_dict(tag)

    def list_tags(self) -> List[Dict[str, Any]]:
        with self._session() as session:
            tags = session.scalars(select(Tag).order_by(Tag.category, Tag.name)).all()
            return [_tag_to_dict(tag) for tag in tags]

    # ----------------------------------------------------------- transactions

    def list_transaction_refs(self, user_id: str, book_id: str) -> List[Dict[str, Any]]:
        """Return ``id``, ``sr_no`` and ``title`` of every transaction of a book."""
        with self._session() as session:
            rows = session.execute(
                select(SummaryTransaction.id, SummaryTransaction.sr_no, SummaryTransaction.title).where(
                    SummaryTransaction.book_id == book_id,
                    SummaryTransaction.user_id == user_id,
                )
            ).all()
            return [{"id": row.id, "sr_no": row.sr_no, "title": row.title} for row in rows]

    def _apply_links(
        self,
        session: Session,
        transaction: SummaryTransaction,
        generic_subject_ids: Iterable[str],
        tag_ids: Iterable[str],
        image_urls: Optional[List[str]],
    ) -> None:
        subject_ids = list(dict.fromkeys(generic_subject_ids))
        tag_id_list = list(dict.fromkeys(tag_ids))
        transaction.generic_subjects = (
            list(session.scalars(select(GenericSubject).where(GenericSubject.id.in_(subject_ids))))
            if subject_ids
            else []
        )
        transaction.tags = (
            list(session.scalars(select(Tag).where(Tag.id.in_(tag_id_list)))) if tag_id_list else []
        )
        if image_urls is not None:
            transaction.images = [
                TransactionImage(url=url, position=index) for index, url in enumerate(image_urls)
            ]

    def create_transaction(
        self,
        user_id: str,
        book_id: str,
        data: Dict[str, Any],
        generic_subject_ids: Iterable[str] = (),
        tag_ids: Iterable[str] = (),
        image_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        with self._session() as session:
            transaction = SummaryTransaction(
                user_id=user_id,
                book_id=book_id,
                **{field: data.get(field) for field in TRANSACTION_FIELDS},
            )
            self._apply_links(session, transaction, generic_subject_ids, tag_ids, image_urls or [])
            session.add(transaction)
            session.flush()
            return {"id": transaction.id, "sr_no": transaction.sr_no, "title": transaction.title}

    def update_transaction(
        self,
        transaction_id: str,
        data: Dict[str, Any],
        generic_subject_ids: Iterable[str] = (),
        tag_ids: Iterable[str] = (),
        image_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Overwrite the given fields and replace (not merge) subject and tag links."""
        with self._session() as session:
            transaction = session.get(SummaryTransaction, transaction_id)
            if transaction is None:
                raise LookupError(f"Transaction '{transaction_id}' not found")
            for field, value in data.items():
                if field in TRANSACTION_FIELDS:
                    setattr(transaction, field, value)
            self._apply_links(session, transaction, generic_subject_ids, tag_ids, image_urls)
            session.flush()
            return {"id": transaction.id, "sr_no": transaction.sr_no, "title": transaction.title}

    def list_transactions(
        self,
        user_id: str,
        book_id: str,
        generic_subject_id: Optional[str] = None,
        tag_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Transactions of a book with their links, ordered by ``sr_no`` then creation time."""
        query = (
            select(SummaryTransaction)
            .options(
                selectinload(SummaryTransaction.generic_subjects),
                selectinload(SummaryTransaction.tags),
                selectinload(SummaryTransaction.images),
            )
            .where(SummaryTransaction.book_id == book_id, SummaryTransaction.user_id == user_id)
        )
        if generic_subject_id:
            query = query.where(SummaryTransaction.generic_subjects.any(GenericSubject.id == generic_subject_id))
        if tag_id:
            query = query.where(SummaryTransaction.tags.any(Tag.id == tag_id))
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(
                or_(
                    func.lower(SummaryTransaction.title).like(pattern),
                    func.lower(SummaryTransaction.keywords).like(pattern),
                    func.lower(SummaryTransaction.remark).like(pattern),
                )
            )
        query = query.order_by(SummaryTransaction.sr_no.asc(), SummaryTransaction.created_at.asc())
        if limit:
            query = query.limit(limit)

        with self._session() as session:
            return [_transaction_to_dict(transaction) for transaction in session.scalars(query).all()]

    def count_transactions(self, user_id: str, book_id: str) -> int:
        with self._session() as session:
            return session.scalar(
                select(func.count(SummaryTransaction.id)).where(
                    SummaryTransaction.book_id == book_id,
                    SummaryTransaction.user_id == user_id,
                )
            ) or 0
