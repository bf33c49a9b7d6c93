"""
Job-scoped get-or-create for taxonomy terms and books.

Rows of a sheet are saved by several worker threads at once and frequently
reference the same subject, tag or book. Each distinct normalized name gets a
single shared ``Future``: the first caller performs the lookup/creation and
every concurrent or later caller waits on the same result, so one job run
never issues two creations for one name.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

from folio.db.repositories import CatalogRepository, DuplicateEntityError
from folio.utils.text import is_present, normalize_text

logger = logging.getLogger(__name__)

GENERIC_SUBJECT = "generic_subject"
TAG = "tag"
BOOK = "book"

CacheKey = Tuple[str, str]


class EntityResolutionCache:
    def __init__(self, repository: CatalogRepository):
        self.repository = repository
        self._entries: Dict[CacheKey, Future] = {}
        self._lock = threading.Lock()
        self.creations: Dict[str, int] = {GENERIC_SUBJECT: 0, TAG: 0, BOOK: 0}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def _memoize(self, key: CacheKey, resolver: Callable[[], Any]) -> Any:
        with self._lock:
            future = self._entries.get(key)
            is_owner = future is None
            if is_owner:
                future = Future()
                self._entries[key] = future

        if not is_owner:
            return future.result()

        try:
            result = resolver()
        except Exception as exc:
            # Drop the entry so a later row can retry instead of inheriting the failure.
            with self._lock:
                if self._entries.get(key) is future:
                    del self._entries[key]
            future.set_exception(exc)
            logger.warning("Resolution of %s '%s' failed: %s", key[0], key[1], exc)
            raise
        future.set_result(result)
        return result

    def _count_creation(self, kind: str) -> None:
        with self._lock:
            self.creations[kind] += 1

    # ------------------------------------------------------------------ terms

    def resolve_generic_subject(self, name: str) -> Dict[str, Any]:
        clean_name = name.strip()
        key = (GENERIC_SUBJECT, normalize_text(clean_name) or clean_name.lower())

        def _resolve() -> Dict[str, Any]:
            existing = self.repository.find_generic_subject(clean_name)
            if existing:
                return existing
            try:
                created = self.repository.create_generic_subject(clean_name)
            except DuplicateEntityError:
                # A concurrent writer (another job) created it first.
                winner = self.repository.find_generic_subject(clean_name)
                if winner:
                    logger.info("Generic subject '%s' was created concurrently; reusing it", clean_name)
                    return winner
                raise
            self._count_creation(GENERIC_SUBJECT)
            logger.info("Created generic subject '%s'", clean_name)
            return created

        return self._memoize(key, _resolve)

    def _reconcile_tag_category(self, tag: Dict[str, Any], category: Optional[str]) -> Dict[str, Any]:
        if not category or tag.get("category") == category:
            return tag
        logger.info("Updating category of tag '%s' from %r to %r", tag["name"], tag.get("category"), category)
        return self.repository.update_tag(tag["id"], category=category)

    def resolve_tag(self, name: str, category: Optional[str] = None) -> Dict[str, Any]:
        """
        Get or create a specific tag. The first row to mention a tag in a job
        decides its category for that job.
        """
        clean_name = name.strip()
        clean_category = category.strip() if is_present(category) else None
        key = (TAG, normalize_text(clean_name) or clean_name.lower())

        def _resolve() -> Dict[str, Any]:
            existing = self.repository.find_tag(clean_name)
            if existing:
                return self._reconcile_tag_category(existing, clean_category)
            try:
                created = self.repository.create_tag(clean_name, clean_category)
            except DuplicateEntityError:
                winner = self.repository.find_tag(clean_name)
                if winner:
                    logger.info("Tag '%s' was created concurrently; reusing it", clean_name)
                    return self._reconcile_tag_category(winner, clean_category)
                raise
            self._count_creation(TAG)
            logger.info("Created tag '%s' (category=%r)", clean_name, clean_category)
            return created

        return self._memoize(key, _resolve)

    # ------------------------------------------------------------------ books

    def resolve_book(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Get or create the book identified by ``data["library_number"]``.

        The first definition of a library number in a job wins; an existing book
        only receives the fields that the sheet actually fills.
        """
        library_number = str(data["library_number"]).strip()
        # Library numbers are identifiers: matched exactly once trimmed, like find_book.
        key = (BOOK, f"{user_id}::{library_number}")
        provided = {field: value for field, value in data.items() if is_present(value)}
        provided["library_number"] = library_number
        editors = provided.pop("editors", None) or None
        image_urls = provided.pop("images", None) or None

        def _resolve() -> Dict[str, Any]:
            existing = self.repository.find_book(user_id, library_number)
            if existing:
                return self.repository.update_book(existing["id"], provided, editors, image_urls)
            try:
                created = self.repository.create_book(user_id, provided, editors, image_urls)
            except DuplicateEntityError:
                winner = self.repository.find_book(user_id, library_number)
                if winner:
                    return self.repository.update_book(winner["id"], provided, editors, image_urls)
                raise
            self._count_creation(BOOK)
            logger.info("Created book '%s' (%s)", provided.get("book_name"), library_number)
            return created

        return self._memoize(key, _resolve)
