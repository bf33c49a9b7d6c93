"""
Tests for the job-scoped get-or-create cache.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from folio.db.repositories import DuplicateEntityError
from folio.domain.imports.entity_cache import GENERIC_SUBJECT, TAG, EntityResolutionCache


class FlakyRepository:
    """Fails the first tag creation, then behaves."""

    def __init__(self):
        self.calls = 0
        self.tags = {}

    def find_tag(self, name):
        return self.tags.get(name.lower())

    def create_tag(self, name, category=None, description=None):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("connection reset")
        tag = {"id": f"tag-{self.calls}", "name": name, "category": category}
        self.tags[name.lower()] = tag
        return tag


class RacingRepository:
    """Simulates another job creating the subject between our lookup and our insert."""

    def __init__(self):
        self.lookups = 0

    def find_generic_subject(self, name):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return {"id": "winner", "name": name, "description": None}

    def create_generic_subject(self, name, description=None):
        raise DuplicateEntityError("GenericSubject", name)


def test_concurrent_resolution_creates_each_term_once(repository):
    cache = EntityResolutionCache(repository)
    barrier = threading.Barrier(8)

    def _resolve(n):
        barrier.wait()
        return cache.resolve_tag("Freedom Movement" if n % 2 else "  freedom   movement ", "Politics")["id"]

    with ThreadPoolExecutor(max_workers=8) as executor:
        ids = list(executor.map(_resolve, range(8)))

    assert len(set(ids)) == 1
    assert cache.creations[TAG] == 1
    assert len(repository.list_tags()) == 1


def test_failed_resolution_is_not_cached():
    cache = EntityResolutionCache(FlakyRepository())

    with pytest.raises(RuntimeError):
        cache.resolve_tag("Trade")

    assert (TAG, "trade") not in cache
    assert cache.resolve_tag("Trade")["id"] == "tag-2"


def test_duplicate_on_create_returns_the_winner():
    repository = RacingRepository()
    cache = EntityResolutionCache(repository)

    subject = cache.resolve_generic_subject("Economics")

    assert subject["id"] == "winner"
    assert cache.creations[GENERIC_SUBJECT] == 0


def test_existing_tag_category_is_reconciled(repository):
    repository.create_tag("Monsoon", "Weather")
    cache = EntityResolutionCache(repository)

    tag = cache.resolve_tag("monsoon", "Climate")

    assert tag["category"] == "Climate"
    assert repository.find_tag("Monsoon")["category"] == "Climate"
    # The first mention in a job wins for that job
    assert cache.resolve_tag("Monsoon", "Seasons")["category"] == "Climate"


def test_resolve_book_updates_only_provided_fields(repository):
    existing = repository.create_book("user-1", {"library_number": "LIB-1", "book_name": "Old", "grade": "8"})
    cache = EntityResolutionCache(repository)

    book = cache.resolve_book(
        "user-1",
        {"library_number": "LIB-1", "book_name": "New", "grade": None, "editors": [], "images": []},
    )

    assert book["id"] == existing["id"]
    assert book["book_name"] == "New"
    assert book["grade"] == "8"


def test_resolve_book_is_scoped_per_user(repository):
    cache = EntityResolutionCache(repository)

    first = cache.resolve_book("user-1", {"library_number": "LIB-9", "book_name": "A"})
    second = cache.resolve_book("user-2", {"library_number": "LIB-9", "book_name": "A"})

    assert first["id"] != second["id"]
    assert cache.creations["book"] == 2


def test_library_numbers_match_the_same_way_within_and_across_jobs(repository):
    cache = EntityResolutionCache(repository)
    upper = cache.resolve_book("user-1", {"library_number": "LIB-1", "book_name": "Upper"})
    lower = cache.resolve_book("user-1", {"library_number": "lib-1", "book_name": "Lower"})
    padded = cache.resolve_book("user-1", {"library_number": "  LIB-1 ", "book_name": None})

    assert upper["id"] != lower["id"]
    assert padded["id"] == upper["id"]

    next_job = EntityResolutionCache(repository)
    assert next_job.resolve_book("user-1", {"library_number": "lib-1", "book_name": None})["id"] == lower["id"]
    assert repository.find_book("user-1", "LIB-1")["id"] == upper["id"]
    assert next_job.creations["book"] == 0
