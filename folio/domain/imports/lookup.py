"""
Create-vs-update bookkeeping for one import job.

``TransactionLookupIndex`` mirrors the transactions already stored for a book
(by sequence number and by normalized title) and is updated as rows are saved,
so later rows of the same job see earlier rows. ``SequenceAllocator`` hands out
sequence numbers to rows that do not carry one, and ``DedupeKeySet`` records
which (sequence number, title) identities the job has already claimed.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional, Set, Tuple

from folio.utils.locks import KeyedLockManager
from folio.utils.text import normalize_text

logger = logging.getLogger(__name__)

DedupeKey = Tuple[str, int, str]


def title_key(title: Optional[str]) -> str:
    return normalize_text(title) if title else ""


def row_label(normalized_title: str, row_index: int) -> str:
    """Identity label of a row: its title key, or a per-row fallback for untitled rows."""
    return normalized_title or f"row-{row_index}"


class TransactionLookupIndex:
    """Per-book index from sequence number / normalized title to transaction id."""

    def __init__(self, book_id: str):
        self.book_id = book_id
        self._by_sr_no: Dict[int, str] = {}
        self._by_title: Dict[str, str] = {}
        self._sr_no_by_id: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._row_locks = KeyedLockManager()

    @classmethod
    def from_records(cls, book_id: str, records: Iterable[Dict]) -> "TransactionLookupIndex":
        index = cls(book_id)
        for record in records:
            index.record(record["id"], record.get("sr_no"), title_key(record.get("title")))
        return index

    def __len__(self) -> int:
        with self._lock:
            return len(self._sr_no_by_id)

    def max_sr_no(self) -> int:
        with self._lock:
            return max(self._by_sr_no, default=0)

    def has_sr_no(self, sr_no: int) -> bool:
        with self._lock:
            return sr_no in self._by_sr_no

    def by_sr_no(self, sr_no: int) -> Optional[str]:
        with self._lock:
            return self._by_sr_no.get(sr_no)

    def by_title(self, normalized_title: str) -> Optional[str]:
        if not normalized_title:
            return None
        with self._lock:
            return self._by_title.get(normalized_title)

    def sr_no_of(self, transaction_id: str) -> Optional[int]:
        with self._lock:
            return self._sr_no_by_id.get(transaction_id)

    def match(self, sr_no: Optional[int], normalized_title: str) -> Optional[str]:
        """
        Return the id of the transaction a row should update, or None to create.

        An explicit sequence number wins over a title match, even when the two
        point at different transactions.
        """
        with self._lock:
            if sr_no is not None and sr_no in self._by_sr_no:
                return self._by_sr_no[sr_no]
            if normalized_title and normalized_title in self._by_title:
                return self._by_title[normalized_title]
            return None

    def record(self, transaction_id: str, sr_no: Optional[int], normalized_title: str) -> None:
        with self._lock:
            if isinstance(sr_no, int):
                previous = self._sr_no_by_id.get(transaction_id)
                if previous is not None and previous != sr_no and self._by_sr_no.get(previous) == transaction_id:
                    del self._by_sr_no[previous]
                self._by_sr_no[sr_no] = transaction_id
                self._sr_no_by_id[transaction_id] = sr_no
            if normalized_title:
                self._by_title[normalized_title] = transaction_id

    @contextmanager
    def locked(self, sr_no: Optional[int], normalized_title: str) -> Iterator[None]:
        """Serialize match-and-save for rows sharing a sequence number or title."""
        keys = []
        if sr_no is not None:
            keys.append(f"sr:{sr_no}")
        if normalized_title:
            keys.append(f"title:{normalized_title}")
        with self._row_locks.acquire(*keys):
            yield


class DedupeKeySet:
    """Thread-safe set of identities claimed by rows of one job, across all its files."""

    def __init__(self):
        self._keys: Set[DedupeKey] = set()
        self._lock = threading.Lock()

    def __contains__(self, key: DedupeKey) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def claim(self, key: DedupeKey) -> bool:
        """Add ``key``; False when another row already claimed it."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True


class SequenceAllocator:
    """
    Monotonic sequence numbers for one book within one job.

    Numbers already stored (index), explicitly claimed by rows of the job, or
    present in the job's dedupe set are skipped.
    """

    def __init__(self, index: TransactionLookupIndex, dedupe_keys: DedupeKeySet):
        self._index = index
        self._dedupe_keys = dedupe_keys
        self._next = index.max_sr_no() + 1
        self._claimed: Dict[int, str] = {}
        self._lock = threading.Lock()

    @property
    def book_id(self) -> str:
        return self._index.book_id

    def claim_explicit(self, sr_no: int, label: str) -> bool:
        """
        Honor a sequence number supplied by the sheet.

        Returns False when another row of this job already claimed the same
        number for a different identity.
        """
        with self._lock:
            owner = self._claimed.get(sr_no)
            if owner is not None and owner != label:
                return False
            self._claimed[sr_no] = label
        self._dedupe_keys.claim((self.book_id, sr_no, label))
        return True

    def is_claimed(self, sr_no: int) -> bool:
        with self._lock:
            return sr_no in self._claimed

    def allocate(self, label: str) -> int:
        with self._lock:
            candidate = self._next
            while (
                candidate in self._claimed
                or self._index.has_sr_no(candidate)
                or (self.book_id, candidate, label) in self._dedupe_keys
            ):
                candidate += 1
            self._claimed[candidate] = label
            self._next = candidate + 1
        self._dedupe_keys.claim((self.book_id, candidate, label))
        logger.debug("Allocated Sr No %s for '%s' in book %s", candidate, label, self.book_id)
        return candidate
