"""
Borrow admission control

A user may hold at most `limit` borrow records at once and never two records
for the same book. The count check, the duplicate check and the insert run
under a per-email lock so two requests for the same user in this process
cannot both slip under the limit.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from pymongo.collection import Collection
from pymongo.database import Database

from database import BORROWED_BOOKS, parse_object_id
from errors import BorrowLimitExceeded, DuplicateBorrow, NotFoundError, ValidationError
from schemas import BorrowedBook
from settings import settings

logger = logging.getLogger(__name__)


class BorrowAdmission:
    def __init__(self, limit: Optional[int] = None):
        self.limit = settings.BORROW_LIMIT if limit is None else limit
        # email -> [lock, number of threads using it]; dropped when unused
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, email: str):
        with self._locks_guard:
            slot = self._locks.setdefault(email, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._locks[email]

    def try_borrow(self, collection: Collection, record: Union[BorrowedBook, dict]) -> str:
        """Admit a borrow request and return the new record id."""
        if isinstance(record, BorrowedBook):
            record = record.model_dump(mode="json", exclude_none=True)
        record = dict(record)

        email = (record.get("email") or "").strip()
        book_id = str(record.get("bookId") or "").strip()
        if not email:
            raise ValidationError("Email is required")
        if not book_id:
            raise ValidationError("bookId is required")
        record["email"] = email
        record["bookId"] = book_id

        with self._locked(email):
            total = collection.count_documents({"email": email})
            if total >= self.limit:
                logger.info(f"Borrow limit reached for {email} ({total} records)")
                raise BorrowLimitExceeded(f"You can't borrow more than {self.limit} books!")

            if collection.find_one({"email": email, "bookId": book_id}):
                logger.info(f"{email} already borrowed book {book_id}")
                raise DuplicateBorrow()

            now = datetime.now(timezone.utc)
            record["created_at"] = now
            record["updated_at"] = now
            result = collection.insert_one(record)

        logger.info(f"{email} borrowed book {book_id}")
        return str(result.inserted_id)


def return_borrow(db: Database, record_id: str) -> int:
    oid = parse_object_id(record_id)
    if oid is None:
        raise NotFoundError("Borrowed book not found")
    result = db[BORROWED_BOOKS].delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise NotFoundError("Borrowed book not found")
    return result.deleted_count
