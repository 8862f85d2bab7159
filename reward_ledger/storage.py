import copy
import threading
from datetime import datetime
from typing import Callable, Iterable, Optional
from uuid import UUID


class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    def __init__(self, collection: str, key: str, value):
        super().__init__(f"Duplicate {key}={value!r} in {collection}")
        self.collection = collection
        self.key = key
        self.value = value


class InMemoryStorage:
    """Document store holding accounts, the activity log and withdrawals.

    Every operation runs under one lock and hands out copies, so callers
    never share a mutable document. ``update_account_if`` and
    ``update_withdrawal_if`` are the atomic update-with-filter primitives:
    the predicate and the mutation run as one step.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.accounts: dict[str, dict] = {}
        self.referral_index: dict[str, str] = {}
        self.activities: list[dict] = []
        self.activity_hashes: set[str] = set()
        self.reserved_hashes: set[str] = set()
        self.withdrawals: dict[UUID, dict] = {}

    # Accounts

    def insert_account(self, doc: dict) -> dict:
        with self._lock:
            if doc["telegram_id"] in self.accounts:
                raise DuplicateKeyError("accounts", "telegram_id", doc["telegram_id"])
            if doc["referral_code"] in self.referral_index:
                raise DuplicateKeyError("accounts", "referral_code", doc["referral_code"])
            self.accounts[doc["telegram_id"]] = copy.deepcopy(doc)
            self.referral_index[doc["referral_code"]] = doc["telegram_id"]
            return copy.deepcopy(doc)

    def get_account(self, telegram_id: str) -> Optional[dict]:
        with self._lock:
            doc = self.accounts.get(telegram_id)
            return copy.deepcopy(doc) if doc else None

    def find_account_by_referral_code(self, referral_code: str) -> Optional[dict]:
        with self._lock:
            telegram_id = self.referral_index.get(referral_code)
            return self.get_account(telegram_id) if telegram_id else None

    def referral_code_exists(self, referral_code: str) -> bool:
        with self._lock:
            return referral_code in self.referral_index

    def update_account_if(
        self,
        telegram_id: str,
        predicate: Callable[[dict], bool],
        mutate: Callable[[dict], None],
    ) -> Optional[dict]:
        """Apply ``mutate`` only if ``predicate`` holds; None when it does not."""
        with self._lock:
            doc = self.accounts.get(telegram_id)
            if doc is None or not predicate(doc):
                return None
            updated = copy.deepcopy(doc)
            mutate(updated)
            self.accounts[telegram_id] = updated
            return copy.deepcopy(updated)

    def delete_account(self, telegram_id: str) -> bool:
        with self._lock:
            doc = self.accounts.pop(telegram_id, None)
            if doc is None:
                return False
            self.referral_index.pop(doc["referral_code"], None)
            return True

    # Activity log

    def append_activity(self, doc: dict) -> dict:
        """Append an entry; a hash reserved by the caller is consumed here."""
        with self._lock:
            if doc["hash"] in self.activity_hashes:
                raise DuplicateKeyError("activities", "hash", doc["hash"])
            self.reserved_hashes.discard(doc["hash"])
            self.activity_hashes.add(doc["hash"])
            self.activities.append(copy.deepcopy(doc))
            return copy.deepcopy(doc)

    def reserve_activity_hash(self, request_hash: str) -> None:
        with self._lock:
            if request_hash in self.activity_hashes or request_hash in self.reserved_hashes:
                raise DuplicateKeyError("activities", "hash", request_hash)
            self.reserved_hashes.add(request_hash)

    def release_activity_hash(self, request_hash: str) -> None:
        """Drop an unused reservation; a no-op once an entry carries the hash."""
        with self._lock:
            self.reserved_hashes.discard(request_hash)

    def find_activities(
        self,
        telegram_id: str,
        types: Optional[Iterable[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict]:
        wanted = list(types) if types is not None else None
        with self._lock:
            return [
                copy.deepcopy(e) for e in self.activities
                if e["telegram_id"] == telegram_id
                and (wanted is None or e["type"] in wanted)
                and (start is None or e["timestamp"] >= start)
                and (end is None or e["timestamp"] <= end)
            ]

    def count_activities(self, telegram_id: str, activity_type: str) -> int:
        with self._lock:
            return sum(
                1 for e in self.activities
                if e["telegram_id"] == telegram_id and e["type"] == activity_type
            )

    # Withdrawals

    def insert_withdrawal(self, doc: dict) -> dict:
        with self._lock:
            self.withdrawals[doc["id"]] = copy.deepcopy(doc)
            return copy.deepcopy(doc)

    def get_withdrawal(self, withdrawal_id: UUID) -> Optional[dict]:
        with self._lock:
            doc = self.withdrawals.get(withdrawal_id)
            return copy.deepcopy(doc) if doc else None

    def update_withdrawal_if(
        self,
        withdrawal_id: UUID,
        expected_statuses: Iterable[str],
        mutate: Callable[[dict], None],
    ) -> Optional[dict]:
        """Compare-and-set on the status field."""
        expected = list(expected_statuses)
        with self._lock:
            doc = self.withdrawals.get(withdrawal_id)
            if doc is None or doc["status"] not in expected:
                return None
            updated = copy.deepcopy(doc)
            mutate(updated)
            self.withdrawals[withdrawal_id] = updated
            return copy.deepcopy(updated)

    def find_withdrawals(
        self,
        telegram_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(w) for w in self.withdrawals.values()
                if (telegram_id is None or w["telegram_id"] == telegram_id)
                and (status is None or w["status"] == status)
            ]
