from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseLedgerStore, check_debit
from ..errors import (
    AccountNotFound,
    EventAlreadyProcessed,
    InsufficientCredits,
    StoreUnavailable,
)
from ..models.account import Account, AccountBalance, SubscriptionState
from ..models.alert import OperatorAlert
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry
from ..models.payment import ProcessedEventRecord


TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoLedgerStore(BaseLedgerStore):
    """
    MongoDB implementation of BaseLedgerStore using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model. Counter changes use `$inc`, which
    MongoDB applies atomically per document, so concurrent request handlers
    compose without application-level locking.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoLedgerStore":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        try:
            await self._db[Account.collection_name].create_index(
                [("billing_customer_id", ASCENDING)], sparse=True
            )
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Account operations
    async def create_account(self, account: Account) -> Tuple[Account, bool]:
        col = self._db[Account.collection_name]
        data = self._prepare_insert(account)
        data.pop("_id")
        try:
            result = await col.update_one(
                {"_id": account.id}, {"$setOnInsert": data}, upsert=True
            )
            if result.upserted_id is not None:
                return account, True
            doc = await col.find_one({"_id": account.id})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        existing = self._decode(Account, doc)
        return (existing or account), False

    async def get_account(self, account_id: str) -> Optional[Account]:
        col = self._db[Account.collection_name]
        try:
            doc = await col.find_one({"_id": account_id})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self._decode(Account, doc)

    async def find_account_by_billing_customer(
        self, customer_id: str
    ) -> Optional[Account]:
        col = self._db[Account.collection_name]
        try:
            doc = await col.find_one({"billing_customer_id": customer_id})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self._decode(Account, doc)

    async def set_billing_customer_id(self, account_id: str, customer_id: str) -> bool:
        col = self._db[Account.collection_name]
        try:
            result = await col.update_one(
                {"_id": account_id, "billing_customer_id": None},
                {"$set": {"billing_customer_id": customer_id}},
            )
            if result.modified_count:
                return True
            exists = await col.count_documents({"_id": account_id}, limit=1)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        if not exists:
            raise AccountNotFound(account_id)
        return False

    async def set_subscription_state(
        self, account_id: str, state: SubscriptionState
    ) -> None:
        col = self._db[Account.collection_name]
        try:
            result = await col.update_one(
                {"_id": account_id},
                {"$set": {"subscription": state.model_dump(exclude_none=True)}},
            )
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        if result.matched_count == 0:
            raise AccountNotFound(account_id)

    async def list_accounts(self, limit: int = 100) -> List[Account]:
        col = self._db[Account.collection_name]
        try:
            docs = await col.find({}).sort("_id", ASCENDING).to_list(length=limit)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return [self._decode(Account, doc) for doc in docs]

    # Counters
    async def read_balance(self, account_id: str) -> AccountBalance:
        col = self._db[Account.collection_name]
        try:
            doc = await col.find_one(
                {"_id": account_id}, projection={"credits": 1, "free_actions": 1}
            )
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        if doc is None:
            raise AccountNotFound(account_id)
        return AccountBalance(
            credits=int(doc.get("credits", 0)),
            free_actions=int(doc.get("free_actions", 0)),
        )

    async def adjust(
        self, account_id: str, credits_delta: int, free_actions_delta: int = 0
    ) -> None:
        col = self._db[Account.collection_name]
        increments = {"credits": credits_delta, "free_actions": free_actions_delta}
        query: Dict[str, Any] = {"_id": account_id}
        if credits_delta < 0:
            query["credits"] = {"$gte": -credits_delta}
        if free_actions_delta < 0:
            query["free_actions"] = {"$gte": -free_actions_delta}
        try:
            result = await col.update_one(query, {"$inc": increments})
            if result.matched_count:
                return
            doc = await col.find_one(
                {"_id": account_id}, projection={"credits": 1, "free_actions": 1}
            )
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        if doc is None:
            raise AccountNotFound(account_id)
        balance = AccountBalance(
            credits=int(doc.get("credits", 0)),
            free_actions=int(doc.get("free_actions", 0)),
        )
        check_debit(account_id, balance, credits_delta, free_actions_delta)
        # A concurrent credit covered the debit after the filtered update missed it
        raise InsufficientCredits(account_id, max(-credits_delta, 0), balance.credits)

    # Processed webhook events
    async def insert_processed_event(
        self, record: ProcessedEventRecord
    ) -> ProcessedEventRecord:
        col = self._db[ProcessedEventRecord.collection_name]
        data = self._prepare_insert(record)
        try:
            await col.insert_one(data)
        except DuplicateKeyError as exc:
            raise EventAlreadyProcessed(record.id) from exc
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return record

    async def get_processed_event(self, event_id: str) -> Optional[ProcessedEventRecord]:
        col = self._db[ProcessedEventRecord.collection_name]
        try:
            doc = await col.find_one({"_id": event_id})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return self._decode(ProcessedEventRecord, doc)

    async def delete_processed_event(self, event_id: str) -> None:
        col = self._db[ProcessedEventRecord.collection_name]
        try:
            await col.delete_one({"_id": event_id})
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc

    # Audit
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        try:
            await col.insert_one(data)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return entry

    async def add_alert(self, alert: OperatorAlert) -> OperatorAlert:
        col = self._db[OperatorAlert.collection_name]
        data = self._prepare_insert(alert)
        try:
            await col.insert_one(data)
        except PyMongoError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return alert
