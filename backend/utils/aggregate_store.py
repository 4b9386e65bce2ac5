"""
Mongo persistence for the order + returns aggregate.

Return requests are stored inside their order document, in the `returns`
array, the same way an order carries its `return` sub-document. Each
return keeps its own id and version. The order document carries the
aggregate `version`: every write to the order or any of its returns is a
single update conditional on the version that was read, so a reader
always sees an order and its returns from the same write, and two
writers that read the same state can never both commit.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from bson import ObjectId
from pymongo import ReturnDocument

from models.order import Order, OrderStatus, PayoutStatus
from models.return_policy import ReturnPolicy
from models.return_request import ReturnRequest, ReturnStatus
from utils.errors import ConcurrencyConflict, EntityNotFound


@dataclass
class Aggregate:
    order: Order
    ret: Optional[ReturnRequest] = None
    # every return of the order, oldest first
    returns: list[ReturnRequest] = field(default_factory=list)


def new_id() -> str:
    return str(ObjectId())


def _oid(value: str, name: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise EntityNotFound(f"{name} not found", **{name: value})
    return ObjectId(value)


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def to_document(model) -> dict:
    data = _plain(model.model_dump())
    data["_id"] = ObjectId(data.pop("id"))
    return data


def _order_from(doc: dict) -> Order:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    doc.pop("returns", None)
    return Order.model_validate(doc)


def _returns_from(doc: dict) -> list[ReturnRequest]:
    return [ReturnRequest.model_validate(r) for r in doc.get("returns") or []]


def _aggregate_from(doc: dict, return_id: str | None = None) -> Aggregate:
    order = _order_from(doc)
    returns = _returns_from(doc)
    wanted = return_id or order.active_return_id
    ret = next((r for r in returns if r.id == wanted), None) if wanted else None
    return Aggregate(order=order, ret=ret, returns=returns)


class AggregateStore:

    def __init__(self, db):
        self.db = db
        self.orders = db.orders
        self.policies = db.return_policies

    # -----------------------------
    # READS
    # -----------------------------

    async def _order_doc(self, order_id: str) -> dict:
        doc = await self.orders.find_one({"_id": _oid(order_id, "order_id")})
        if not doc:
            raise EntityNotFound("Order not found", order_id=order_id)
        return doc

    async def get_order(self, order_id: str) -> Order:
        return _order_from(await self._order_doc(order_id))

    async def load(self, order_id: str) -> Aggregate:
        """Order plus its active return, if any, read in one document."""
        return _aggregate_from(await self._order_doc(order_id))

    async def load_for_return(self, return_id: str) -> Aggregate:
        _oid(return_id, "return_id")
        doc = await self.orders.find_one({"returns.id": return_id})
        if not doc:
            raise EntityNotFound("Return request not found", return_id=return_id)
        return _aggregate_from(doc, return_id)

    async def get_return(self, return_id: str) -> ReturnRequest:
        return (await self.load_for_return(return_id)).ret

    async def list_returns(self, order_id: str) -> list[ReturnRequest]:
        returns = _returns_from(await self._order_doc(order_id))
        return sorted(returns, key=lambda r: r.requested_at)

    async def _unwound_returns(self, match: dict, *, sort: int, skip: int = 0, limit: int | None = None):
        # the first match selects orders holding any such return, the second the returns themselves
        pipeline = [
            {"$match": match},
            {"$unwind": "$returns"},
            {"$match": match},
            {"$sort": {"returns.requested_at": sort}},
        ]
        if skip:
            pipeline.append({"$skip": skip})
        if limit is not None:
            pipeline.append({"$limit": limit})
        docs = await self.orders.aggregate(pipeline).to_list(None)
        return [ReturnRequest.model_validate(d["returns"]) for d in docs]

    async def list_seller_returns(
        self,
        seller_id: str,
        status: ReturnStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ReturnRequest]:
        match = {"seller_id": seller_id}
        if status is not None:
            match["returns.status"] = status.value
        return await self._unwound_returns(match, sort=-1, skip=offset, limit=limit)

    async def find_order_by_tracking(self, tracking_number: str) -> Optional[Order]:
        doc = await self.orders.find_one({"tracking_number": tracking_number})
        return _order_from(doc) if doc else None

    async def orders_awaiting_settlement(self) -> list[str]:
        """Orders whose payout may need money to move."""
        docs = await self.orders.find(
            {
                "$or": [
                    {"pending_transfer": {"$ne": None}},
                    {
                        "order_status": {"$in": [OrderStatus.DELIVERED.value, OrderStatus.RETURNED.value]},
                        "payout_status": {"$in": [PayoutStatus.PROCESSING.value, PayoutStatus.IN_ESCROW.value]},
                        "active_return_id": None,
                    },
                    {
                        "order_status": OrderStatus.CANCELED.value,
                        "funds_captured": True,
                        "payout_status": {"$ne": PayoutStatus.REVERSED.value},
                    },
                ]
            },
            {"_id": 1},
        ).to_list(None)
        return [str(doc["_id"]) for doc in docs]

    async def orders_requiring_settlement(self) -> list[Order]:
        docs = await self.orders.find({"settlement_required": True}).sort("updated_at", 1).to_list(None)
        return [_order_from(d) for d in docs]

    async def overdue_requested_returns(self, now: datetime) -> list[ReturnRequest]:
        return await self._unwound_returns(
            {
                "returns.status": ReturnStatus.REQUESTED.value,
                "returns.seller_action_deadline": {"$lte": now},
            },
            sort=1,
        )

    # -----------------------------
    # POLICIES
    # -----------------------------

    async def get_policy(self, seller_id: str) -> ReturnPolicy:
        doc = await self.policies.find_one({"seller_id": seller_id}, {"_id": 0, "seller_id": 0, "updated_at": 0})
        return ReturnPolicy.model_validate(doc) if doc else ReturnPolicy()

    async def save_policy(self, seller_id: str, policy: ReturnPolicy) -> ReturnPolicy:
        await self.policies.update_one(
            {"seller_id": seller_id},
            {"$set": {**policy.model_dump(), "updated_at": datetime.utcnow()}},
            upsert=True,
        )
        return policy

    # -----------------------------
    # WRITES
    # -----------------------------

    async def insert_order(self, order: Order) -> Order:
        doc = to_document(order)
        doc["returns"] = []
        await self.orders.insert_one(doc)
        return order

    async def commit(
        self,
        before: Aggregate,
        order: Order,
        ret: Optional[ReturnRequest] = None,
        *,
        new_return: bool = False,
    ) -> Aggregate:
        expected = before.order.version
        order = order.model_copy(update={"version": expected + 1})
        doc = to_document(order)
        doc.pop("_id")

        returns = list(before.returns)
        if ret is not None:
            if new_return:
                ret = ret.model_copy(update={"version": 1})
                returns.append(ret)
            else:
                index = next((i for i, r in enumerate(returns) if r.id == ret.id), None)
                if index is None:
                    raise ConcurrencyConflict(
                        "Return request changed since it was read",
                        return_id=ret.id,
                    )
                ret = ret.model_copy(update={"version": returns[index].version + 1})
                returns[index] = ret
            doc["returns"] = [_plain(r.model_dump()) for r in returns]

        updated = await self.orders.find_one_and_update(
            {"_id": ObjectId(order.id), "version": expected},
            {"$set": doc},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConcurrencyConflict(
                "Order changed since it was read",
                order_id=order.id,
                expected_version=expected,
            )

        return Aggregate(order=order, ret=ret, returns=returns)
