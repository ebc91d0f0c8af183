from typing import Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class OrderData(BaseCouchbaseEntityData):
    auction_id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: float
    source: Literal["auction"] = "auction"
    status: Literal["payment_pending", "paid", "cancelled"] = "payment_pending"


class Order(BaseModelCouchbase[OrderData]):
    _collection_name = "orders"


def order_key_for_auction(auction_id: str) -> str:
    return f"order::{auction_id}"
