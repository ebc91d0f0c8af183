"""
Order-creation collaborator for settled auctions.

Orders raised by the auction engine are keyed by auction id, so creating the
order for the same auction twice always lands on the same document.
"""

import logging
from typing import Optional

from couchbase.exceptions import DocumentExistsException

from models.entities.couchbase.orders import Order, OrderData, order_key_for_auction

logger = logging.getLogger(__name__)


async def order_create_for_auction(
    auction_id: str,
    listing_id: str,
    buyer_id: str,
    seller_id: str,
    amount: float,
) -> str:
    """Create the payment-pending order for a sold auction. Returns the order id.

    Idempotent on *auction_id*: a repeat call returns the existing order.
    """
    key = order_key_for_auction(auction_id)
    data = OrderData(
        auction_id=auction_id,
        listing_id=listing_id,
        buyer_id=buyer_id,
        seller_id=seller_id,
        amount=amount,
    )
    try:
        order = await Order.create(data, key=key, user_id=buyer_id)
        logger.info(f"Order {order.id} created for auction {auction_id}: buyer={buyer_id}, amount={amount}")
        return order.id
    except DocumentExistsException:
        logger.info(f"Order for auction {auction_id} already exists, reusing {key}")
        return key


async def order_get(order_id: str) -> Optional[Order]:
    return await Order.get(order_id)


async def order_get_by_auction(auction_id: str) -> Optional[Order]:
    return await Order.get(order_key_for_auction(auction_id))
