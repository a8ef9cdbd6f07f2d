import logging

from bodega.errors import InsufficientStockError, InvalidTransactionError
from bodega.models import CartItem, CartResult, Product, TransactionResult
from bodega.tasks.transactions import TransactionQueue

logger = logging.getLogger(__name__)


class Cart:
    """IN/OUT movements collected from scans before they are sent in one go."""

    def __init__(self):
        self.items: list[CartItem] = []

    def __len__(self):
        return len(self.items)

    def add(self, product: Product, action: str, quantity: int, comment: str = "", price: str = "") -> CartItem:
        if action not in ("IN", "OUT"):
            raise InvalidTransactionError(f"Unknown movement type: {action}")
        if quantity < 1:
            raise InvalidTransactionError(f"Quantity must be at least 1, got {quantity}")
        if action == "OUT" and quantity > product.stock_count:
            raise InsufficientStockError(str(product.id), quantity, product.stock_count)

        item = CartItem(id=product.id, name=product.nombre, type=action, qty=quantity,
                        comment=comment or "", price=str(price or ""))
        self.items.append(item)
        return item

    def remove(self, index: int) -> CartItem:
        return self.items.pop(index)

    def clear(self):
        self.items = []


async def process_cart(cart: Cart, queue: TransactionQueue, user: str = "WebUser") -> CartResult:
    """Submits every cart item in order, one at a time.

    Items that went through, or were saved to the offline queue, leave the
    cart. Only items the service rejected stay, so a retry never resends a
    movement that is already applied or queued.
    """
    result = CartResult()
    items = list(cart.items)
    kept: list[CartItem] = []
    done = 0
    try:
        for item in items:
            outcome = await queue.submit(item.to_payload(user))
            if outcome.ok:
                result.success_count += 1
            elif outcome.queued:
                result.queued_count += 1
            else:
                result.errors.append(f"{item.name}: {outcome.message}")
                kept.append(item)
            done += 1
    finally:
        # Applied or queued items leave the cart even if a later submit raises
        cart.items = kept + items[done:]

    if result.errors:
        logger.warning(f"Cart processed with errors: {result.success_count} ok, "
                       f"{result.queued_count} queued, {len(result.errors)} rejected")
    else:
        logger.info(f"Cart processed: {result.success_count} ok, {result.queued_count} queued")
    return result


async def create_product(queue: TransactionQueue, product_id: str, name: str, stock: int = 0,
                         allow_auto_id: bool = False) -> TransactionResult:
    """ADD a new product. An empty id asks the service to assign one, if allowed."""
    product_id = (product_id or "").strip()
    name = (name or "").strip()
    if not name or (not product_id and not allow_auto_id):
        raise InvalidTransactionError("Product id and name are required")

    return await queue.submit({
        "action": "ADD",
        "id": product_id or "AUTO",
        "nombre": name,
        "stock": stock,
        "user": "WebAdmin",
    })
