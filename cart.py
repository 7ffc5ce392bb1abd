"""
Cart aggregation.

A cart is a list of line items carrying a price snapshot taken when the
product was added. Totals are derived from the items on every read and
after every mutation and are never stored, so they cannot drift from the
items that produced them.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from database import utcnow
from errors import DependencyFailure, NotFound, ValidationFailed
from repositories import CartRepository, ProductRepository
from schemas import (
    Cart,
    CartItem,
    CartTotals,
    Product,
    ProductSnapshot,
    Variant,
    VariantSelection,
    effective_price,
)

logger = logging.getLogger(__name__)

# push/increment attempts before giving up on a contended cart
ADD_ATTEMPTS = 3


def compute_totals(items: Iterable[CartItem]) -> CartTotals:
    item_count = 0
    total_quantity = 0
    subtotal = 0.0
    total_discount = 0.0
    for item in items:
        item_count += 1
        total_quantity += item.quantity
        subtotal += item.price * item.quantity
        total_discount += (item.price - item.effective_price) * item.quantity
    return CartTotals(
        item_count=item_count,
        total_quantity=total_quantity,
        subtotal=round(subtotal, 2),
        total_discount=round(total_discount, 2),
        final_total=round(subtotal - total_discount, 2),
    )


def line_key(product_id: str, variant: Optional[VariantSelection] = None) -> str:
    if variant is None or not variant.variant_id:
        return product_id
    return f"{product_id}:{variant.variant_id}"


def serialize_item(item: CartItem) -> dict:
    data = item.model_dump(mode="json", by_alias=True, exclude={"line_key"})
    data["effectivePrice"] = item.effective_price
    data["lineTotal"] = item.line_total
    return data


def serialize_cart(cart: Cart) -> dict:
    return {
        "id": cart.id,
        "userId": cart.user_id,
        "items": [serialize_item(i) for i in cart.items],
        "totals": compute_totals(cart.items).model_dump(by_alias=True),
        "isEmpty": cart.is_empty,
        "createdAt": cart.created_at.isoformat() if cart.created_at else None,
        "updatedAt": cart.updated_at.isoformat() if cart.updated_at else None,
    }


def _resolve_variant(
    product: Product,
    variant_id: Optional[str],
    selection: Optional[VariantSelection],
) -> Optional[Variant]:
    if not product.has_variants:
        return None
    color = selection.color.strip().lower() if selection and selection.color else None
    size = selection.size.strip().upper() if selection and selection.size else None
    if not variant_id and not color and not size:
        raise ValidationFailed(
            "This product requires variant selection (color/size)",
            errors=[{"field": "variant", "message": "Variant selection is required"}],
        )

    if variant_id:
        selected = product.variant_by_id(variant_id)
    else:
        selected = next(
            (
                v
                for v in product.variants
                if v.is_active and (not color or v.color == color) and (not size or v.size == size)
            ),
            None,
        )
    if selected is None:
        raise NotFound("Selected variant is not available")
    if not selected.is_active:
        raise NotFound("Selected variant is not active")
    return selected


def _available_stock(product: Product, variant_id: Optional[str]) -> Optional[int]:
    """Stock that limits a line, or None when inventory is not tracked."""
    if not product.track_inventory:
        return None
    if product.has_variants and variant_id:
        variant = product.variant_by_id(variant_id)
        return variant.stock if variant else 0
    return product.stock


class CartService:
    def __init__(self, carts: CartRepository, products: ProductRepository, clock: Callable[[], datetime] = utcnow):
        self.carts = carts
        self.products = products
        self.clock = clock

    def get_cart(self, user_id: str) -> Cart:
        return self.carts.find_by_user(user_id) or Cart(user_id=user_id)

    def add_item(
        self,
        user_id: str,
        product_id: str,
        quantity: int = 1,
        variant_id: Optional[str] = None,
        variant: Optional[VariantSelection] = None,
    ) -> Tuple[Cart, dict]:
        if quantity < 1:
            raise ValidationFailed(errors=[{"field": "quantity", "message": "Quantity must be at least 1"}])

        product = self.products.find_by_id(product_id)
        if product is None:
            raise NotFound("Product not found")
        if not product.is_active:
            raise NotFound("Product is not available")

        selected = _resolve_variant(product, variant_id, variant)
        price = product.price
        discount_price = product.discount_price
        selection = None
        if selected is not None:
            if selected.price is not None:
                price = selected.price
            if selected.discount_price is not None:
                discount_price = selected.discount_price
            selection = VariantSelection(
                variant_id=selected.variant_id, color=selected.color, size=selected.size, sku=selected.sku
            )
        key = line_key(product.id, selection)

        stock = _available_stock(product, selection.variant_id if selection else None)
        if stock is not None:
            current = self.carts.find_by_user(user_id)
            existing = next((i for i in current.items if i.line_key == key), None) if current else None
            already = existing.quantity if existing else 0
            if stock < already + quantity:
                if already:
                    message = f"Cannot add {quantity} more items. Only {max(stock - already, 0)} more available"
                else:
                    message = f"Insufficient stock. Only {stock} items available"
                raise ValidationFailed(message, errors=[{"field": "quantity", "message": message}])

        now = self.clock()
        self.carts.ensure_cart(user_id, now)
        new_item = CartItem(
            item_id=str(ObjectId()),
            product_id=product.id,
            quantity=quantity,
            price=price,
            discount_price=discount_price,
            variant=selection,
            line_key=key,
            product_snapshot=ProductSnapshot(
                name=product.name,
                image=product.images[0] if product.images else None,
                category=product.category,
            ),
            added_at=now,
            updated_at=now,
        )
        for _ in range(ADD_ATTEMPTS):
            cart = self.carts.increment_line(user_id, key, quantity, price, discount_price, now)
            if cart is not None:
                break
            # no-op if a concurrent add pushed the same line first; retry the increment
            cart = self.carts.push_line(user_id, new_item, now)
            if cart is not None:
                break
        else:
            raise DependencyFailure("Cart was modified concurrently, try again")

        logger.debug("Added %s x %s to cart of %s", quantity, key, user_id)
        added = {
            "productId": product.id,
            "quantity": quantity,
            "variant": selection.model_dump(by_alias=True) if selection else None,
            "price": price,
            "discountPrice": discount_price,
            "effectivePrice": new_item.effective_price,
        }
        return cart, added

    def _not_found_in_cart(self, user_id: str) -> NotFound:
        if self.carts.find_by_user(user_id) is None:
            return NotFound("Cart not found")
        return NotFound("Item not found in cart")

    def remove_item(self, user_id: str, item_id: str) -> Tuple[Cart, dict]:
        now = self.clock()
        before = self.carts.pull_line(user_id, item_id, now)
        if before is None:
            raise self._not_found_in_cart(user_id)

        removed = before.find_item(item_id)
        after = before.model_copy(
            update={"items": [i for i in before.items if i.item_id != item_id], "updated_at": now}
        )
        logger.debug("Removed line %s from cart of %s", item_id, user_id)
        return after, {
            "itemId": item_id,
            "productId": removed.product_id,
            "productName": removed.product_snapshot.name,
            "quantity": removed.quantity,
            "variant": removed.variant.model_dump(by_alias=True) if removed.variant else None,
        }

    def update_quantity(self, user_id: str, item_id: str, quantity: int) -> Tuple[Cart, dict]:
        """Set a line's quantity; zero removes the line."""
        if quantity < 0:
            raise ValidationFailed(errors=[{"field": "quantity", "message": "Quantity cannot be negative"}])
        if quantity == 0:
            cart, removed = self.remove_item(user_id, item_id)
            return cart, {"itemId": item_id, "quantity": 0, "previousQuantity": removed["quantity"]}

        cart = self.carts.find_by_user(user_id)
        if cart is None:
            raise NotFound("Cart not found")
        item = cart.find_item(item_id)
        if item is None:
            raise NotFound("Item not found in cart")

        product = self.products.find_by_id(item.product_id)
        if product is None or not product.is_active:
            raise NotFound("Product is no longer available")
        variant_id = item.variant.variant_id if item.variant else None
        if product.has_variants and variant_id:
            variant = product.variant_by_id(variant_id)
            if variant is None or not variant.is_active:
                raise NotFound("Selected variant is no longer available")
        stock = _available_stock(product, variant_id)
        if stock is not None and stock < quantity:
            message = f"Insufficient stock. Only {stock} items available"
            raise ValidationFailed(message, errors=[{"field": "quantity", "message": message}])

        updated = self.carts.set_line_quantity(user_id, item_id, quantity, self.clock())
        if updated is None:
            raise NotFound("Item not found in cart")
        return updated, {"itemId": item_id, "quantity": quantity, "previousQuantity": item.quantity}

    def clear(self, user_id: str) -> Tuple[Cart, dict]:
        now = self.clock()
        before = self.carts.clear_items(user_id, now)
        if before is None:
            return Cart(user_id=user_id), {"itemsRemoved": 0, "totalQuantity": 0, "totalValue": 0}

        totals = compute_totals(before.items)
        cleared = {
            "itemsRemoved": totals.item_count,
            "totalQuantity": totals.total_quantity,
            "totalValue": totals.final_total,
        }
        return before.model_copy(update={"items": [], "updated_at": now}), cleared

    def summary(self, user_id: str) -> dict:
        cart = self.get_cart(user_id)
        totals = compute_totals(cart.items)
        return {
            **totals.model_dump(by_alias=True),
            "isEmpty": cart.is_empty,
            "lastActivity": cart.updated_at.isoformat() if cart.updated_at else None,
            "itemDetails": [
                {
                    "itemId": item.item_id,
                    "productId": item.product_id,
                    "productName": item.product_snapshot.name,
                    "quantity": item.quantity,
                    "price": item.price,
                    "discountPrice": item.discount_price,
                    "effectivePrice": item.effective_price,
                    "lineTotal": item.line_total,
                    "variant": item.variant.model_dump(by_alias=True) if item.variant else None,
                }
                for item in cart.items
            ],
        }

    def validate(self, user_id: str, include_details: bool = False) -> dict:
        """Check every line against the live catalogue without changing the cart."""
        cart = self.carts.find_by_user(user_id)
        if cart is None or cart.is_empty:
            return {"isValid": True, "isEmpty": True, "issues": []}

        products = self.products.find_many(i.product_id for i in cart.items)
        issues: List[dict] = []
        valid_items: List[dict] = []
        for item in cart.items:
            item_issues = _line_issues(item, products.get(item.product_id))
            if item_issues:
                issues.append(
                    {
                        "itemId": item.item_id,
                        "productId": item.product_id,
                        "productName": item.product_snapshot.name,
                        "quantity": item.quantity,
                        "variant": item.variant.model_dump(by_alias=True) if item.variant else None,
                        "issues": item_issues,
                    }
                )
            if not any(i["severity"] == "error" for i in item_issues):
                valid_items.append({"itemId": item.item_id, "productId": item.product_id, "quantity": item.quantity})

        error_count = sum(1 for entry in issues if any(i["severity"] == "error" for i in entry["issues"]))
        warning_count = sum(1 for entry in issues if any(i["severity"] == "warning" for i in entry["issues"]))
        is_valid = error_count == 0
        report = {
            "isValid": is_valid,
            "needsAttention": len(issues) > 0,
            "isEmpty": False,
            "summary": {
                "totalItems": len(cart.items),
                "validItems": len(valid_items),
                "itemsWithErrors": error_count,
                "itemsWithWarnings": warning_count,
                "canProceedToCheckout": is_valid and len(valid_items) > 0,
            },
            "issues": issues,
        }
        if include_details:
            report["validItems"] = valid_items
        return report


def _line_issues(item: CartItem, product: Optional[Product]) -> List[Dict]:
    if product is None:
        return [{"type": "product_not_found", "severity": "error", "message": "Product no longer exists"}]
    if not product.is_active:
        return [{"type": "product_inactive", "severity": "error", "message": "Product is no longer available"}]

    price = product.price
    discount_price = product.discount_price
    variant_id = item.variant.variant_id if item.variant else None
    if product.has_variants:
        if not variant_id:
            return [{"type": "variant_missing", "severity": "error", "message": "Variant selection required"}]
        variant = product.variant_by_id(variant_id)
        if variant is None:
            return [{"type": "variant_not_found", "severity": "error", "message": "Selected variant no longer exists"}]
        if not variant.is_active:
            return [{"type": "variant_inactive", "severity": "error", "message": "Selected variant is no longer available"}]
        if variant.price is not None:
            price = variant.price
        if variant.discount_price is not None:
            discount_price = variant.discount_price

    issues = []
    stock = _available_stock(product, variant_id)
    if stock == 0:
        issues.append({"type": "out_of_stock", "severity": "error", "message": "Item is out of stock"})
    elif stock is not None and stock < item.quantity:
        issues.append(
            {
                "type": "insufficient_stock",
                "severity": "warning",
                "message": f"Only {stock} items available (requested: {item.quantity})",
                "availableStock": stock,
                "requestedQuantity": item.quantity,
            }
        )

    current = effective_price(price, discount_price)
    if current != item.effective_price:
        issues.append(
            {
                "type": "price_changed",
                "severity": "info",
                "message": f"Price has changed from ${item.effective_price} to ${current}",
                "oldPrice": item.effective_price,
                "newPrice": current,
                "priceIncrease": current > item.effective_price,
            }
        )
    return issues
