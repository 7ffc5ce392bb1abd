"""
Document stores for users, products and carts.

Every mutation is a single atomic MongoDB operation (compare-and-swap via
find_one_and_update, or an array operator on cart.items); nothing here
reads a document, changes it in memory and writes it back. Positional
(`items.$`) writes go through update_one and the cart is read back afterwards.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, parse_object_id, to_str_id
from errors import ValidationFailed
from schemas import Cart, CartItem, Product, User

logger = logging.getLogger(__name__)


class UserRepository:
    def __init__(self, db: Database):
        self.collection = db["user"]
        self.db = db

    @staticmethod
    def _to_user(doc: Optional[dict]) -> Optional[User]:
        if doc is None:
            return None
        return User.model_validate(to_str_id(doc))

    def find_by_email(self, email: str) -> Optional[User]:
        return self._to_user(self.collection.find_one({"email": email, "deleted": {"$ne": True}}))

    def find_by_id(self, user_id: str) -> Optional[User]:
        _id = parse_object_id(user_id)
        if _id is None:
            return None
        return self._to_user(self.collection.find_one({"_id": _id, "deleted": {"$ne": True}}))

    def create(self, user: User) -> str:
        try:
            return create_document(self.db, "user", user)
        except DuplicateKeyError:
            raise ValidationFailed("User already exists")

    def atomic_update_otp(self, user_id: str, otp_code: str, expires_at: datetime, now: datetime) -> bool:
        """Replace any pending OTP with a fresh code/expiry pair."""
        result = self.collection.update_one(
            {"_id": parse_object_id(user_id)},
            {"$set": {"otp_code": otp_code, "otp_expires_at": expires_at, "updated_at": now}},
        )
        return result.matched_count == 1

    def find_by_email_and_otp(self, email: str, otp_code: str, now: datetime) -> Optional[User]:
        """Match a live OTP and consume it in the same operation.

        Returns the user with the OTP fields already cleared, or None when
        the email, the code or the expiry does not match.
        """
        doc = self.collection.find_one_and_update(
            {
                "email": email,
                "deleted": {"$ne": True},
                "otp_code": otp_code,
                "otp_expires_at": {"$gt": now},
            },
            {"$set": {"otp_code": None, "otp_expires_at": None, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_user(doc)

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> Optional[User]:
        doc = self.collection.find_one_and_update(
            {"_id": parse_object_id(user_id), "deleted": {"$ne": True}},
            {
                "$set": {
                    "password_hash": password_hash,
                    "otp_code": None,
                    "otp_expires_at": None,
                    "updated_at": now,
                },
                "$inc": {"token_version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._to_user(doc)

    def list_by_role(self, role: str) -> List[User]:
        return [self._to_user(d) for d in self.collection.find({"role": role}).sort("created_at", 1)]

    def set_deleted(self, email: str, role: str, deleted: bool, now: datetime) -> Optional[User]:
        doc = self.collection.find_one_and_update(
            {"email": email, "role": role},
            {"$set": {"deleted": deleted, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_user(doc)


class ProductRepository:
    def __init__(self, db: Database):
        self.collection = db["product"]
        self.db = db

    @staticmethod
    def _to_product(doc: Optional[dict]) -> Optional[Product]:
        if doc is None:
            return None
        return Product.model_validate(to_str_id(doc))

    def find_by_id(self, product_id: str) -> Optional[Product]:
        _id = parse_object_id(product_id)
        if _id is None:
            return None
        return self._to_product(self.collection.find_one({"_id": _id}))

    def find_active_by_id(self, product_id: str) -> Optional[Product]:
        product = self.find_by_id(product_id)
        if product is None or not product.is_active:
            return None
        return product

    def find_many(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ids = [oid for oid in (parse_object_id(pid) for pid in set(product_ids)) if oid is not None]
        if not ids:
            return {}
        docs = self.collection.find({"_id": {"$in": ids}})
        products = [self._to_product(d) for d in docs]
        return {p.id: p for p in products}

    def list_active(self, category: Optional[str] = None, q: Optional[str] = None, limit: int = 50) -> List[Product]:
        filt: Dict[str, Any] = {"is_active": True}
        if category:
            filt["category"] = category
        if q:
            filt["name"] = {"$regex": re.escape(q), "$options": "i"}
        return [Product.model_validate(d) for d in get_documents(self.db, "product", filt, limit=limit)]


class CartRepository:
    def __init__(self, db: Database):
        self.collection = db["cart"]

    @staticmethod
    def _to_cart(doc: Optional[dict]) -> Optional[Cart]:
        if doc is None:
            return None
        return Cart.model_validate(to_str_id(doc))

    def find_by_user(self, user_id: str) -> Optional[Cart]:
        return self._to_cart(self.collection.find_one({"user_id": user_id}))

    def ensure_cart(self, user_id: str, now: datetime) -> None:
        try:
            self.collection.update_one(
                {"user_id": user_id},
                {"$setOnInsert": {"user_id": user_id, "items": [], "created_at": now, "updated_at": now}},
                upsert=True,
            )
        except DuplicateKeyError:
            # A concurrent request inserted the cart first
            logger.debug("Cart for %s created concurrently", user_id)

    def increment_line(
        self,
        user_id: str,
        line_key: str,
        quantity: int,
        price: float,
        discount_price: Optional[float],
        now: datetime,
    ) -> Optional[Cart]:
        result = self.collection.update_one(
            {"user_id": user_id, "items.line_key": line_key},
            {
                "$inc": {"items.$.quantity": quantity},
                "$set": {
                    "items.$.price": price,
                    "items.$.discount_price": discount_price,
                    "items.$.updated_at": now,
                    "updated_at": now,
                },
            },
        )
        if result.matched_count == 0:
            return None
        return self.find_by_user(user_id)

    def push_line(self, user_id: str, item: CartItem, now: datetime) -> Optional[Cart]:
        """Append a line unless one with the same line_key is already present."""
        doc = self.collection.find_one_and_update(
            {"user_id": user_id, "items.line_key": {"$ne": item.line_key}},
            {"$push": {"items": item.model_dump()}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_cart(doc)

    def pull_line(self, user_id: str, item_id: str, now: datetime) -> Optional[Cart]:
        """Remove a line; returns the cart as it was before the removal."""
        doc = self.collection.find_one_and_update(
            {"user_id": user_id, "items.item_id": item_id},
            {"$pull": {"items": {"item_id": item_id}}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.BEFORE,
        )
        return self._to_cart(doc)

    def set_line_quantity(self, user_id: str, item_id: str, quantity: int, now: datetime) -> Optional[Cart]:
        result = self.collection.update_one(
            {"user_id": user_id, "items.item_id": item_id},
            {"$set": {"items.$.quantity": quantity, "items.$.updated_at": now, "updated_at": now}},
        )
        if result.matched_count == 0:
            return None
        return self.find_by_user(user_id)

    def clear_items(self, user_id: str, now: datetime) -> Optional[Cart]:
        """Empty the cart; returns the cart as it was before clearing."""
        doc = self.collection.find_one_and_update(
            {"user_id": user_id},
            {"$set": {"items": [], "updated_at": now}},
            return_document=ReturnDocument.BEFORE,
        )
        return self._to_cart(doc)
