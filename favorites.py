"""Favorite products per identity, one "favorite" document per (user, product)."""
from typing import List, Tuple

import database
import notices
from notices import Notice
from schemas import Favorite


def favorite_ids(user_id: str) -> List[str]:
    return [doc["product_id"] for doc in database.get_documents("favorite", {"user_id": user_id})]


def toggle_favorite(user_id: str, product_id: str) -> Tuple[List[str], Notice]:
    existing = database.get_documents("favorite", {"user_id": user_id, "product_id": product_id}, limit=1)
    if existing:
        database.delete_document("favorite", existing[0]["id"])
        notice = notices.error("Product removed from favorites", 1500)
    else:
        database.create_document("favorite", Favorite(user_id=user_id, product_id=product_id))
        notice = notices.success("Product added to favorites", 1500)
    return favorite_ids(user_id), notice
