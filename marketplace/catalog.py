"""
Product catalog operations combining the database and object storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from marketplace.db import DbClient, ProductRecord
from marketplace.storage import StorageClient, build_product_image_key

logger = logging.getLogger(__name__)

PRICE_QUANTUM = Decimal("0.01")


class ProductNotFoundError(Exception):
    """Raised when a product id does not exist."""


class NotProductOwnerError(Exception):
    """Raised when a caller tries to mutate someone else's product."""


@dataclass
class ImageUpload:
    filename: Optional[str]
    content_type: str
    data: bytes


@dataclass
class ProductFields:
    name: str
    description: Optional[str]
    price: Decimal


def _store_image(storage: StorageClient, image: ImageUpload) -> str:
    key = build_product_image_key(image.filename)
    storage.put_bytes(key, image.data, image.content_type)
    logger.info("Uploaded product image %s (%d bytes)", key, len(image.data))
    return key


def product_view(
    product: ProductRecord,
    storage: StorageClient,
    *,
    sign_expires_in: Optional[int] = None,
) -> dict:
    """
    Shape a product for the API.

    When sign_expires_in is given, products with an image also get a
    time-limited signed read URL alongside the raw reference.
    """
    view = product.as_dict()
    view["image_url"] = None
    view["signed_image_url"] = None
    if product.image_key:
        view["image_url"] = storage.object_url(product.image_key)
        if sign_expires_in is not None:
            view["signed_image_url"] = storage.presign_get(
                product.image_key, expires_in=sign_expires_in
            )
    return view


def create_product(
    db: DbClient,
    storage: StorageClient,
    fields: ProductFields,
    owner_id: int,
    image: Optional[ImageUpload] = None,
) -> ProductRecord:
    image_key = _store_image(storage, image) if image else None
    product = db.create_product(
        name=fields.name,
        description=fields.description,
        price=fields.price.quantize(PRICE_QUANTUM),
        image_key=image_key,
        user_id=owner_id,
    )
    logger.info("User %s created product %s", owner_id, product.id)
    return product


def list_products(
    db: DbClient, storage: StorageClient, sign_expires_in: int
) -> list[dict]:
    return [
        product_view(p, storage, sign_expires_in=sign_expires_in)
        for p in db.list_products()
    ]


def list_user_products(
    db: DbClient, storage: StorageClient, owner_id: int, sign_expires_in: int
) -> list[dict]:
    return [
        product_view(p, storage, sign_expires_in=sign_expires_in)
        for p in db.list_products(user_id=owner_id)
    ]


def get_product(
    db: DbClient, storage: StorageClient, product_id: int, sign_expires_in: int
) -> dict:
    product = db.get_product(product_id)
    if not product:
        raise ProductNotFoundError(product_id)
    return product_view(product, storage, sign_expires_in=sign_expires_in)


def _owned_product(db: DbClient, product_id: int, owner_id: int) -> ProductRecord:
    product = db.get_product(product_id)
    if not product:
        raise ProductNotFoundError(product_id)
    if product.user_id != owner_id:
        logger.warning(
            "User %s denied access to product %s owned by %s",
            owner_id,
            product_id,
            product.user_id,
        )
        raise NotProductOwnerError(product_id)
    return product


def _raise_lost_race(db: DbClient, product_id: int) -> None:
    # The ownership predicate matched nothing: the row was deleted or changed hands.
    if db.get_product(product_id) is None:
        raise ProductNotFoundError(product_id)
    raise NotProductOwnerError(product_id)


def update_product(
    db: DbClient,
    storage: StorageClient,
    product_id: int,
    fields: ProductFields,
    owner_id: int,
    image: Optional[ImageUpload] = None,
) -> ProductRecord:
    """
    Overwrite a product's editable fields, replacing its image if one is given.

    The write is conditional on ownership, so a concurrent transfer or delete
    makes it a no-op instead of clobbering another user's row.
    """
    current = _owned_product(db, product_id, owner_id)

    image_key = current.image_key
    if image:
        if current.image_key:
            storage.delete(current.image_key)
        image_key = _store_image(storage, image)

    updated = db.update_owned_product(
        product_id,
        owner_id,
        name=fields.name,
        description=fields.description,
        price=fields.price.quantize(PRICE_QUANTUM),
        image_key=image_key,
    )
    if updated is None:
        if image:
            storage.delete(image_key)
        _raise_lost_race(db, product_id)
    logger.info("User %s updated product %s", owner_id, product_id)
    return updated


def delete_product(
    db: DbClient, storage: StorageClient, product_id: int, owner_id: int
) -> None:
    current = _owned_product(db, product_id, owner_id)
    if current.image_key:
        storage.delete(current.image_key)
    if not db.delete_owned_product(product_id, owner_id):
        _raise_lost_race(db, product_id)
    logger.info("User %s deleted product %s", owner_id, product_id)
