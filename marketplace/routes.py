"""
HTTP routes for the marketplace API.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from marketplace import catalog
from marketplace.catalog import (
    ImageUpload,
    NotProductOwnerError,
    ProductFields,
    ProductNotFoundError,
)
from marketplace.config import get_settings
from marketplace.db import DbClient, DuplicateUserError
from marketplace.dependencies import (
    get_current_user,
    get_db_client,
    get_storage_client,
)
from marketplace.schemas import (
    AuthResponse,
    HealthResponse,
    LoginRequest,
    MessageResponse,
    ProductMutationResponse,
    ProductResponse,
    RegisterRequest,
    UserResponse,
)
from marketplace.security import (
    CurrentUser,
    create_access_token,
    hash_password,
    verify_password,
)
from marketplace.storage import StorageClient

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_IMAGE_CONTENT_TYPE = "application/octet-stream"


def _user_exists() -> HTTPException:
    return HTTPException(status_code=400, detail="User already exists")


def _invalid_credentials() -> HTTPException:
    return HTTPException(status_code=400, detail="Invalid credentials")


def _product_fields(name: str, description: Optional[str], price: Decimal) -> ProductFields:
    if not name.strip():
        raise HTTPException(status_code=400, detail="name: Field required")
    return ProductFields(name=name.strip(), description=description, price=price)


def _image_upload(image: UploadFile | None) -> ImageUpload | None:
    if image is None or not image.filename:
        return None
    return ImageUpload(
        filename=image.filename,
        content_type=image.content_type or DEFAULT_IMAGE_CONTENT_TYPE,
        data=image.file.read(),
    )


def _product_error(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, ProductNotFoundError):
        return HTTPException(status_code=404, detail="Product not found")
    return HTTPException(
        status_code=403, detail=f"Not authorized to {action} this product"
    )


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok", message="Server is running")


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
)
def register(payload: RegisterRequest, db: DbClient = Depends(get_db_client)):
    if db.find_user_by_username_or_email(payload.username, payload.email):
        raise _user_exists()
    try:
        user = db.create_user(
            payload.username, payload.email, hash_password(payload.password)
        )
    except DuplicateUserError as exc:
        # Lost a race against a concurrent registration.
        raise _user_exists() from exc
    logger.info("Registered user %s (%s)", user.id, user.username)
    token = create_access_token(user.id, user.username)
    return AuthResponse(
        message="User registered successfully",
        user=UserResponse(**user.as_dict()),
        token=token,
    )


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, db: DbClient = Depends(get_db_client)):
    user = db.get_user_by_email(payload.email)
    if not user:
        logger.warning("Login failed: unknown email")
        raise _invalid_credentials()
    if not verify_password(payload.password, user.password_hash):
        logger.warning("Login failed: bad password for user %s", user.id)
        raise _invalid_credentials()
    token = create_access_token(user.id, user.username)
    return AuthResponse(
        message="Login successful",
        user=UserResponse(**user.as_dict()),
        token=token,
    )


@router.post(
    "/products",
    response_model=ProductMutationResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_product(
    name: str = Form(...),
    description: Optional[str] = Form(None),
    price: Decimal = Form(..., gt=0, max_digits=10, decimal_places=2),
    image: UploadFile | None = File(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    product = catalog.create_product(
        db,
        storage,
        _product_fields(name, description, price),
        current_user.id,
        image=_image_upload(image),
    )
    return ProductMutationResponse(
        message="Product created successfully",
        product=ProductResponse(**catalog.product_view(product, storage)),
    )


@router.get("/products", response_model=list[ProductResponse])
def list_products(
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    expires_in = get_settings().signed_url_expires_in
    return catalog.list_products(db, storage, expires_in)


@router.get("/products/{product_id}", response_model=ProductResponse)
def get_product(
    product_id: int,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    try:
        return catalog.get_product(
            db, storage, product_id, get_settings().signed_url_expires_in
        )
    except ProductNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Product not found") from exc


@router.put("/products/{product_id}", response_model=ProductMutationResponse)
def update_product(
    product_id: int,
    name: str = Form(...),
    description: Optional[str] = Form(None),
    price: Decimal = Form(..., gt=0, max_digits=10, decimal_places=2),
    image: UploadFile | None = File(None),
    current_user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    try:
        product = catalog.update_product(
            db,
            storage,
            product_id,
            _product_fields(name, description, price),
            current_user.id,
            image=_image_upload(image),
        )
    except (ProductNotFoundError, NotProductOwnerError) as exc:
        raise _product_error(exc, "update") from exc
    return ProductMutationResponse(
        message="Product updated successfully",
        product=ProductResponse(**catalog.product_view(product, storage)),
    )


@router.delete("/products/{product_id}", response_model=MessageResponse)
def delete_product(
    product_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    try:
        catalog.delete_product(db, storage, product_id, current_user.id)
    except (ProductNotFoundError, NotProductOwnerError) as exc:
        raise _product_error(exc, "delete") from exc
    return MessageResponse(message="Product deleted successfully")


@router.get("/user/profile", response_model=UserResponse)
def user_profile(
    current_user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    user = db.get_user(current_user.id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return UserResponse(**user.as_dict())


@router.get("/user/products", response_model=list[ProductResponse])
def user_products(
    current_user: CurrentUser = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
):
    expires_in = get_settings().signed_url_expires_in
    return catalog.list_user_products(db, storage, current_user.id, expires_in)
