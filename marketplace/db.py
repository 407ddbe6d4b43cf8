"""
Database abstraction for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    delete,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DuplicateUserError(Exception):
    """Raised when a username or email is already registered."""


class DbClient(Protocol):
    """Interface for database access."""

    def create_user(
        self, username: str, email: str, password_hash: str
    ) -> "UserRecord":
        ...

    def find_user_by_username_or_email(
        self, username: str, email: str
    ) -> Optional["UserRecord"]:
        ...

    def get_user(self, user_id: int) -> Optional["UserRecord"]:
        ...

    def get_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def create_product(
        self,
        *,
        name: str,
        description: Optional[str],
        price: Decimal,
        image_key: Optional[str],
        user_id: int,
    ) -> "ProductRecord":
        ...

    def get_product(self, product_id: int) -> Optional["ProductRecord"]:
        ...

    def list_products(
        self, user_id: Optional[int] = None
    ) -> list["ProductRecord"]:
        ...

    def update_owned_product(
        self,
        product_id: int,
        owner_id: int,
        *,
        name: str,
        description: Optional[str],
        price: Decimal,
        image_key: Optional[str],
    ) -> Optional["ProductRecord"]:
        ...

    def delete_owned_product(self, product_id: int, owner_id: int) -> bool:
        ...


@dataclass
class UserRecord:
    id: int
    username: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        # The password hash never leaves the persistence layer.
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "created_at": self.created_at,
        }


@dataclass
class ProductRecord:
    id: int
    name: str
    description: Optional[str]
    price: Decimal
    image_key: Optional[str]
    user_id: int
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "image_key": self.image_key,
            "user_id": self.user_id,
            "created_at": self.created_at,
        }


def _newest_first(products: list[ProductRecord]) -> list[ProductRecord]:
    return sorted(products, key=lambda p: (p.created_at, p.id), reverse=True)


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[int, UserRecord] = {}
        self.products: Dict[int, ProductRecord] = {}
        self._user_ids = itertools.count(1)
        self._product_ids = itertools.count(1)

    def create_user(
        self, username: str, email: str, password_hash: str
    ) -> UserRecord:
        if self.find_user_by_username_or_email(username, email):
            raise DuplicateUserError(username)
        record = UserRecord(
            id=next(self._user_ids),
            username=username,
            email=email,
            password_hash=password_hash,
        )
        self.users[record.id] = record
        return replace(record)

    def find_user_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.username == username or user.email == email:
                return replace(user)
        return None

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.email == email:
                return replace(user)
        return None

    def create_product(
        self,
        *,
        name: str,
        description: Optional[str],
        price: Decimal,
        image_key: Optional[str],
        user_id: int,
    ) -> ProductRecord:
        if user_id not in self.users:
            raise ValueError(f"Unknown user_id {user_id}")
        record = ProductRecord(
            id=next(self._product_ids),
            name=name,
            description=description,
            price=price,
            image_key=image_key,
            user_id=user_id,
        )
        self.products[record.id] = record
        return replace(record)

    def get_product(self, product_id: int) -> Optional[ProductRecord]:
        product = self.products.get(product_id)
        return replace(product) if product else None

    def list_products(self, user_id: Optional[int] = None) -> list[ProductRecord]:
        items = [
            replace(p)
            for p in self.products.values()
            if user_id is None or p.user_id == user_id
        ]
        return _newest_first(items)

    def update_owned_product(
        self,
        product_id: int,
        owner_id: int,
        *,
        name: str,
        description: Optional[str],
        price: Decimal,
        image_key: Optional[str],
    ) -> Optional[ProductRecord]:
        product = self.products.get(product_id)
        if not product or product.user_id != owner_id:
            return None
        product.name = name
        product.description = description
        product.price = price
        product.image_key = image_key
        return replace(product)

    def delete_owned_product(self, product_id: int, owner_id: int) -> bool:
        product = self.products.get(product_id)
        if not product or product.user_id != owner_id:
            return False
        del self.products[product_id]
        return True


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        engine_kwargs = {"future": True, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            username=row.username,
            email=row.email,
            password_hash=row.password,
            created_at=_as_utc(row.created_at),
        )

    def _to_product_record(self, row: "ProductRow") -> ProductRecord:
        return ProductRecord(
            id=row.id,
            name=row.name,
            description=row.description,
            price=row.price,
            image_key=row.image_key,
            user_id=row.user_id,
            created_at=_as_utc(row.created_at),
        )

    def create_user(
        self, username: str, email: str, password_hash: str
    ) -> UserRecord:
        with self.Session() as session:
            row = UserRow(
                username=username,
                email=email,
                password=password_hash,
                created_at=_utcnow(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateUserError(username) from exc
            session.refresh(row)
            return self._to_user_record(row)

    def find_user_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = (
                select(UserRow)
                .where(or_(UserRow.username == username, UserRow.email == email))
                .limit(1)
            )
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.email == email)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def create_product(
        self,
        *,
        name: str,
        description: Optional[str],
        price: Decimal,
        image_key: Optional[str],
        user_id: int,
    ) -> ProductRecord:
        with self.Session() as session:
            row = ProductRow(
                name=name,
                description=description,
                price=price,
                image_key=image_key,
                user_id=user_id,
                created_at=_utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_product_record(row)

    def get_product(self, product_id: int) -> Optional[ProductRecord]:
        with self.Session() as session:
            row = session.get(ProductRow, product_id)
            return self._to_product_record(row) if row else None

    def list_products(self, user_id: Optional[int] = None) -> list[ProductRecord]:
        with self.Session() as session:
            stmt = select(ProductRow)
            if user_id is not None:
                stmt = stmt.where(ProductRow.user_id == user_id)
            stmt = stmt.order_by(ProductRow.created_at.desc(), ProductRow.id.desc())
            rows = session.execute(stmt).scalars().all()
            return [self._to_product_record(row) for row in rows]

    def update_owned_product(
        self,
        product_id: int,
        owner_id: int,
        *,
        name: str,
        description: Optional[str],
        price: Decimal,
        image_key: Optional[str],
    ) -> Optional[ProductRecord]:
        with self.Session() as session:
            stmt = (
                update(ProductRow)
                .where(ProductRow.id == product_id, ProductRow.user_id == owner_id)
                .values(
                    name=name,
                    description=description,
                    price=price,
                    image_key=image_key,
                )
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            if result.rowcount == 0:
                return None
            row = session.get(ProductRow, product_id)
            return self._to_product_record(row) if row else None

    def delete_owned_product(self, product_id: int, owner_id: int) -> bool:
        with self.Session() as session:
            stmt = (
                delete(ProductRow)
                .where(ProductRow.id == product_id, ProductRow.user_id == owner_id)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount > 0


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ProductRow(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    image_key = Column(String(512), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
