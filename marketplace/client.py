"""
HTTP client for the marketplace API.

Credentials are passed explicitly on every call that needs them; the client
itself holds no identity, so one instance can serve several users.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds
DEFAULT_BASE_URL = "http://localhost:5000/api"
DEFAULT_TOKEN_PATH = Path.home() / ".marketplace" / "token"


class MarketplaceApiError(Exception):
    """Raised for any non-2xx response from the API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


@dataclass
class ImageFile:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str | os.PathLike, content_type: str | None = None) -> "ImageFile":
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            filename=path.name,
            data=path.read_bytes(),
            content_type=content_type or guessed or "application/octet-stream",
        )


class TokenStore:
    """Persists a bearer token on disk between CLI invocations."""

    def __init__(self, path: str | os.PathLike = DEFAULT_TOKEN_PATH):
        self.path = Path(path)

    def load(self) -> Optional[str]:
        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return token or None

    def save(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # An existing file keeps its old mode through os.open.
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(token)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MarketplaceClient:
    """
    Thin wrapper over the REST API.

    `session` may be a requests.Session or any object with the same
    `request(method, url, ...)` signature.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        session: Any = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def _request(
        self, method: str, path: str, *, token: Optional[str] = None, **kwargs
    ) -> Any:
        headers = kwargs.pop("headers", {}) or {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        url = f"{self.base_url}{path}"
        response = self.session.request(
            method, url, headers=headers, timeout=self.timeout, **kwargs
        )
        if response.status_code >= 400:
            raise MarketplaceApiError(response.status_code, _error_message(response))
        return response.json()

    def health(self) -> dict:
        return self._request("GET", "/health")

    def register(self, username: str, email: str, password: str) -> dict:
        return self._request(
            "POST",
            "/auth/register",
            json={"username": username, "email": email, "password": password},
        )

    def login(self, email: str, password: str) -> dict:
        return self._request(
            "POST", "/auth/login", json={"email": email, "password": password}
        )

    def profile(self, token: str) -> dict:
        return self._request("GET", "/user/profile", token=token)

    def list_products(self) -> list[dict]:
        return self._request("GET", "/products")

    def get_product(self, product_id: int) -> dict:
        return self._request("GET", f"/products/{product_id}")

    def list_my_products(self, token: str) -> list[dict]:
        return self._request("GET", "/user/products", token=token)

    def create_product(
        self,
        token: str,
        *,
        name: str,
        price: Decimal | str | float,
        description: Optional[str] = None,
        image: Optional[ImageFile] = None,
    ) -> dict:
        return self._request(
            "POST",
            "/products",
            token=token,
            **_product_form(name, description, price, image),
        )["product"]

    def update_product(
        self,
        token: str,
        product_id: int,
        *,
        name: str,
        price: Decimal | str | float,
        description: Optional[str] = None,
        image: Optional[ImageFile] = None,
    ) -> dict:
        return self._request(
            "PUT",
            f"/products/{product_id}",
            token=token,
            **_product_form(name, description, price, image),
        )["product"]

    def delete_product(self, token: str, product_id: int) -> dict:
        return self._request("DELETE", f"/products/{product_id}", token=token)


def _product_form(
    name: str,
    description: Optional[str],
    price: Decimal | str | float,
    image: Optional[ImageFile],
) -> dict:
    data = {"name": name, "price": str(price)}
    if description is not None:
        data["description"] = description
    form: dict = {"data": data}
    if image is not None:
        form["files"] = {"image": (image.filename, image.data, image.content_type)}
    return form


def _error_message(response: Any) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or "Request failed"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return response.text or "Request failed"
