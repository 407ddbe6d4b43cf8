"""
Command-line front end for the marketplace API.

Examples:
    marketplace-cli register alice alice@example.com s3cret
    marketplace-cli products add --name Lamp --price 19.99 --image lamp.jpg
    marketplace-cli products mine
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Optional

import requests

from marketplace.client import (
    DEFAULT_BASE_URL,
    DEFAULT_TOKEN_PATH,
    ImageFile,
    MarketplaceApiError,
    MarketplaceClient,
    TokenStore,
)

logger = logging.getLogger(__name__)


class NotLoggedInError(Exception):
    pass


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace API client")
    parser.add_argument(
        "--base-url",
        default=os.environ.get("MARKETPLACE_API_URL", DEFAULT_BASE_URL),
        help="API root, including the /api prefix",
    )
    parser.add_argument(
        "--token-file",
        default=str(DEFAULT_TOKEN_PATH),
        help="Where the session token is kept between runs",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    commands = parser.add_subparsers(dest="command", required=True)

    register = commands.add_parser("register", help="Create an account and log in")
    register.add_argument("username")
    register.add_argument("email")
    register.add_argument("password")

    login = commands.add_parser("login", help="Log in and remember the token")
    login.add_argument("email")
    login.add_argument("password")

    commands.add_parser("logout", help="Forget the stored token")
    commands.add_parser("profile", help="Show the logged-in user")
    commands.add_parser("health", help="Check the server")

    products = commands.add_parser("products", help="Product operations")
    product_commands = products.add_subparsers(dest="product_command", required=True)
    product_commands.add_parser("list", help="All products, newest first")
    product_commands.add_parser("mine", help="Your products")

    show = product_commands.add_parser("show", help="One product")
    show.add_argument("product_id", type=int)

    for name in ("add", "edit"):
        sub = product_commands.add_parser(name, help=f"{name.title()} a product")
        if name == "edit":
            sub.add_argument("product_id", type=int)
        sub.add_argument("--name", required=True)
        sub.add_argument("--price", required=True)
        sub.add_argument("--description")
        sub.add_argument("--image", help="Path to an image file")

    delete = product_commands.add_parser("delete", help="Delete one of your products")
    delete.add_argument("product_id", type=int)
    return parser


def _require_token(store: TokenStore) -> str:
    token = store.load()
    if not token:
        raise NotLoggedInError("Not logged in; run `login` or `register` first")
    return token


def run(
    args: argparse.Namespace,
    client: MarketplaceClient,
    store: TokenStore,
) -> Any:
    """Execute one parsed command and return the JSON-able result."""
    if args.command == "health":
        return client.health()
    if args.command == "register":
        result = client.register(args.username, args.email, args.password)
        store.save(result["token"])
        return result["user"]
    if args.command == "login":
        result = client.login(args.email, args.password)
        store.save(result["token"])
        return result["user"]
    if args.command == "logout":
        store.clear()
        return {"message": "Logged out"}
    if args.command == "profile":
        return client.profile(_require_token(store))

    action = args.product_command
    if action == "list":
        return client.list_products()
    if action == "show":
        return client.get_product(args.product_id)
    if action == "mine":
        return client.list_my_products(_require_token(store))
    if action == "delete":
        return client.delete_product(_require_token(store), args.product_id)

    token = _require_token(store)
    image = ImageFile.from_path(args.image) if args.image else None
    fields = dict(
        name=args.name,
        price=args.price,
        description=args.description,
        image=image,
    )
    if action == "add":
        return client.create_product(token, **fields)
    return client.update_product(token, args.product_id, **fields)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    logger.debug("Using API at %s", args.base_url)
    client = MarketplaceClient(args.base_url)
    store = TokenStore(args.token_file)
    try:
        result = run(args, client, store)
    except MarketplaceApiError as exc:
        if exc.status_code == 403 and args.command == "profile":
            # The stored token was rejected; drop it like a logout.
            store.clear()
        print(f"Error ({exc.status_code}): {exc.message}", file=sys.stderr)
        return 1
    except NotLoggedInError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except requests.RequestException as exc:
        print(f"Could not reach {args.base_url}: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
