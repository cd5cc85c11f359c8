"""Example extension: greetings plus read-only views of users and tables."""

from __future__ import annotations

from extension_registry import ExtensionContext, RouteDescriptor


def _public_user(row: dict) -> dict:
    return {k: v for k, v in row.items() if k != "password"}


def hello(ctx: ExtensionContext) -> str:
    if ctx.user:
        return f"Hello {ctx.user['username']}!"
    return "Hello World!"


def list_users(ctx: ExtensionContext) -> dict:
    users = ctx.model("users").list()
    return {"users": [_public_user(u) for u in users]}


def list_tables(ctx: ExtensionContext) -> list:
    return ctx.model(None).list_tables()


def hello_private(ctx: ExtensionContext) -> dict:
    users = ctx.model("users").list()
    return {
        "message": f"Hello {ctx.user['username']}! There are {len(users)} users registered.",
        "currentUser": ctx.user,
    }


ROUTES = [
    RouteDescriptor("GET", "/hello", hello),
    RouteDescriptor("GET", "/users", list_users),
    RouteDescriptor("GET", "/tables", list_tables),
    RouteDescriptor("GET", "/hello/private", hello_private, requires_auth=True),
]
