from __future__ import annotations

import inspect
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any

import anyio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from extension_registry import ExtensionContext, ExtensionRegistry, RouteDescriptor
from recordbase.attachments import AttachmentStore, AttachmentTooLarge
from recordbase.auth import authenticate, hash_password, issue_token, optional_identity, verify_password
from recordbase.config import Settings, load_settings
from recordbase.db import Database, get_request_stats, reset_request_stats
from recordbase.errors import (
    InvalidFieldValueError,
    InvalidIdentifierError,
    ReservedCollectionError,
    StorageError,
    UsernameTakenError,
)
from recordbase.rate_limit import AuthRateLimitMiddleware
from recordbase.records_validation import SchemaMarkers, require_public_collection
from recordbase.resources import ResourceReader, ResourceWriter
from recordbase.schema import ColumnReconciler, SchemaProvisioner
from recordbase.stores_db import DbGenericRecordStore, DbUserStore

logger = logging.getLogger("recordbase")
_http_logger = logging.getLogger("recordbase.http")
logging.basicConfig(level=logging.INFO)

REQ_SLOW_MS = 1000.0


class PayloadError(ValueError):
    pass


@dataclass
class Services:
    settings: Settings
    db: Database
    records: DbGenericRecordStore
    users: DbUserStore
    reconciler: ColumnReconciler
    provisioner: SchemaProvisioner
    writer: ResourceWriter
    reader: ResourceReader
    markers: SchemaMarkers
    attachments: AttachmentStore
    extensions: ExtensionRegistry


def build_services(settings: Settings) -> Services:
    db = Database(settings.database_url, slow_ms=settings.query_slow_ms, log_all=settings.query_log_all)
    records = DbGenericRecordStore(db)
    reconciler = ColumnReconciler(db)
    provisioner = SchemaProvisioner(db, reconciler)
    markers = SchemaMarkers(settings.schema_dir)
    extensions = ExtensionRegistry()
    extensions.load(settings.extensions)
    return Services(
        settings=settings,
        db=db,
        records=records,
        users=DbUserStore(db),
        reconciler=reconciler,
        provisioner=provisioner,
        writer=ResourceWriter(records, reconciler, provisioner),
        reader=ResourceReader(records, markers),
        markers=markers,
        attachments=AttachmentStore(settings.upload_dir, settings.upload_url_prefix, settings.max_upload_bytes),
        extensions=extensions,
    )


def _message(message: str, status: int) -> JSONResponse:
    return JSONResponse({"message": message}, status_code=status)


async def _read_payload(request: Request, max_file_bytes: int = 0) -> tuple[dict, dict[str, tuple[str | None, bytes]]]:
    """Body fields plus uploaded files, from JSON, urlencoded or multipart bodies.

    File contents are read up to ``max_file_bytes + 1`` bytes so callers can
    detect an oversized upload; the spooled form is closed before returning.
    """
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        fields: dict = {}
        files: dict[str, tuple[str | None, bytes]] = {}
        async with request.form() as form:
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    files[key] = (value.filename, await value.read(max_file_bytes + 1))
                else:
                    fields[key] = value
        return fields, files
    raw = await request.body()
    if not raw.strip():
        return {}, {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise PayloadError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise PayloadError("Request body must be a JSON object")
    return body, {}


def _to_response(result: Any) -> Response:
    if isinstance(result, Response):
        return result
    if isinstance(result, str):
        return PlainTextResponse(result)
    return JSONResponse(result)


def _extension_endpoint(descriptor: RouteDescriptor, services: Services):
    settings = services.settings

    async def endpoint(request: Request):
        if descriptor.requires_auth:
            user = authenticate(request, settings)
            if isinstance(user, JSONResponse):
                return user
        else:
            user = optional_identity(request, settings)
        ctx = ExtensionContext(request=request, user=user, model=services.records.bind)
        if inspect.iscoroutinefunction(descriptor.handler):
            result = await descriptor.handler(ctx)
        else:
            result = await anyio.to_thread.run_sync(descriptor.handler, ctx)
        return _to_response(result)

    endpoint.__name__ = descriptor.name or getattr(descriptor.handler, "__name__", "extension")
    return endpoint


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    logging.getLogger("recordbase").setLevel(settings.log_level)
    services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.attachments.ensure_root()
        await anyio.to_thread.run_sync(services.users.ensure_table)
        logger.info(
            "startup backend=%s extensions=%s routes=%s declared=%s",
            services.db.dialect.name,
            ",".join(settings.extensions) or "-",
            len(services.extensions),
            ",".join(services.markers.declared()) or "-",
        )
        try:
            yield
        finally:
            services.db.close()

    app = FastAPI(title="recordbase", lifespan=lifespan)
    app.state.services = services
    upload_prefix = services.attachments.url_prefix

    app.add_middleware(
        AuthRateLimitMiddleware,
        enabled=settings.auth_rate_limit_enabled,
        trust_proxy=settings.trust_proxy,
        max_requests=settings.auth_rate_limit_max,
        window_s=settings.auth_rate_limit_window_s,
    )

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        reset_request_stats()
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        db_stats = get_request_stats()
        route = request.scope.get("route")
        route_name = getattr(route, "name", None) or "unknown"
        _http_logger.info(
            "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s db_conn=%s",
            request.method,
            request.url.path,
            response.status_code,
            route_name,
            total_ms,
            db_stats.get("total_ms", 0.0),
            db_stats.get("queries", 0),
            db_stats.get("connections", 0),
        )
        if total_ms >= REQ_SLOW_MS:
            _http_logger.warning(
                "slow_request method=%s path=%s route=%s total_ms=%.1f status=%s",
                request.method,
                request.url.path,
                route_name,
                total_ms,
                response.status_code,
            )
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        if request.url.path.startswith(upload_prefix + "/"):
            response.headers["Access-Control-Allow-Origin"] = "*"
            response.headers["Cross-Origin-Resource-Policy"] = "cross-origin"
        if settings.is_dev:
            response.headers["X-Req-MS"] = f"{total_ms:.1f}"
            response.headers["X-Queries"] = str(db_stats.get("queries", 0))
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            return _message("Not found", 404)
        return _message(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
        return _message("Internal server error", 500)

    app.mount(upload_prefix, StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

    @app.post("/register")
    async def register(request: Request):
        try:
            body, _ = await _read_payload(request)
        except PayloadError as exc:
            return _message(str(exc), 400)
        username = body.get("username")
        password = body.get("password")
        if not isinstance(username, str) or not username or not isinstance(password, str) or not password:
            return _message("Username and password are required", 400)
        password_hash = await anyio.to_thread.run_sync(hash_password, password)
        try:
            user_id = await anyio.to_thread.run_sync(services.users.create, username, password_hash)
        except UsernameTakenError:
            return _message("Username already exists", 400)
        except StorageError as exc:
            logger.error("register_failed username=%s error=%s", username, exc.__cause__ or exc)
            return _message("Error creating user", 500)
        logger.info("user_registered id=%s username=%s", user_id, username)
        return JSONResponse({"token": issue_token(settings, user_id, username)}, status_code=201)

    @app.post("/login")
    async def login(request: Request):
        try:
            body, _ = await _read_payload(request)
        except PayloadError as exc:
            return _message(str(exc), 400)
        username = body.get("username")
        password = body.get("password")
        if not isinstance(username, str) or not isinstance(password, str):
            return _message("Invalid credentials", 401)
        try:
            user = await anyio.to_thread.run_sync(services.users.get_by_username, username)
        except StorageError as exc:
            logger.error("login_failed username=%s error=%s", username, exc.__cause__ or exc)
            return _message("Error finding user", 500)
        stored_hash = user.get("password") if user else None
        if not await anyio.to_thread.run_sync(verify_password, stored_hash, password):
            logger.info("login_rejected username=%s", username)
            return _message("Invalid credentials", 401)
        return {"token": issue_token(settings, user["id"], user["username"])}

    @app.get("/me")
    async def me(request: Request):
        user = authenticate(request, settings)
        if isinstance(user, JSONResponse):
            return user
        return {"user": user}

    for source, descriptor in services.extensions.routes():
        app.add_api_route(
            descriptor.path,
            _extension_endpoint(descriptor, services),
            methods=[descriptor.method.upper()],
            name=f"{source}:{descriptor.name or descriptor.handler.__name__}",
        )

    @app.post("/{collection}")
    async def create_resource(collection: str, request: Request):
        user = authenticate(request, settings)
        if isinstance(user, JSONResponse):
            return user
        try:
            name = require_public_collection(collection)
        except (InvalidIdentifierError, ReservedCollectionError):
            return _message("Not found", 404)
        try:
            body, files = await _read_payload(request, settings.max_upload_bytes)
        except PayloadError as exc:
            return _message(str(exc), 400)
        unexpected = [key for key in files if key != settings.upload_field]
        if unexpected:
            return _message(f"Unexpected file field: {unexpected[0]}", 400)

        stored = None
        upload = files.get(settings.upload_field)
        if upload is not None:
            filename, data = upload
            try:
                stored = await anyio.to_thread.run_sync(services.attachments.store_bytes, filename, data)
            except AttachmentTooLarge:
                return _message("File too large", 413)

        attachment_url = stored["url"] if stored else None
        try:
            result = await anyio.to_thread.run_sync(partial(services.writer.write, name, body, attachment_url))
        except (InvalidIdentifierError, InvalidFieldValueError) as exc:
            if stored:
                services.attachments.delete(stored["storage_key"])
            return _message(str(exc), 400)
        except StorageError as exc:
            if stored:
                services.attachments.delete(stored["storage_key"])
            logger.error("resource_create_failed collection=%s error=%s", name, exc.__cause__ or exc)
            return _message("Error creating resource", 500)
        return JSONResponse(result.record, status_code=201)

    @app.get("/{collection}")
    async def list_resources(collection: str, request: Request):
        return await _read(collection, None, request)

    @app.get("/{collection}/{record_id}")
    async def get_resource(collection: str, record_id: str, request: Request):
        return await _read(collection, record_id, request)

    async def _read(collection: str, record_id: str | None, request: Request):
        user = authenticate(request, settings)
        if isinstance(user, JSONResponse):
            return user
        try:
            outcome = await anyio.to_thread.run_sync(services.reader.read, collection, record_id)
        except (InvalidIdentifierError, ReservedCollectionError):
            return _message("Not found", 404)
        return JSONResponse(outcome.body, status_code=outcome.status_code)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = app.state.services.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
