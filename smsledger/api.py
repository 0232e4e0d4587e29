"""HTTP API over the SMS import pipeline and connection manager.

ENDPOINTS (all but the webhook require `Authorization: Bearer <token>`):
  POST   /sms/import    batch import of raw SMS bodies
  GET    /sms/import    SMS import history + stats
  POST   /sms/register  register a phone number for real-time ingestion
  GET    /sms/register  connection status
  PUT    /sms/register  partial settings update
  DELETE /sms/register  deactivate the connection
  POST   /sms/webhook   inbound SMS from the forwarding device
  GET    /sms/webhook   health check
  GET    /sms/pending   pending (sms_pending) ledger rows
  POST   /sms/pending   approve one pending row

Errors share one envelope: {"success": false, "message": ..., "errors"?}.
Schema violations answer 400 rather than FastAPI's default 422.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from smsledger.config import Config
from smsledger.database.models import ConnectionSettings, Permissions
from smsledger.database.repository import Repository
from smsledger.ingest.connections import (
    ConnectionManager,
    ConnectionStore,
    SqliteConnectionStore,
)
from smsledger.ingest.pipeline import ImportPipeline
from smsledger.parsers.sms_parser import SmsParser

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"
MAX_BATCH_MESSAGES = 100


# ── Auth ─────────────────────────────────────────────────


class TokenVerifier:
    """Resolve bearer tokens to user ids from a static token table."""

    def __init__(self, tokens: dict[str, str]):
        self._tokens = dict(tokens)

    @classmethod
    def from_string(cls, raw: str | None) -> TokenVerifier:
        """Build from 'token:user,token2:user2'.

        Raises:
            ValueError: On an entry without both parts.
        """
        tokens = {}
        for entry in (raw or "").split(","):
            entry = entry.strip()
            if not entry:
                continue
            token, sep, user_id = entry.partition(":")
            if not sep or not token.strip() or not user_id.strip():
                raise ValueError(f"Invalid API token entry: {entry.split(':')[0]}:...")
            tokens[token.strip()] = user_id.strip()
        return cls(tokens)

    def verify(self, token: str) -> str | None:
        for known, user_id in self._tokens.items():
            if secrets.compare_digest(token.encode(), known.encode()):
                return user_id
        return None


# ── Request models ───────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ImportRequest(_CamelModel):
    messages: list[str] = Field(min_length=1, max_length=MAX_BATCH_MESSAGES)
    auto_approve: bool = Field(False, alias="autoApprove")
    min_confidence: float = Field(0.7, ge=0.0, le=1.0, alias="minConfidence")


class PermissionsIn(_CamelModel):
    read_sms: bool = Field(False, alias="readSMS")
    auto_process: bool = Field(False, alias="autoProcess")
    real_time_sync: bool = Field(False, alias="realTimeSync")


class SettingsIn(_CamelModel):
    auto_approve: bool = Field(False, alias="autoApprove")
    min_confidence: float = Field(0.7, ge=0.5, le=1.0, alias="minConfidence")
    categories: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list, alias="excludeKeywords")


class SettingsUpdate(_CamelModel):
    auto_approve: bool | None = Field(None, alias="autoApprove")
    min_confidence: float | None = Field(None, ge=0.5, le=1.0, alias="minConfidence")
    categories: list[str] | None = None
    exclude_keywords: list[str] | None = Field(None, alias="excludeKeywords")


class RegisterRequest(_CamelModel):
    phone_number: str = Field(min_length=10, max_length=15, alias="phoneNumber")
    permissions: PermissionsIn = Field(default_factory=PermissionsIn)
    settings: SettingsIn = Field(default_factory=SettingsIn)


class WebhookRequest(_CamelModel):
    phone_number: str = Field(min_length=10, alias="phoneNumber")
    message: str = Field(min_length=1)
    sender: str
    timestamp: datetime | None = None
    message_id: str | None = Field(None, alias="messageId")
    api_key: str | None = Field(None, alias="apiKey")


class ApproveRequest(_CamelModel):
    transaction_id: str = Field(min_length=1, alias="transactionId")


# ── App factory ──────────────────────────────────────────


def create_app(
    repo: Repository,
    config: Config,
    tokens: TokenVerifier,
    base_url: str = "",
    webhook_api_key: str | None = None,
    store: ConnectionStore | None = None,
    parser: SmsParser | None = None,
) -> FastAPI:
    """Wire the pipeline and connection manager into a FastAPI app.

    Args:
        repo: Ledger repository, migrations already applied.
        config: Loaded YAML config.
        tokens: Bearer token table.
        base_url: Public origin, used for the webhook URL handed to clients.
        webhook_api_key: Shared secret for /sms/webhook. None disables the check.
        store: Connection store; SQLite-backed on repo when omitted.
        parser: SmsParser; built from config when omitted.
    """
    parser = parser or SmsParser(config)
    pipeline = ImportPipeline(repo, parser, payment_method=config.payment_method)
    manager = ConnectionManager(
        store or SqliteConnectionStore(repo), repo, parser, config, base_url=base_url,
    )

    app = FastAPI(title="smsledger", version=API_VERSION)
    app.state.pipeline = pipeline
    app.state.manager = manager

    bearer = HTTPBearer(auto_error=False)

    def current_user(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> str:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Authentication required")
        user_id = tokens.verify(credentials.credentials)
        if user_id is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
        return user_id

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        logger.debug("Invalid request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "message": "Invalid request data",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error(
            "Unhandled error on %s %s", request.method, request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"},
        )

    def _internal_error(what: str) -> HTTPException:
        logger.exception("%s failed", what)
        return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Failed to {what}")

    # ── Batch import ─────────────────────────────────────

    @app.post("/sms/import")
    def import_sms(body: ImportRequest, user_id: str = Depends(current_user)):
        try:
            result = pipeline.import_batch(
                user_id,
                body.messages,
                min_confidence=body.min_confidence,
                auto_approve=body.auto_approve,
            )
        except Exception:
            raise _internal_error("import SMS messages")
        return {
            "success": True,
            "data": result.to_dict(config.payment_method),
            "message": result.summary,
        }

    @app.get("/sms/import")
    def import_history(user_id: str = Depends(current_user)):
        try:
            history = pipeline.import_history(user_id)
        except Exception:
            raise _internal_error("fetch SMS import history")
        stats = history["stats"]
        return {
            "success": True,
            "data": {
                "transactions": [t.to_dict() for t in history["transactions"]],
                "stats": {
                    "totalImported": stats["total_imported"],
                    "thisMonth": stats["this_month"],
                    "totalAmount": stats["total_amount"],
                },
            },
        }

    # ── Connection ───────────────────────────────────────

    @app.post("/sms/register")
    def register(body: RegisterRequest, user_id: str = Depends(current_user)):
        try:
            result = manager.register(
                user_id,
                body.phone_number,
                Permissions(**body.permissions.model_dump()),
                ConnectionSettings(**body.settings.model_dump()),
            )
        except Exception:
            raise _internal_error("register SMS connection")
        if not result.success:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, result.error)
        return {
            "success": True,
            "data": {
                "webhookUrl": result.webhook_url,
                "message": "SMS connection registered successfully",
            },
        }

    @app.get("/sms/register")
    def connection_status(user_id: str = Depends(current_user)):
        connection = manager.get_status(user_id)
        if connection is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "No SMS connection found")
        return {"success": True, "data": connection.to_dict()}

    @app.put("/sms/register")
    def update_settings(body: SettingsUpdate, user_id: str = Depends(current_user)):
        partial = body.model_dump(exclude_unset=True)
        try:
            updated = manager.update_settings(user_id, partial)
        except ValueError as e:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e))
        if not updated:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "No SMS connection found")
        return {"success": True, "message": "SMS settings updated successfully"}

    @app.delete("/sms/register")
    def deactivate(user_id: str = Depends(current_user)):
        if not manager.deactivate(user_id):
            raise HTTPException(status.HTTP_404_NOT_FOUND, "No SMS connection found")
        return {"success": True, "message": "SMS connection deactivated"}

    # ── Webhook ──────────────────────────────────────────

    @app.post("/sms/webhook")
    def webhook(
        body: WebhookRequest,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ):
        if webhook_api_key:
            provided = x_api_key or body.api_key or ""
            if not secrets.compare_digest(provided.encode(), webhook_api_key.encode()):
                raise HTTPException(
                    status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature"
                )
        result = manager.handle_inbound_sms(
            body.phone_number,
            body.message,
            body.sender,
            timestamp=body.timestamp,
            message_id=body.message_id,
        )
        return {
            "success": True,
            "data": result.to_dict(),
            "message": (
                "Transaction created successfully"
                if result.transaction_created
                else "SMS processed, no transaction created"
            ),
        }

    @app.get("/sms/webhook")
    def webhook_health():
        return {
            "success": True,
            "message": "SMS webhook endpoint is active",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ── Pending review ───────────────────────────────────

    @app.get("/sms/pending")
    def pending(user_id: str = Depends(current_user)):
        try:
            txns = manager.pending_transactions(user_id)
        except Exception:
            raise _internal_error("fetch pending transactions")
        return {
            "success": True,
            "data": {"transactions": [t.to_dict() for t in txns], "count": len(txns)},
        }

    @app.post("/sms/pending")
    def approve(body: ApproveRequest, user_id: str = Depends(current_user)):
        try:
            approved = manager.approve_pending(user_id, body.transaction_id)
        except Exception:
            raise _internal_error("approve transaction")
        if not approved:
            raise HTTPException(
                status.HTTP_404_NOT_FOUND, "Transaction not found or already processed"
            )
        return {"success": True, "message": "Transaction approved successfully"}

    return app
