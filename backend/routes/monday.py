"""Monday.com integration endpoints: connection, boards, items and webhooks."""
import logging
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from dependencies import AdminContext, Permissions, get_admin_context, get_supabase_client
from errors import NotFoundError, ServiceError, ValidationFailedError, internal_error
from integrations.monday_client import MondayClient
from integrations.store import IntegrationStore, public_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/monday", tags=["monday"])

manage_integrations = get_admin_context(Permissions.INTEGRATIONS_MANAGE)

WEBHOOK_PATH = "/api/integrations/monday/webhook"


# ============ Request Models ============

class ConnectionRequest(BaseModel):
    api_token: str
    name: Optional[str] = None
    description: Optional[str] = None


class BoardCreateRequest(BaseModel):
    board_name: str
    board_kind: str = "public"
    workspace_id: Optional[str] = None
    description: Optional[str] = None


class ItemCreateRequest(BaseModel):
    board_id: str
    item_name: str
    group_id: Optional[str] = None
    column_values: Optional[Dict[str, Any]] = None


class ItemUpdateRequest(BaseModel):
    item_id: str
    board_id: str
    column_values: Dict[str, Any]


class WebhookCreateRequest(BaseModel):
    board_id: str
    event: str
    url: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


def get_monday_client_factory():
    """Builds a client from an API token; overridden in tests."""
    return MondayClient


async def _connected_client(ctx: AdminContext, supabase, client_factory) -> MondayClient:
    token = await IntegrationStore(supabase).get_api_token(ctx.organization_id)
    if not token:
        raise NotFoundError("No active Monday.com connection found")
    return client_factory(token)


def _public_base_url() -> str:
    return (os.environ.get("BACKEND_PUBLIC_URL") or os.environ.get("RENDER_EXTERNAL_URL") or "").rstrip("/")


# ============ Connection ============

@router.get("/connection")
async def get_connection(
    test_token: Optional[str] = None,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    """Test a candidate token, or test the stored connection"""
    if test_token:
        result = await client_factory(test_token).test_connection()
        return {"success": result["ok"], "user": result.get("user"), "error": None if result["ok"] else result["message"]}

    store = IntegrationStore(supabase)
    try:
        connection = await store.get_connection(ctx.organization_id)
        token = await store.get_api_token(ctx.organization_id) if connection else None
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error loading Monday.com connection: {e}")
        raise internal_error("load Monday.com connection", e)

    if not connection:
        raise NotFoundError("No active Monday.com connection found")
    if not token:
        raise ValidationFailedError("API token not found in connection")

    result = await client_factory(token).test_connection()
    view = public_view(connection)
    return {
        "success": result["ok"],
        "connection": {
            "id": view.get("id"),
            "name": view.get("name"),
            "status": view.get("status"),
            "created_at": view.get("created_at"),
            "credentials": view.get("credentials"),
        },
        "user": result.get("user"),
        "error": None if result["ok"] else result["message"],
    }


@router.post("/connection")
async def save_connection(
    request: ConnectionRequest,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    """Verify the token against Monday.com, then store it encrypted"""
    client = client_factory(request.api_token)
    result = await client.test_connection()
    if not result["ok"]:
        raise ValidationFailedError("Invalid API token", details=result["message"])
    account = await client.get_account()

    try:
        connection = await IntegrationStore(supabase).save_connection(
            ctx.organization_id,
            request.api_token,
            name=request.name,
            description=request.description,
            account=account,
            user=result.get("user"),
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error saving Monday.com connection: {e}")
        raise internal_error("save Monday.com connection", e)

    logger.info(f"Monday.com connected for org {ctx.organization_id} by {ctx.user_id}")
    return {"success": True, "connection": public_view(connection), "user": result.get("user")}


@router.delete("/connection")
async def delete_connection(
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
):
    try:
        await IntegrationStore(supabase).remove_connection(ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error removing Monday.com connection: {e}")
        raise internal_error("remove Monday.com connection", e)
    return {"success": True}


# ============ Boards ============

@router.get("/boards")
async def get_boards(
    ids: Optional[str] = None,
    board_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    client = await _connected_client(ctx, supabase, client_factory)
    if board_id:
        board = await client.get_board(board_id)
        if not board:
            raise NotFoundError("Board not found")
        return {"board": board}

    board_ids = [i for i in ids.split(",") if i] if ids else None
    boards = await client.get_boards(board_ids, limit)
    return {"boards": boards, "count": len(boards)}


@router.post("/boards", status_code=201)
async def create_board(
    request: BoardCreateRequest,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    client = await _connected_client(ctx, supabase, client_factory)
    board = await client.create_board(
        request.board_name,
        board_kind=request.board_kind,
        workspace_id=request.workspace_id,
        description=request.description,
    )
    return {"success": True, "board": board}


# ============ Items ============

@router.get("/items")
async def get_items(
    board_id: Optional[str] = None,
    item_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    """One item by id, a board page, or a name search within a board"""
    client = await _connected_client(ctx, supabase, client_factory)
    if item_id:
        item = await client.get_item(item_id)
        if not item:
            raise NotFoundError("Item not found")
        return {"item": item}

    if not board_id:
        raise ValidationFailedError("board_id or item_id is required")
    if search:
        items = await client.search_items(board_id, search)
    else:
        items = await client.get_items(board_id, limit=limit, page=page)
    return {"items": items, "count": len(items)}


@router.post("/items", status_code=201)
async def create_item(
    request: ItemCreateRequest,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    client = await _connected_client(ctx, supabase, client_factory)
    item = await client.create_item(
        request.board_id, request.item_name, request.group_id, request.column_values
    )
    return {"success": True, "item": item}


@router.patch("/items")
async def update_item(
    request: ItemUpdateRequest,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    client = await _connected_client(ctx, supabase, client_factory)
    item = await client.update_item(request.item_id, request.board_id, request.column_values)
    return {"success": True, "item": item}


@router.delete("/items")
async def delete_item(
    item_id: str,
    archive: bool = False,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    client = await _connected_client(ctx, supabase, client_factory)
    if archive:
        await client.archive_item(item_id)
    else:
        await client.delete_item(item_id)
    return {"success": True, "archived": archive}


# ============ Webhooks ============

@router.post("/webhooks", status_code=201)
async def create_webhook(
    request: WebhookCreateRequest,
    ctx: AdminContext = Depends(manage_integrations),
    supabase=Depends(get_supabase_client),
    client_factory=Depends(get_monday_client_factory),
):
    """Register a board webhook pointing back at this service"""
    store = IntegrationStore(supabase)
    connection = await store.get_connection(ctx.organization_id)
    token = await store.get_api_token(ctx.organization_id) if connection else None
    if not token:
        raise NotFoundError("No active Monday.com connection found")

    url = request.url
    if not url:
        base = _public_base_url()
        if not base:
            raise ValidationFailedError("url is required when BACKEND_PUBLIC_URL is not set")
        url = f"{base}{WEBHOOK_PATH}?integration_id={connection['id']}"

    webhook = await client_factory(token).create_webhook(request.board_id, url, request.event, request.config)
    try:
        await store.add_webhook(connection, {
            "id": webhook.get("id"),
            "board_id": webhook.get("board_id") or request.board_id,
            "event": request.event,
            "url": url,
        })
    except Exception as e:
        logger.error(f"Webhook {webhook.get('id')} created but not stored: {e}")
        raise internal_error("store webhook", e)
    return {"success": True, "webhook": webhook}


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    integration_id: Optional[str] = None,
    supabase=Depends(get_supabase_client),
):
    """Incoming Monday.com events. Answers the URL challenge and always acknowledges with 200."""
    try:
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError(f"expected a JSON object, got {type(body).__name__}")
        if "challenge" in body:
            return {"challenge": body["challenge"]}

        event = body.get("event") or {}
        if not isinstance(event, dict):
            raise ValueError(f"expected event to be an object, got {type(event).__name__}")
        event_type = event.get("type")
        logger.info(
            f"Monday.com webhook received: {event_type} board={event.get('boardId')} item={event.get('pulseId')}"
        )

        if not integration_id:
            logger.warning("Monday.com webhook without integration_id")
            return {"received": True}

        store = IntegrationStore(supabase)
        connection = await store.get_by_id(integration_id)
        if not connection:
            logger.warning(f"No active Monday.com integration {integration_id} for webhook")
            return {"received": True}
        await store.record_event(connection, event_type, body)
    except Exception as e:
        logger.error(f"Failed to process Monday.com webhook event: {e}")
        return {"received": True, "error": "Processing failed"}

    return {"received": True, "event": event_type, "itemId": event.get("pulseId")}
