"""
Monday.com GraphQL API client.
Docs: https://developer.monday.com/api-reference
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / ".env")

logger = logging.getLogger(__name__)

MONDAY_API_URL = os.environ.get("MONDAY_API_URL", "https://api.monday.com/v2")
MONDAY_API_VERSION = os.environ.get("MONDAY_API_VERSION", "2024-04")
MONDAY_TIMEOUT = 30.0

COLUMN_VALUES_FIELDS = """
    column_values {
      id
      type
      text
      value
    }
"""

GET_BOARDS = """
query GetBoards($ids: [ID!], $limit: Int) {
  boards(ids: $ids, limit: $limit) {
    id
    name
    description
    state
    board_kind
    workspace_id
    items_count
    columns { id title type settings_str description }
  }
}
"""

GET_ITEMS = """
query GetItems($board_id: ID!, $limit: Int, $page: Int) {
  boards(ids: [$board_id]) {
    items_page(limit: $limit, query_params: {page: $page}) {
      cursor
      items {
        id
        name
        state
        created_at
        updated_at
        group { id title }
        %s
      }
    }
  }
}
""" % COLUMN_VALUES_FIELDS

GET_ITEM = """
query GetItem($item_id: ID!) {
  items(ids: [$item_id]) {
    id
    name
    state
    created_at
    updated_at
    board { id name }
    group { id title }
    %s
  }
}
""" % COLUMN_VALUES_FIELDS

GET_WORKSPACES = "query GetWorkspaces { workspaces { id name kind description } }"
GET_ME = "query GetMe { me { id name email photo_thumb is_admin is_guest } }"
GET_ACCOUNT = "query GetAccount { account { id name slug plan { max_users period tier version } } }"

CREATE_ITEM = """
mutation CreateItem($board_id: ID!, $item_name: String!, $group_id: String, $column_values: JSON) {
  create_item(board_id: $board_id, item_name: $item_name, group_id: $group_id, column_values: $column_values) {
    id
    name
    created_at
    %s
  }
}
""" % COLUMN_VALUES_FIELDS

UPDATE_ITEM = """
mutation UpdateItem($item_id: ID!, $board_id: ID!, $column_values: JSON!) {
  change_multiple_column_values(item_id: $item_id, board_id: $board_id, column_values: $column_values) {
    id
    name
    updated_at
    %s
  }
}
""" % COLUMN_VALUES_FIELDS

CHANGE_COLUMN_VALUE = """
mutation ChangeColumnValue($board_id: ID!, $item_id: ID!, $column_id: String!, $value: JSON!) {
  change_column_value(board_id: $board_id, item_id: $item_id, column_id: $column_id, value: $value) { id name }
}
"""

DELETE_ITEM = "mutation DeleteItem($item_id: ID!) { delete_item(item_id: $item_id) { id } }"
ARCHIVE_ITEM = "mutation ArchiveItem($item_id: ID!) { archive_item(item_id: $item_id) { id } }"

CREATE_BOARD = """
mutation CreateBoard($board_name: String!, $board_kind: BoardKind!, $workspace_id: ID, $description: String) {
  create_board(board_name: $board_name, board_kind: $board_kind, workspace_id: $workspace_id, description: $description) {
    id
    name
    description
    state
  }
}
"""

CREATE_WEBHOOK = """
mutation CreateWebhook($board_id: ID!, $url: String!, $event: WebhookEventType!, $config: JSON) {
  create_webhook(board_id: $board_id, url: $url, event: $event, config: $config) { id board_id }
}
"""

DELETE_WEBHOOK = "mutation DeleteWebhook($id: ID!) { delete_webhook(id: $id) { id } }"


class MondayAPIError(Exception):
    """Custom exception for Monday.com API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors


def format_column_values(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop empty values; nested values are sent as JSON strings."""
    formatted = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float)) and not isinstance(value, bool):
            formatted[key] = value
        else:
            formatted[key] = json.dumps(value)
    return formatted


def parse_column_value(column_value: Dict[str, Any]) -> Any:
    raw = column_value.get("value")
    if not raw:
        return column_value.get("text")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


class MondayClient:
    """Client for the Monday.com GraphQL API (personal / OAuth API token)."""

    def __init__(
        self,
        api_token: str,
        endpoint: str = None,
        api_version: str = None,
        timeout: float = MONDAY_TIMEOUT,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.api_token = api_token
        self.endpoint = endpoint or MONDAY_API_URL
        self.api_version = api_version or MONDAY_API_VERSION
        self.timeout = timeout
        self._transport = transport

    async def _execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a GraphQL document and return its `data` object."""
        headers = {
            "Authorization": self.api_token,
            "API-Version": self.api_version,
            "Content-Type": "application/json",
        }
        payload = {"query": query, "variables": {k: v for k, v in (variables or {}).items() if v is not None}}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.endpoint, headers=headers, json=payload)
        except httpx.TimeoutException:
            raise MondayAPIError("Connection timeout. Please check your Monday.com connection")
        except httpx.RequestError as e:
            raise MondayAPIError(f"Connection error: {str(e)}")

        if response.status_code == 401:
            raise MondayAPIError("Authentication failed. Check the Monday.com API token", status_code=401)
        if response.status_code == 429:
            raise MondayAPIError("Rate limit exceeded", status_code=429)
        if response.status_code >= 400:
            logger.error(f"Monday.com API error {response.status_code}: {response.text[:500]}")
            raise MondayAPIError(f"Monday.com API error: {response.status_code}", status_code=response.status_code)

        try:
            body = response.json()
        except ValueError:
            logger.error(f"Monday.com returned a non-JSON response: {response.text[:500]}")
            raise MondayAPIError("Invalid response from Monday.com", status_code=response.status_code)
        if not isinstance(body, dict):
            raise MondayAPIError("Invalid response from Monday.com", status_code=response.status_code)
        if body.get("errors"):
            logger.error(f"Monday.com GraphQL errors: {body['errors']}")
            raise MondayAPIError(f"GraphQL errors: {json.dumps(body['errors'])}", errors=body["errors"])
        return body.get("data") or {}

    # ==================== Queries ====================

    async def get_boards(self, ids: Optional[List[str]] = None, limit: int = 50) -> List[Dict]:
        data = await self._execute(GET_BOARDS, {"ids": ids, "limit": limit})
        return data.get("boards") or []

    async def get_board(self, board_id: str) -> Optional[Dict]:
        boards = await self.get_boards([board_id])
        return boards[0] if boards else None

    async def get_items(self, board_id: str, limit: int = 50, page: int = 1) -> List[Dict]:
        data = await self._execute(GET_ITEMS, {"board_id": board_id, "limit": limit, "page": page})
        boards = data.get("boards") or []
        if not boards:
            return []
        return (boards[0].get("items_page") or {}).get("items") or []

    async def get_item(self, item_id: str) -> Optional[Dict]:
        data = await self._execute(GET_ITEM, {"item_id": item_id})
        items = data.get("items") or []
        return items[0] if items else None

    async def search_items(self, board_id: str, term: str) -> List[Dict]:
        items = await self.get_items(board_id, limit=100)
        term = term.lower()
        return [item for item in items if term in (item.get("name") or "").lower()]

    async def get_workspaces(self) -> List[Dict]:
        data = await self._execute(GET_WORKSPACES)
        return data.get("workspaces") or []

    async def get_me(self) -> Optional[Dict]:
        data = await self._execute(GET_ME)
        return data.get("me")

    async def get_account(self) -> Optional[Dict]:
        data = await self._execute(GET_ACCOUNT)
        return data.get("account")

    # ==================== Mutations ====================

    async def create_item(
        self,
        board_id: str,
        item_name: str,
        group_id: Optional[str] = None,
        column_values: Optional[Dict[str, Any]] = None,
    ) -> Dict:
        data = await self._execute(CREATE_ITEM, {
            "board_id": board_id,
            "item_name": item_name,
            "group_id": group_id,
            "column_values": json.dumps(column_values) if column_values else None,
        })
        return data.get("create_item") or {}

    async def update_item(self, item_id: str, board_id: str, column_values: Dict[str, Any]) -> Dict:
        data = await self._execute(UPDATE_ITEM, {
            "item_id": item_id,
            "board_id": board_id,
            "column_values": json.dumps(column_values),
        })
        return data.get("change_multiple_column_values") or {}

    async def change_column_value(self, board_id: str, item_id: str, column_id: str, value: Any) -> Dict:
        data = await self._execute(CHANGE_COLUMN_VALUE, {
            "board_id": board_id,
            "item_id": item_id,
            "column_id": column_id,
            "value": json.dumps(value),
        })
        return data.get("change_column_value") or {}

    async def delete_item(self, item_id: str) -> Dict:
        data = await self._execute(DELETE_ITEM, {"item_id": item_id})
        return data.get("delete_item") or {}

    async def archive_item(self, item_id: str) -> Dict:
        data = await self._execute(ARCHIVE_ITEM, {"item_id": item_id})
        return data.get("archive_item") or {}

    async def create_board(
        self,
        board_name: str,
        board_kind: str = "public",
        workspace_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict:
        data = await self._execute(CREATE_BOARD, {
            "board_name": board_name,
            "board_kind": board_kind,
            "workspace_id": workspace_id,
            "description": description,
        })
        return data.get("create_board") or {}

    async def create_webhook(self, board_id: str, url: str, event: str, config: Optional[Dict] = None) -> Dict:
        data = await self._execute(CREATE_WEBHOOK, {
            "board_id": board_id,
            "url": url,
            "event": event,
            "config": json.dumps(config) if config else None,
        })
        return data.get("create_webhook") or {}

    async def delete_webhook(self, webhook_id: str) -> Dict:
        data = await self._execute(DELETE_WEBHOOK, {"id": webhook_id})
        return data.get("delete_webhook") or {}

    # ==================== Connection Test ====================

    async def test_connection(self) -> Dict[str, Any]:
        """Test the token by fetching the current user."""
        try:
            user = await self.get_me()
        except MondayAPIError as e:
            return {"ok": False, "message": str(e)}
        if not user:
            return {"ok": False, "message": "Unable to retrieve user information"}
        return {"ok": True, "message": "Connection successful!", "user": user}
