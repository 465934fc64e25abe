"""HTTP transport for the message API."""

import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from messaging_models import (
    ConfirmedMessage,
    ConversationListing,
    ConversationSummary,
    MessagePage,
    MessagingRole,
    sort_conversations,
)
from threadsync.config import Settings, settings as default_settings
from threadsync.cursors import decode_cursor
from threadsync.errors import AuthenticationError, TransportError
from threadsync.models import (
    ConversationListResponse,
    CreateConversationRequest,
    CreateConversationResponse,
    MessagePageResponse,
    SendMessageRequest,
    SendMessageResponse,
)

logger = logging.getLogger(__name__)


class MessagingTransport(Protocol):
    """Request/response calls the stores depend on."""

    async def list_conversations(
        self, role: MessagingRole, business_id: str | None = None
    ) -> ConversationListing: ...

    async def fetch_messages(
        self, conversation_id: str, cursor: str | None = None, limit: int | None = None
    ) -> MessagePage: ...

    async def send_message(self, conversation_id: str, body: str) -> ConfirmedMessage: ...

    async def mark_read(self, conversation_id: str) -> None: ...

    async def create_conversation(
        self, business_id: str, user_id: str | None = None
    ) -> tuple[ConversationSummary, bool]: ...


class HttpMessagingClient:
    """Message API client built on httpx."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = config or default_settings
        self._base_url = (base_url or self._settings.api_base_url).rstrip("/")
        self._token = token if token is not None else self._settings.api_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_headers(self) -> dict:
        """Get headers for API requests."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._get_headers(),
                timeout=self._settings.request_timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Issue a request and map failures onto the error taxonomy."""
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(_error_text(response) or "Not authenticated")
        if response.is_error:
            message = _error_text(response) or f"{method} {path} failed ({response.status_code})"
            raise TransportError(message, status_code=response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {method} {path}") from e

    async def list_conversations(
        self, role: MessagingRole, business_id: str | None = None
    ) -> ConversationListing:
        """Fetch a viewer's conversations, newest first."""
        params = {"role": role.value}
        if role is MessagingRole.BUSINESS and business_id:
            params["business_id"] = business_id

        payload = await self._request("GET", "/api/conversations", params=params)
        try:
            parsed = ConversationListResponse.model_validate(payload or {})
        except ValidationError as e:
            raise TransportError(f"Invalid conversation list payload: {e}") from e

        return ConversationListing(
            role=role,
            business_id=params.get("business_id"),
            conversations=sort_conversations(parsed.data),
        )

    async def fetch_messages(
        self, conversation_id: str, cursor: str | None = None, limit: int | None = None
    ) -> MessagePage:
        """Fetch one page of history, older than `cursor` when given."""
        page_size = min(limit or self._settings.message_page_size, self._settings.message_page_size_max)
        params: dict[str, Any] = {"limit": page_size}
        if cursor:
            params["cursor"] = cursor

        payload = await self._request(
            "GET", f"/api/conversations/{conversation_id}/messages", params=params
        )
        try:
            data = MessagePageResponse.model_validate(payload or {}).data
            messages = [ConfirmedMessage.from_row(row) for row in data.messages]
        except (ValidationError, KeyError) as e:
            raise TransportError(f"Invalid message page payload: {e}") from e

        messages.sort(key=lambda m: m.created_at)
        has_more = data.has_more
        if has_more and decode_cursor(data.next_cursor) is None:
            # Keep the page but stop paginating; the cursor cannot be sent back
            logger.warning(f"Malformed cursor for {conversation_id}, treating history as complete")
            has_more = False
        return MessagePage(
            conversation_id=data.conversation_id,
            messages=messages,
            has_more=has_more,
            next_cursor=data.next_cursor if has_more else None,
        )

    async def send_message(self, conversation_id: str, body: str) -> ConfirmedMessage:
        """Persist a message and return the server copy."""
        request = SendMessageRequest(body=body)
        payload = await self._request(
            "POST",
            f"/api/conversations/{conversation_id}/messages",
            json=request.model_dump(),
        )
        try:
            data = SendMessageResponse.model_validate(payload or {}).data
            return ConfirmedMessage.from_row(data)
        except (ValidationError, KeyError) as e:
            raise TransportError(f"Invalid send response: {e}") from e

    async def mark_read(self, conversation_id: str) -> None:
        """Mark every counterpart message in the conversation as read."""
        await self._request("POST", f"/api/conversations/{conversation_id}/read")

    async def create_conversation(
        self, business_id: str, user_id: str | None = None
    ) -> tuple[ConversationSummary, bool]:
        """Get or create the conversation with a business.

        Returns the conversation and whether it was newly created.
        """
        request = CreateConversationRequest(business_id=business_id, user_id=user_id)
        payload = await self._request(
            "POST", "/api/conversations", json=request.model_dump(exclude_none=True)
        )
        try:
            parsed = CreateConversationResponse.model_validate(payload or {})
        except ValidationError as e:
            raise TransportError(f"Invalid conversation payload: {e}") from e
        logger.info(
            f"Conversation {parsed.data.id} with business {business_id} "
            f"({'created' if parsed.created else 'existing'})"
        )
        return parsed.data, parsed.created


def _error_text(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        return str(error) if error else None
    return None
