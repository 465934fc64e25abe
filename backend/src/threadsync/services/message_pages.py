"""Pure helpers over paginated message history.

Pages are kept oldest first; each page's messages ascend by created_at, and
the flattened view across pages ascends as well. Every helper returns a new
list of pages and leaves its input untouched.
"""

import bisect
from typing import Any

from messaging_models import ConfirmedMessage, MessagePage, PendingMessage, ThreadMessage


def flatten(pages: list[MessagePage]) -> list[ThreadMessage]:
    """All loaded messages in display order."""
    return [message for page in pages for message in page.messages]


def find_message(pages: list[MessagePage], message_id: str) -> ThreadMessage | None:
    for page in pages:
        for message in page.messages:
            if message.id == message_id:
                return message
    return None


def has_server_id(pages: list[MessagePage], message_id: str) -> bool:
    return any(
        isinstance(message, ConfirmedMessage) and message.id == message_id
        for page in pages
        for message in page.messages
    )


def _with_messages(page: MessagePage, messages: list[ThreadMessage]) -> MessagePage:
    return page.model_copy(update={"messages": messages})


def append_message(
    pages: list[MessagePage], conversation_id: str, message: ThreadMessage
) -> list[MessagePage]:
    """Add a message after everything loaded, creating a first page if needed."""
    if not pages:
        return [MessagePage(conversation_id=conversation_id, messages=[message])]
    newest = pages[-1]
    return pages[:-1] + [_with_messages(newest, newest.messages + [message])]


def merge_incoming(
    pages: list[MessagePage], conversation_id: str, message: ConfirmedMessage
) -> list[MessagePage]:
    """Insert a pushed message in created_at order, ignoring duplicates.

    A message older than everything loaded is dropped while older pages remain
    unfetched; it will arrive with those pages.
    """
    if has_server_id(pages, message.id):
        return pages
    if not pages:
        return [MessagePage(conversation_id=conversation_id, messages=[message])]

    for index in range(len(pages) - 1, -1, -1):
        page = pages[index]
        if page.messages and message.created_at < page.messages[0].created_at and index > 0:
            continue
        if page.messages and message.created_at < page.messages[0].created_at and page.has_more:
            return pages
        position = bisect.bisect_right(
            [m.created_at for m in page.messages], message.created_at
        )
        messages = page.messages[:position] + [message] + page.messages[position:]
        return pages[:index] + [_with_messages(page, messages)] + pages[index + 1:]
    return pages


def rebase_on_page(page: MessagePage, loaded: list[ThreadMessage]) -> list[MessagePage]:
    """Restart history from a freshly fetched newest page.

    Confirmed messages at or after the page's newest one (sent or pushed while
    the fetch was in flight) are merged back in, and pending messages stay at
    the tail.
    """
    pages = [page]
    newest = page.messages[-1].created_at if page.messages else None
    pending = []
    for message in loaded:
        if isinstance(message, PendingMessage):
            pending.append(message)
        elif newest is None or message.created_at >= newest:
            pages = merge_incoming(pages, page.conversation_id, message)
    for message in pending:
        pages = append_message(pages, page.conversation_id, message)
    return pages


def replace_message(
    pages: list[MessagePage], target_id: str, replacement: ThreadMessage
) -> list[MessagePage]:
    """Swap the message with `target_id` for `replacement` in place.

    If the replacement's server id is already present (a push beat the send
    response), the target is removed instead so no duplicate appears.
    """
    duplicate = (
        isinstance(replacement, ConfirmedMessage)
        and replacement.id != target_id
        and has_server_id(pages, replacement.id)
    )
    next_pages = []
    found = False
    for page in pages:
        ids = [m.id for m in page.messages]
        if target_id not in ids:
            next_pages.append(page)
            continue
        found = True
        position = ids.index(target_id)
        messages = list(page.messages)
        if duplicate:
            del messages[position]
        else:
            messages[position] = replacement
            # a server timestamp can land after later local arrivals
            messages.sort(key=lambda m: m.created_at)
        next_pages.append(_with_messages(page, messages))
    return next_pages if found else pages


def patch_status(pages: list[MessagePage], row: dict[str, Any]) -> list[MessagePage]:
    """Apply server-owned status fields to a loaded confirmed message.

    Unknown ids are ignored; the next fetch of that page re-reads the status.
    """
    message_id = str(row.get("id") or "")
    if not message_id:
        return pages

    updates = {
        name: row[name]
        for name in ("status", "delivered_at", "read_at")
        if row.get(name) is not None
    }
    next_pages = []
    found = False
    for page in pages:
        messages = list(page.messages)
        changed = False
        for index, message in enumerate(messages):
            if isinstance(message, ConfirmedMessage) and message.id == message_id:
                messages[index] = ConfirmedMessage.model_validate({**message.model_dump(), **updates})
                changed = True
        next_pages.append(_with_messages(page, messages) if changed else page)
        found = found or changed
    return next_pages if found else pages
