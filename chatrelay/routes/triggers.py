"""
chatrelay: Event trigger endpoints.

The document store pushes one request per event. Handlers never raise, so
these endpoints answer 200 with the handler's result even when the event
was dropped; a non-2xx answer would only make the pusher redeliver.
"""

import logging

from fastapi import APIRouter, Depends

from chatrelay.auth import require_trigger_secret
from chatrelay.schemas import DocumentCreatedEvent, DocumentWrittenEvent, IdentityDeletedEvent
from chatrelay.services.container import Services, get_services

logger = logging.getLogger(__name__)

trigger_router = APIRouter(
    prefix="/triggers",
    tags=["triggers"],
    dependencies=[Depends(require_trigger_secret)],
)


@trigger_router.post("/messages/created")
async def message_created(event: DocumentCreatedEvent, services: Services = Depends(get_services)):
    return await services.notifications.on_message_created(event.document_id, event.data, event.event_id)


@trigger_router.post("/calls/created")
async def call_created(event: DocumentCreatedEvent, services: Services = Depends(get_services)):
    return await services.notifications.on_call_created(event.document_id, event.data, event.event_id)


@trigger_router.post("/stories/created")
async def story_created(event: DocumentCreatedEvent, services: Services = Depends(get_services)):
    return await services.notifications.on_story_created(event.document_id, event.data, event.event_id)


@trigger_router.post("/backups/written")
async def backup_written(event: DocumentWrittenEvent, services: Services = Depends(get_services)):
    return await services.notifications.on_backup_written(
        event.document_id, event.before, event.after, event.event_id
    )


@trigger_router.post("/chat_rooms/messages/created")
async def room_message_created(event: DocumentCreatedEvent, services: Services = Depends(get_services)):
    if not event.parent_id:
        logger.warning("Room message %s pushed without its room id", event.document_id)
        return {"status": "noop", "reason": "parentId missing"}
    return await services.chat.on_room_message_created(
        event.parent_id, event.document_id, event.data, event.event_id
    )


@trigger_router.post("/identity/deleted")
async def identity_deleted(event: IdentityDeletedEvent, services: Services = Depends(get_services)):
    return await services.accounts.on_identity_deleted(event.uid)


@trigger_router.post("/users/updated")
async def user_updated(event: DocumentWrittenEvent, services: Services = Depends(get_services)):
    return await services.settings.on_user_updated(
        event.document_id, event.before, event.after, event.event_id
    )
