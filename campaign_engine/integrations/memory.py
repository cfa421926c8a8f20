"""In-process adapters for local runs and tests."""

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..core.exceptions import ContactDirectoryError
from ..core.logging import get_logger
from ..models.core import ActionType, ContactContext, ContactMutation, RenderedContent
from .base import ContactDirectory, MessageChannel, Notifier, SendResult

logger = get_logger(__name__)


class SentMessage:
    """A message recorded by ``InMemoryMessageChannel``."""

    def __init__(self, tenant_id: str, contact_id: str, content: RenderedContent,
                 idempotency_key: Optional[str], external_message_id: str):
        self.tenant_id = tenant_id
        self.contact_id = contact_id
        self.content = content
        self.idempotency_key = idempotency_key
        self.external_message_id = external_message_id


class InMemoryMessageChannel(MessageChannel):
    """Records messages instead of sending them.

    Failures can be queued with ``fail_next`` to exercise retry handling.
    """

    def __init__(self):
        self.sent: List[SentMessage] = []
        self._by_key: Dict[str, SendResult] = {}
        self._failures: List[Exception] = []
        self._lock = threading.Lock()

    def fail_next(self, *errors: Exception):
        with self._lock:
            self._failures.extend(errors)

    def send(self, tenant_id: str, contact_id: str, content: RenderedContent,
             idempotency_key: Optional[str] = None) -> SendResult:
        with self._lock:
            if self._failures:
                raise self._failures.pop(0)
            if idempotency_key and idempotency_key in self._by_key:
                return self._by_key[idempotency_key]

            result = SendResult(external_message_id=f"msg-{uuid.uuid4().hex[:12]}")
            self.sent.append(SentMessage(tenant_id, contact_id, content, idempotency_key,
                                         result.external_message_id))
            if idempotency_key:
                self._by_key[idempotency_key] = result
        logger.debug(f"Recorded message to contact '{contact_id}'")
        return result

    def messages_for(self, contact_id: str) -> List[SentMessage]:
        return [message for message in self.sent if message.contact_id == contact_id]


class InMemoryContactDirectory(ContactDirectory):
    """Dictionary-backed contact records keyed by (tenant, contact)."""

    def __init__(self):
        self._contacts: Dict[Tuple[str, str], ContactContext] = {}
        self._lists: Dict[Tuple[str, str], set] = {}
        self.mutations: List[Tuple[str, str, ContactMutation]] = []
        self._lock = threading.Lock()

    def upsert_contact(self, tenant_id: str, contact_id: str, name: Optional[str] = None,
                       phone: Optional[str] = None, tags: Optional[List[str]] = None,
                       custom_fields: Optional[dict] = None, last_message_at: Optional[datetime] = None,
                       status: Optional[str] = None, source: Optional[str] = None) -> ContactContext:
        contact = ContactContext(
            contact_id=contact_id,
            tenant_id=tenant_id,
            name=name,
            phone=phone,
            tags=list(tags or []),
            custom_fields=dict(custom_fields or {}),
            last_message_at=last_message_at,
            status=status,
            source=source,
        )
        with self._lock:
            self._contacts[(tenant_id, contact_id)] = contact
        return contact

    def get_contact_context(self, tenant_id: str, contact_id: str) -> ContactContext:
        with self._lock:
            contact = self._contacts.get((tenant_id, contact_id))
            if contact is None:
                raise ContactDirectoryError(f"Contact '{contact_id}' not found", contact_id=contact_id)
            return contact.model_copy(deep=True)

    def apply_mutation(self, tenant_id: str, contact_id: str, mutation: ContactMutation) -> None:
        with self._lock:
            contact = self._contacts.get((tenant_id, contact_id))
            if contact is None:
                raise ContactDirectoryError(f"Contact '{contact_id}' not found", contact_id=contact_id)

            if mutation.action_type == ActionType.ADD_TAG:
                contact.tags = contact.tags + [tag for tag in mutation.tag_ids if tag not in contact.tags]
            elif mutation.action_type == ActionType.REMOVE_TAG:
                contact.tags = [tag for tag in contact.tags if tag not in mutation.tag_ids]
            elif mutation.action_type == ActionType.UPDATE_FIELD:
                contact.custom_fields[mutation.field_name] = mutation.field_value
            elif mutation.action_type == ActionType.ADD_TO_LIST:
                self._lists.setdefault((tenant_id, mutation.list_id), set()).add(contact_id)
            elif mutation.action_type == ActionType.REMOVE_FROM_LIST:
                self._lists.get((tenant_id, mutation.list_id), set()).discard(contact_id)
            self.mutations.append((tenant_id, contact_id, mutation))

    def list_contacts(self, tenant_id: str, tag_ids: Optional[List[str]] = None) -> List[str]:
        with self._lock:
            return sorted(
                contact_id for (tenant, contact_id), contact in self._contacts.items()
                if tenant == tenant_id and (not tag_ids or set(tag_ids) & set(contact.tags))
            )

    def list_members(self, tenant_id: str, list_id: str) -> List[str]:
        return sorted(self._lists.get((tenant_id, list_id), set()))


class InMemoryNotifier(Notifier):
    """Keeps notifications in a list."""

    def __init__(self):
        self.notifications: List[Tuple[str, Optional[str], str]] = []

    def notify(self, tenant_id: str, email: Optional[str], message: str) -> None:
        self.notifications.append((tenant_id, email, message))
        logger.info(f"Notification for tenant '{tenant_id}' to {email or 'team'}: {message}")
