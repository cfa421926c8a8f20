"""Interfaces of the services the engine talks to."""

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel

from ..models.core import ContactContext, ContactMutation, RenderedContent


class SendResult(BaseModel):
    """Acknowledgement from the delivery channel."""
    external_message_id: str


class MessageChannel(ABC):
    """Outbound message delivery (for example a WhatsApp Business gateway).

    Implementations raise ``TransientDeliveryError`` for timeouts, 5xx and
    connection failures, and ``PermanentDeliveryError`` for rejections that
    will never succeed.
    """

    @abstractmethod
    def send(self, tenant_id: str, contact_id: str, content: RenderedContent,
             idempotency_key: Optional[str] = None) -> SendResult:
        """Deliver one message; repeated calls with the same key must not send twice."""


class ContactDirectory(ABC):
    """Read and write access to contact records owned by the CRM."""

    @abstractmethod
    def get_contact_context(self, tenant_id: str, contact_id: str) -> ContactContext:
        """Current tags, custom fields, last message time, status and source."""

    @abstractmethod
    def apply_mutation(self, tenant_id: str, contact_id: str, mutation: ContactMutation) -> None:
        """Apply an action node's change to the contact."""

    @abstractmethod
    def list_contacts(self, tenant_id: str, tag_ids: Optional[List[str]] = None) -> List[str]:
        """Contact ids of a tenant, optionally restricted to contacts with any of ``tag_ids``."""


class Notifier(ABC):
    """Internal notifications raised by ``send_notification`` actions."""

    @abstractmethod
    def notify(self, tenant_id: str, email: Optional[str], message: str) -> None:
        """Send a notification to a team member."""
