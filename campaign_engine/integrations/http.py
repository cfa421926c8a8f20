"""HTTP adapters for the messaging gateway and the CRM contact service."""

from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from ..core.error_recovery import CircuitBreaker
from ..core.exceptions import (
    ContactDirectoryError,
    PermanentDeliveryError,
    TransientDeliveryError,
    TransientError,
)
from ..core.logging import get_logger
from ..models.core import ContactContext, ContactMutation, RenderedContent
from .base import ContactDirectory, MessageChannel, Notifier, SendResult

logger = get_logger(__name__)


def _build_session(api_key: Optional[str]) -> requests.Session:
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
    if api_key:
        session.headers["Authorization"] = f"Bearer {api_key}"
    return session


class HttpMessageChannel(MessageChannel):
    """Delivers messages through the gateway's ``POST /messages`` endpoint."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or _build_session(api_key)
        self._breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60.0,
            expected_exception=TransientDeliveryError,
            name="message_channel",
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    def send(self, tenant_id: str, contact_id: str, content: RenderedContent,
             idempotency_key: Optional[str] = None) -> SendResult:
        try:
            return self._breaker.call(self._post, tenant_id, contact_id, content, idempotency_key)
        except TransientDeliveryError:
            raise
        except TransientError as e:
            # Open circuit
            raise TransientDeliveryError(e.message)

    def _post(self, tenant_id: str, contact_id: str, content: RenderedContent,
              idempotency_key: Optional[str]) -> SendResult:
        payload: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            **content.model_dump(exclude_none=True),
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        try:
            response = self._session.post(
                f"{self.base_url}/messages", json=payload, headers=headers, timeout=self.timeout
            )
        except requests.Timeout:
            raise TransientDeliveryError(f"Message channel timed out after {self.timeout}s")
        except requests.ConnectionError as e:
            raise TransientDeliveryError(f"Message channel unreachable: {e}")
        except requests.RequestException as e:
            raise TransientDeliveryError(f"Message channel request failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"Message channel returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"Message rejected with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            raise TransientDeliveryError(
                f"Message channel returned an unexpected body: {type(body).__name__}",
                status_code=response.status_code
            )
        message_id = body.get("message_id") or body.get("id")
        if not message_id:
            raise TransientDeliveryError("Message channel response did not include a message id")
        logger.debug(f"Message to contact '{contact_id}' accepted as {message_id}")
        return SendResult(external_message_id=str(message_id))


class HttpContactDirectory(ContactDirectory):
    """Reads and updates contacts through the CRM's REST API."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or _build_session(api_key)

    def get_contact_context(self, tenant_id: str, contact_id: str) -> ContactContext:
        body = self._request("GET", f"/tenants/{tenant_id}/contacts/{contact_id}", contact_id)
        body.setdefault("contact_id", contact_id)
        body.setdefault("tenant_id", tenant_id)
        try:
            return ContactContext.model_validate(body)
        except ValidationError as e:
            raise ContactDirectoryError(f"Contact directory returned a malformed contact: {e}",
                                        contact_id=contact_id)

    def apply_mutation(self, tenant_id: str, contact_id: str, mutation: ContactMutation) -> None:
        self._request(
            "POST",
            f"/tenants/{tenant_id}/contacts/{contact_id}/mutations",
            contact_id,
            json=mutation.model_dump(mode="json", exclude_none=True),
        )

    def list_contacts(self, tenant_id: str, tag_ids: Optional[List[str]] = None) -> List[str]:
        params = {"tag_ids": ",".join(tag_ids)} if tag_ids else None
        body = self._request("GET", f"/tenants/{tenant_id}/contacts", None, params=params)
        return [str(item["contact_id"] if isinstance(item, dict) else item) for item in body.get("contacts", [])]

    def _request(self, method: str, path: str, contact_id: Optional[str], **kwargs) -> Dict[str, Any]:
        try:
            response = self._session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ContactDirectoryError(f"Contact directory request {method} {path} failed: {e}",
                                        contact_id=contact_id)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise ContactDirectoryError(f"Contact directory returned invalid JSON: {e}", contact_id=contact_id)
        if not isinstance(body, dict):
            raise ContactDirectoryError(f"Contact directory returned a {type(body).__name__} instead of an object",
                                        contact_id=contact_id)
        return body


class HttpNotifier(Notifier):
    """Posts team notifications to the CRM's notification endpoint."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or _build_session(api_key)

    def notify(self, tenant_id: str, email: Optional[str], message: str) -> None:
        try:
            response = self._session.post(
                f"{self.base_url}/tenants/{tenant_id}/notifications",
                json={"email": email, "message": message},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientError(f"Notification delivery failed: {e}")
