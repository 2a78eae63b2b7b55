"""
Messaging credentials.

Credentials are configuration: the service reads them, never writes them.
The account named by BUSINESS_OWNER_ID owns the configured WhatsApp number,
so it is the receiver of every inbound message and the only account allowed
to send through that number.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from chatrelay.config import Settings
from chatrelay.errors import Forbidden, InvalidRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    owner_account_id: str
    access_token: Optional[str]
    phone_number_id: Optional[str]
    api_version: str
    base_url: str

    @property
    def can_send(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def graph_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_version}"

    @property
    def messages_url(self) -> str:
        return f"{self.graph_url}/{self.phone_number_id}/messages"

    @property
    def media_upload_url(self) -> str:
        return f"{self.graph_url}/{self.phone_number_id}/media"

    def media_url(self, media_id: str) -> str:
        return f"{self.graph_url}/{media_id}"


class CredentialsProvider:
    """Resolves which credentials apply to a request."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def _credentials(self) -> Optional[Credentials]:
        owner = self._settings.BUSINESS_OWNER_ID
        if not owner:
            return None
        return Credentials(
            owner_account_id=owner,
            access_token=self._settings.WHATSAPP_TOKEN,
            phone_number_id=self._settings.PHONE_NUMBER_ID,
            api_version=self._settings.WHATSAPP_API_VERSION,
            base_url=self._settings.GRAPH_API_BASE_URL,
        )

    def for_account(self, account_id: str) -> Credentials:
        """
        Credentials `account_id` sends with.

        Raises:
            Forbidden: the account owns no messaging credentials, or they are
                incomplete
        """
        credentials = self._credentials()
        if credentials is None or credentials.owner_account_id != account_id:
            logger.warning(f"Account {account_id} has no messaging credentials")
            raise Forbidden("no WhatsApp credentials configured for this account")
        if not credentials.can_send:
            logger.error("WHATSAPP_TOKEN or PHONE_NUMBER_ID not configured")
            raise Forbidden("WhatsApp API not configured")
        return credentials

    def for_inbound(self, phone_number_id: Optional[str] = None) -> Optional[Credentials]:
        """
        Credentials of the number an inbound event was delivered to.

        Returns None when the event is for a number this service does not
        manage.

        Raises:
            InvalidRequest: no owning account is configured
        """
        credentials = self._credentials()
        if credentials is None:
            raise InvalidRequest("BUSINESS_OWNER_ID is not configured")
        if (
            phone_number_id
            and credentials.phone_number_id
            and phone_number_id != credentials.phone_number_id
        ):
            logger.warning(f"Inbound event for unmanaged phone number id {phone_number_id}")
            return None
        return credentials
