"""
Recipient registration and channel binding.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from .data_manager import DataManager
from .database import generate_id
from .exceptions import (
    ChannelAlreadyBound,
    DuplicateRecipientError,
    RecipientNotFound,
)
from .models import Recipient, Role

_PHONE_CLEANUP = re.compile(r"[^\d+]")


def normalize_phone(phone: str) -> str:
    """Strip everything except digits and '+' from a phone number."""
    return _PHONE_CLEANUP.sub("", phone or "")


class RecipientManager:
    """Adds recipients, binds them to a messaging channel and lists cohorts."""

    def __init__(self, data_manager: DataManager):
        self.data_manager = data_manager
        self.logger = logging.getLogger(__name__)

    def register_recipient(
        self,
        name: str,
        phone: str,
        role: Role = Role.TAKER,
        cohort_id: Optional[str] = None
    ) -> Recipient:
        """
        Add a person to the system so they can later bind a channel.

        Raises:
            DuplicateRecipientError: If the phone number is already registered
            ValueError: If name or phone is empty
        """
        clean_phone = normalize_phone(phone)
        if not name or not name.strip():
            raise ValueError("Recipient name cannot be empty")
        if not clean_phone:
            raise ValueError("Recipient phone cannot be empty")

        if self.data_manager.get_recipient_by_phone(clean_phone) is not None:
            raise DuplicateRecipientError(f"Phone {clean_phone} is already registered")

        recipient = Recipient(
            id=generate_id('USR'),
            name=name.strip(),
            phone=clean_phone,
            role=role,
            cohort_id=cohort_id
        )
        self.data_manager.insert_recipient(recipient)
        self.logger.info(f"Registered {role.value} {recipient.id} in cohort {cohort_id}")
        return recipient

    def bulk_register(self, entries: List[Dict[str, Any]], cohort_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Register many recipients; one bad entry does not stop the rest.

        Returns:
            Dictionary with 'registered' recipients and per-entry 'errors'
        """
        registered = []
        errors = []
        for index, entry in enumerate(entries):
            try:
                role = Role(entry.get('role', Role.TAKER.value))
                recipient = self.register_recipient(
                    entry.get('name', ''),
                    entry.get('phone', ''),
                    role,
                    entry.get('cohort_id', cohort_id)
                )
                registered.append(recipient)
            except (ValueError, DuplicateRecipientError) as e:
                self.logger.warning(f"Bulk registration entry {index} rejected: {e}")
                errors.append({'index': index, 'phone': entry.get('phone'), 'error': str(e)})

        self.logger.info(f"Bulk registration: {len(registered)} added, {len(errors)} rejected")
        return {'registered': registered, 'errors': errors}

    def bind_channel(self, phone: str, channel_id: str) -> Recipient:
        """
        Bind a messaging channel identity to the recipient owning ``phone``.

        Re-registering the same channel is a no-op.

        Raises:
            RecipientNotFound: If no recipient has this phone number
            ChannelAlreadyBound: If the recipient is bound to another channel,
                or the channel already belongs to another recipient
        """
        clean_phone = normalize_phone(phone)
        recipient = self.data_manager.get_recipient_by_phone(clean_phone)
        if recipient is None:
            raise RecipientNotFound(f"Phone {clean_phone} not found")

        if recipient.channel_id and recipient.channel_id != channel_id:
            self.logger.warning(
                f"Rejected channel binding for {recipient.id}: already bound to another channel",
                extra={'event_type': 'channel_binding_rejected', 'recipient_id': recipient.id}
            )
            raise ChannelAlreadyBound(f"Recipient {recipient.id} is bound to a different channel")

        owner = self.data_manager.get_recipient_by_channel(channel_id)
        if owner is not None and owner.id != recipient.id:
            raise ChannelAlreadyBound(
                f"Channel is already bound to recipient {owner.id}",
                user_message=(
                    "❌ This Telegram account is already registered with another phone number.\n\n"
                    "Please contact your school administrator if you need help."
                )
            )

        if not self.data_manager.bind_channel(recipient.id, channel_id):
            # Lost a race against another binding for the same recipient
            raise ChannelAlreadyBound(f"Recipient {recipient.id} is bound to a different channel")

        recipient.channel_id = channel_id
        self.logger.info(
            f"Bound channel for recipient {recipient.id}",
            extra={'event_type': 'channel_bound', 'recipient_id': recipient.id}
        )
        return recipient

    def get_recipient(self, recipient_id: str) -> Recipient:
        recipient = self.data_manager.get_recipient(recipient_id)
        if recipient is None:
            raise RecipientNotFound(f"Recipient {recipient_id} not found")
        return recipient

    def get_by_channel(self, channel_id: str) -> Optional[Recipient]:
        return self.data_manager.get_recipient_by_channel(channel_id)

    def list_cohort(self, cohort_id: str, include_inactive: bool = False) -> List[Recipient]:
        return self.data_manager.list_recipients_by_cohort(cohort_id, include_inactive)

    def list_unbound(self, cohort_id: Optional[str] = None) -> List[Recipient]:
        return self.data_manager.list_recipients_without_channel(cohort_id)
