"""Transport collaborator contract used by the scheduler and automations."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

from dripline.db.models import Channel


@dataclass(frozen=True)
class SendResult:
    provider_id: str
    status: str = "SENT"


class Transport(ABC):
    """Sends one message. Raises ``TransientTransportError`` or ``PermanentTransportError``."""

    channel: Channel = Channel.EMAIL

    @abstractmethod
    def send(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> SendResult:
        ...


TransportMap = Mapping[Channel, Transport]
