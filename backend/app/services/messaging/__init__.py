"""Outbound message delivery."""

from app.services.messaging.base import (
    Channel,
    DeliveryResult,
    MessagingProvider,
    OutboundMessage,
)
from app.services.messaging.dispatcher import DeliveryDispatcher
from app.services.messaging.factory import ProviderFactory
from app.services.messaging.sendgrid_provider import SendGridEmailProvider
from app.services.messaging.twilio_provider import TwilioSMSProvider, normalize_e164

__all__ = [
    "Channel",
    "DeliveryDispatcher",
    "DeliveryResult",
    "MessagingProvider",
    "OutboundMessage",
    "ProviderFactory",
    "SendGridEmailProvider",
    "TwilioSMSProvider",
    "normalize_e164",
]
