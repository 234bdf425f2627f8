"""Factory for creating channel provider instances."""

from app.core.config import Settings, settings
from app.services.messaging.base import Channel, MessagingProvider
from app.services.messaging.sendgrid_provider import SendGridEmailProvider
from app.services.messaging.twilio_provider import TwilioSMSProvider


class ProviderFactory:
    """Factory for creating channel provider instances."""

    @staticmethod
    def create_provider(channel: Channel | str, config: Settings | None = None) -> MessagingProvider:
        """Create the provider that serves a channel.

        Args:
            channel: Channel enum or its value ("sms", "email")
            config: Settings override

        Returns:
            MessagingProvider instance

        Raises:
            ValueError: If the channel is not supported
        """
        config = config or settings
        channel_value = channel.value if isinstance(channel, Channel) else channel
        if channel_value == Channel.SMS.value:
            return TwilioSMSProvider(config=config)
        if channel_value == Channel.EMAIL.value:
            return SendGridEmailProvider(config=config)
        raise ValueError(f"Unsupported channel: {channel_value}")

    @staticmethod
    def create_all(config: Settings | None = None) -> list[MessagingProvider]:
        """One provider per supported channel."""
        return [ProviderFactory.create_provider(channel, config) for channel in Channel]
