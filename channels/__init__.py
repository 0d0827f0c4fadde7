"""Channel adapters, senders and the outbound messenger."""
from channels.base import (
    ChannelError,
    ChannelMetrics,
    ChannelRegistry,
    ChannelSender,
    CircuitBreaker,
    DeliveryFatalError,
    DeliveryTransientError,
    MessageAdapter,
    SendResult,
    TokenBucketRateLimiter,
    UnsupportedMessageError,
)
from channels.telegram_adapter import TelegramAdapter, TelegramSender
from channels.whatsapp_adapter import WhatsAppAdapter, WhatsAppSender

__all__ = [
    "ChannelError", "ChannelMetrics", "ChannelRegistry", "ChannelSender",
    "CircuitBreaker", "DeliveryFatalError", "DeliveryTransientError",
    "MessageAdapter", "SendResult", "TokenBucketRateLimiter", "UnsupportedMessageError",
    "TelegramAdapter", "TelegramSender", "WhatsAppAdapter", "WhatsAppSender",
]
