"""Channel-qualified user identities (``<address>@<channel suffix>``)."""
from __future__ import annotations

from typing import Optional

from models.schemas import ChannelType

CHANNEL_SUFFIXES: dict[ChannelType, str] = {
    ChannelType.WHATSAPP: "w.msgcli.net",
    ChannelType.TELEGRAM: "t.msgcli.net",
}

_CHANNEL_BY_SUFFIX = {suffix: channel for channel, suffix in CHANNEL_SUFFIXES.items()}


def make_user_id(address: str, channel: ChannelType | str) -> str:
    channel = ChannelType(channel)
    address = str(address).strip()
    if "@" in address:
        return address
    return f"{address}@{CHANNEL_SUFFIXES[channel]}"


def split_user_id(user_id: str) -> tuple[str, Optional[ChannelType]]:
    """Return ``(raw address, channel)``; channel is None for unknown suffixes."""
    address, sep, suffix = str(user_id).partition("@")
    if not sep:
        return address, None
    return address, _CHANNEL_BY_SUFFIX.get(suffix)


def channel_of(user_id: str) -> Optional[ChannelType]:
    return split_user_id(user_id)[1]
