"""
Message channel between the extraction session and the sync controller.

Events travel as plain wire dicts ({"type": ..., ...}) from the page side and are
decoded into typed events at the controller boundary; commands travel the other way.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from rednote_sync.config import CHANNEL_MAXSIZE
from rednote_sync.errors import ProtocolError


class Command(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


@dataclass(frozen=True)
class Initialized:
    message: str = ""


@dataclass(frozen=True)
class Progress:
    total: int
    current: int


@dataclass(frozen=True)
class Data:
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Complete:
    message: str
    total: int


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class Paused:
    message: str = ""


@dataclass(frozen=True)
class Resumed:
    message: str = ""


@dataclass(frozen=True)
class Stopped:
    message: str = ""


Event = Union[Initialized, Progress, Data, Complete, Error, Paused, Resumed, Stopped]

EVENT_TYPES = ("initialized", "progress", "data", "complete", "error", "paused", "resumed", "stopped")


def _int_field(body: Mapping[str, Any], key: str) -> int:
    value = body.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProtocolError(f"'{key}' must be a non-negative integer, got {value!r}")
    return value


def _text_field(body: Mapping[str, Any], key: str, default: str = "") -> str:
    value = body.get(key, default)
    return value if isinstance(value, str) else default


def decode_event(body: Any) -> Event:
    """Validate a wire dict and turn it into a typed event. Raises ProtocolError."""
    if not isinstance(body, Mapping):
        raise ProtocolError(f"message must be a mapping, got {type(body).__name__}")
    kind = body.get("type")
    if kind == "initialized":
        return Initialized(_text_field(body, "message"))
    if kind == "progress":
        return Progress(total=_int_field(body, "total"), current=_int_field(body, "current"))
    if kind == "data":
        data = body.get("data")
        if not isinstance(data, Mapping):
            raise ProtocolError("'data' message without a record payload")
        return Data(dict(data))
    if kind == "complete":
        return Complete(message=_text_field(body, "message"), total=_int_field(body, "total"))
    if kind == "error":
        message = body.get("message")
        if not isinstance(message, str) or not message:
            raise ProtocolError("'error' message without text")
        return Error(message)
    if kind == "paused":
        return Paused(_text_field(body, "message"))
    if kind == "resumed":
        return Resumed(_text_field(body, "message"))
    if kind == "stopped":
        return Stopped(_text_field(body, "message"))
    raise ProtocolError(f"unknown message type: {kind!r}")


def decode_command(value: Any) -> Command:
    try:
        return Command(value)
    except ValueError:
        raise ProtocolError(f"unknown command: {value!r}") from None


class MessageChannel:
    """Two bounded queues: commands host -> page, events page -> host."""

    def __init__(self, maxsize: int = CHANNEL_MAXSIZE):
        self.commands: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.events: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def send_command(self, command: Command) -> None:
        await self.commands.put(command)

    async def next_command(self) -> Command:
        return decode_command(await self.commands.get())

    async def post(self, message: dict) -> None:
        """Page side: post a wire message to the host."""
        await self.events.put(message)

    async def next_event(self) -> Any:
        """Host side: raw wire message, decode with decode_event()."""
        return await self.events.get()
