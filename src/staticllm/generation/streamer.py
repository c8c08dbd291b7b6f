"""Token streamers: sinks for generated tokens that can stop or cancel generation."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, List, Union


class StreamingStatus(Enum):
    RUNNING = "running"
    STOP = "stop"  # finish after the current token
    CANCEL = "cancel"  # abort and drop the current token


def _status(result) -> StreamingStatus:
    if isinstance(result, StreamingStatus):
        return result
    return StreamingStatus.STOP if result else StreamingStatus.RUNNING


class StreamerBase(ABC):
    @abstractmethod
    def write(self, token: int) -> StreamingStatus:
        ...

    def end(self):
        """Flush anything buffered once generation is over."""


class NullStreamer(StreamerBase):
    def write(self, token: int) -> StreamingStatus:
        return StreamingStatus.RUNNING


class TokenCallbackStreamer(StreamerBase):
    """
    Calls ``callback(token_id)`` per token.

    The callback may return a StreamingStatus; True means STOP and
    False/None mean RUNNING.
    """

    def __init__(self, callback: Callable[[int], object]):
        self.callback = callback

    def write(self, token: int) -> StreamingStatus:
        return _status(self.callback(token))


class TextCallbackStreamer(StreamerBase):
    """
    Decodes tokens incrementally and calls ``callback(text)`` with new text.

    Text ending in an incomplete character is held back until more tokens
    arrive or the stream ends.
    """

    def __init__(self, tokenizer, callback: Callable[[str], object]):
        self.tokenizer = tokenizer
        self.callback = callback
        self.tokens: List[int] = []
        self.printed = 0

    def write(self, token: int) -> StreamingStatus:
        self.tokens.append(token)
        text = self.tokenizer.decode(self.tokens)
        if text.endswith("\ufffd") or len(text) <= self.printed:
            return StreamingStatus.RUNNING
        chunk, self.printed = text[self.printed:], len(text)
        return _status(self.callback(chunk))

    def end(self):
        text = self.tokenizer.decode(self.tokens)
        if len(text) > self.printed:
            self.callback(text[self.printed:])
        self.tokens.clear()
        self.printed = 0


StreamerLike = Union[None, StreamerBase, Callable]


def create_streamer(streamer: StreamerLike, tokenizer=None) -> StreamerBase:
    """
    Normalize what a caller passed as streamer.

    A plain callable receives decoded text when a tokenizer is available,
    token ids otherwise.
    """
    if streamer is None:
        return NullStreamer()
    if isinstance(streamer, StreamerBase):
        return streamer
    if callable(streamer):
        if tokenizer is not None:
            return TextCallbackStreamer(tokenizer, streamer)
        return TokenCallbackStreamer(streamer)
    raise TypeError(f"Unsupported streamer type: {type(streamer).__name__}")
