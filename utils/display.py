"""
Progressive caption display.

Assistant replies are revealed one character at a time so the caption keeps
pace with speech onset.
"""
import asyncio
import logging
from typing import Callable, Optional

from core.errors import StoppedByUser
from utils.cancellation import CancelToken

logger = logging.getLogger(__name__)

DisplayCallback = Callable[[str], None]


class TypewriterDisplay:
    """Holds the current caption and types replies into it."""

    def __init__(self, on_update: Optional[DisplayCallback] = None, char_delay_s: float = 0.06):
        self.on_update = on_update
        self.char_delay_s = char_delay_s
        self.text = ""
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[CancelToken] = None

    def show(self, text: str) -> None:
        """Replace the caption immediately, cancelling any typing in progress."""
        self.cancel()
        self._set(text)

    def clear(self) -> None:
        self.show("")

    def type_out(self, text: str, prefix: str = "") -> asyncio.Task:
        """Start typing text after prefix. Returns the typing task."""
        self.cancel()
        self._token = CancelToken()
        self._task = asyncio.ensure_future(self._type(prefix, text, self._token))
        return self._task

    def cancel(self) -> None:
        if self._token is not None:
            self._token.cancel("display replaced")
            self._token = None
        self._task = None

    @property
    def is_typing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _type(self, prefix: str, text: str, token: CancelToken) -> None:
        try:
            for i in range(1, len(text) + 1):
                self._set(prefix + text[:i])
                await token.sleep(self.char_delay_s)
        except StoppedByUser:
            logger.debug("Typing cancelled")

    def _set(self, text: str) -> None:
        self.text = text
        if self.on_update is not None:
            self.on_update(text)
