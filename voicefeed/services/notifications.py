"""Short-lived user-visible notifications (toasts).

Services post one toast per user-facing outcome and keep raising their
exceptions; the boundary that owns the user (WebSocket handler, CLI)
subscribes and renders.
"""

import logging
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from voicefeed.core.exceptions import VoiceFeedError
from voicefeed.core.models import Toast, ToastLevel

logger = logging.getLogger(__name__)

ToastListener = Callable[[Toast], None]


class Notifier:
    """Holds recent toasts and fans them out to listeners.

    Args:
        ttl_seconds: Lifetime of each toast.
        max_toasts: Number of toasts retained for :meth:`active`.
    """

    def __init__(self, ttl_seconds: float = 4.0, max_toasts: int = 20) -> None:
        self._ttl = ttl_seconds
        self._toasts: deque[Toast] = deque(maxlen=max_toasts)
        self._listeners: list[ToastListener] = []

    def subscribe(self, listener: ToastListener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def post(self, level: ToastLevel, message: str, code: str | None = None) -> Toast:
        toast = Toast(
            level=level,
            message=message,
            code=code,
            created_at=datetime.now(UTC),
            ttl_seconds=self._ttl,
        )
        self._toasts.append(toast)
        logger.debug("Toast [%s] %s", level, message)
        for listener in list(self._listeners):
            try:
                listener(toast)
            except Exception:
                logger.exception("Toast listener failed")
        return toast

    def success(self, message: str) -> Toast:
        return self.post(ToastLevel.success, message)

    def info(self, message: str) -> Toast:
        return self.post(ToastLevel.info, message)

    def error(self, message: str, code: str | None = None) -> Toast:
        return self.post(ToastLevel.error, message, code)

    def error_from(self, exc: VoiceFeedError) -> Toast:
        """Post an error toast carrying the exception's detail and code."""
        return self.error(exc.detail, exc.code)

    def active(self, now: datetime | None = None) -> list[Toast]:
        """Return unexpired toasts, oldest first, dropping expired ones."""
        now = now or datetime.now(UTC)
        while self._toasts and self._expires_at(self._toasts[0]) <= now:
            self._toasts.popleft()
        return [t for t in self._toasts if self._expires_at(t) > now]

    def clear(self) -> None:
        self._toasts.clear()

    @staticmethod
    def _expires_at(toast: Toast) -> datetime:
        return toast.created_at + timedelta(seconds=toast.ttl_seconds)
