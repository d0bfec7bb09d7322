"""Request/response correlation for the JSON-RPC language session."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .framing import encode_message

logger = logging.getLogger(__name__)

ResponseHandler = Callable[[Dict[str, Any]], None]
ErrorHandler = Callable[[BaseException], None]
NotificationHandler = Callable[[str, Any], None]


@dataclass
class PendingRequest:
    """A request awaiting its response frame."""
    id: int
    method: str
    handler: ResponseHandler
    on_error: Optional[ErrorHandler] = None


class RequestCorrelator:
    """Assigns request ids and routes response frames back to their handlers.

    Ids start at 1 and are never reused for the lifetime of the instance.
    Writing is delegated to ``writer`` so the correlator stays independent
    of the transport.
    """

    def __init__(
        self,
        writer: Callable[[bytes], None],
        on_notification: Optional[NotificationHandler] = None,
    ):
        self._writer = writer
        self._on_notification = on_notification
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}

    @property
    def pending_ids(self) -> List[int]:
        return sorted(self._pending)

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def send(
        self,
        method: str,
        params: Any,
        handler: Optional[ResponseHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> int:
        """Send a request; ``handler`` receives the full response frame once.

        Returns:
            The id assigned to the request.
        """
        request_id = self._allocate_id()
        message = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        }
        if handler is not None:
            self._pending[request_id] = PendingRequest(request_id, method, handler, on_error)
        try:
            self._writer(encode_message(message))
        except Exception:
            self._pending.pop(request_id, None)
            raise
        return request_id

    def notify(self, method: str, params: Any) -> None:
        """Send a notification (no id, no response expected)."""
        self._writer(encode_message({
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
        }))

    def request(self, method: str, params: Any) -> "asyncio.Future[Dict[str, Any]]":
        """Send a request and return a future resolved with the response frame."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _resolve(frame: Dict[str, Any]) -> None:
            if not future.done():
                future.set_result(frame)

        def _reject(exc: BaseException) -> None:
            if not future.done():
                future.set_exception(exc)

        request_id = self.send(method, params, _resolve, _reject)
        # Drop the entry if the caller gives up on the future
        future.add_done_callback(
            lambda f: self._pending.pop(request_id, None) if f.cancelled() else None
        )
        return future

    def dispatch(self, frame: Dict[str, Any]) -> None:
        """Route an incoming frame to its handler or the notification path."""
        frame_id = frame.get("id")
        if frame_id is not None and "method" not in frame:
            pending = self._pending.pop(frame_id, None)
            if pending is None:
                logger.debug(f"No pending request for response id {frame_id!r}")
                return
            try:
                pending.handler(frame)
            except Exception:
                logger.exception(f"Handler for {pending.method} (id {frame_id}) failed")
            return

        method = frame.get("method")
        if method is None:
            logger.debug(f"Ignoring frame without id or method: {frame!r}")
            return
        if self._on_notification is not None:
            try:
                self._on_notification(method, frame.get("params"))
            except Exception:
                logger.exception(f"Notification callback for {method} failed")
        else:
            logger.debug(f"Unhandled server message: {method}")

    def reject_all(self, exc: BaseException) -> int:
        """Fail every pending request; returns how many were pending."""
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if entry.on_error is not None:
                entry.on_error(exc)
        return len(pending)
