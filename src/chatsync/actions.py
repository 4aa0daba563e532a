"""One pipeline for every locally initiated mutation.

An action is applied optimistically the moment it is submitted. Its remote
call then runs behind any earlier action's call, and the outcome either
reconciles the optimistic state with the server's answer or rolls back
exactly the mutation the action made.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .models import MalformedPayload
from .rest import ApiError

logger = logging.getLogger(__name__)

STATE_CONFIRMED = "confirmed"
STATE_FAILED = "failed"
STATE_REJECTED = "rejected"

CODE_TIMEOUT = "TIMEOUT"
CODE_CLIENT_ERROR = "CLIENT_ERROR"


@dataclass
class Action:
    """``apply`` returns a token (``None`` rejects the action); ``call`` receives it."""

    name: str
    apply: Callable[[], Any]
    call: Callable[[Any], Awaitable[Any]]
    reconcile: Optional[Callable[[Any, Any], None]] = None
    rollback: Optional[Callable[[Any, Exception], None]] = None
    notice: str = ""


@dataclass(frozen=True)
class ActionOutcome:
    name: str
    state: str
    token: Any = None
    result: Any = None
    error: Exception | None = None


@dataclass(frozen=True)
class Notice:
    """A user-visible, transient report of a failed action."""

    action: str
    code: str
    message: str


NoticeListener = Callable[[Notice], None]
_Job = Tuple[Action, Any, "asyncio.Future[ActionOutcome]"]


class ActionQueue:
    def __init__(self, request_timeout_s: float = 30.0) -> None:
        self.request_timeout_s = request_timeout_s
        self._queue: asyncio.Queue[_Job] | None = None
        self._worker: asyncio.Task | None = None
        self._listeners: List[NoticeListener] = []

    def on_notice(self, listener: NoticeListener) -> None:
        self._listeners.append(listener)

    def submit(self, action: Action) -> "asyncio.Future[ActionOutcome]":
        loop = asyncio.get_running_loop()
        future: asyncio.Future[ActionOutcome] = loop.create_future()
        token = action.apply()
        if token is None:
            logger.debug("action %s rejected locally", action.name)
            future.set_result(ActionOutcome(name=action.name, state=STATE_REJECTED))
            return future
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
        self._queue.put_nowait((action, token, future))
        return future

    async def drain(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is None:
            return
        while not self._queue.empty():
            _, _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
            self._queue.task_done()

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            action, token, future = await self._queue.get()
            try:
                outcome = await self._execute(action, token)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                logger.exception("action %s crashed", action.name)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(outcome)
            finally:
                self._queue.task_done()

    async def _execute(self, action: Action, token: Any) -> ActionOutcome:
        try:
            result = await asyncio.wait_for(action.call(token), timeout=self.request_timeout_s)
        except ApiError as exc:
            return self._fail(action, token, exc, exc.code, exc.message)
        except asyncio.TimeoutError as exc:
            return self._fail(action, token, exc, CODE_TIMEOUT, "request timed out")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("action %s call raised", action.name)
            return self._fail(action, token, exc, CODE_CLIENT_ERROR, str(exc) or type(exc).__name__)
        if action.reconcile is not None:
            try:
                action.reconcile(token, result)
            except MalformedPayload as exc:
                # The server accepted the call; the next resync repairs local state.
                logger.warning("action %s confirmed with an unusable response: %s", action.name, exc)
        logger.debug("action %s confirmed", action.name)
        return ActionOutcome(name=action.name, state=STATE_CONFIRMED, token=token, result=result)

    def _fail(self, action: Action, token: Any, error: Exception, code: str, detail: str) -> ActionOutcome:
        logger.warning("action %s failed: %s", action.name, code)
        if action.rollback is not None:
            action.rollback(token, error)
        notice = Notice(action=action.name, code=code, message=action.notice or detail)
        for listener in list(self._listeners):
            listener(notice)
        return ActionOutcome(name=action.name, state=STATE_FAILED, token=token, error=error)
