"""aiohttp client for the chat backend's REST API.

Every endpoint answers with ``{"success": bool, "data": ..., "message"?, "error"?}``;
the coroutines here return ``data`` or raise ``ApiError``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import quote

import aiohttp

from .config import ClientConfig

logger = logging.getLogger(__name__)

CODE_NO_RESPONSE = "NO_RESPONSE"
CODE_REQUEST_ERROR = "REQUEST_ERROR"
CODE_TIMEOUT = "TIMEOUT"
CODE_HTTP_ERROR = "HTTP_ERROR"
CODE_UPLOAD_TOO_LARGE = "UPLOAD_TOO_LARGE"

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


class ApiError(Exception):
    def __init__(self, code: str, message: str, status: int | None = None) -> None:
        self.code = code
        self.message = message
        self.status = status
        super().__init__(f"{code}: {message}" if status is None else f"{code} ({status}): {message}")


def _segment(value: str) -> str:
    return quote(value, safe="")


async def resolve_token(provider: TokenProvider) -> Optional[str]:
    token = provider()
    if asyncio.iscoroutine(token):
        token = await token
    return token


class RestClient:
    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        config: ClientConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or ClientConfig()
        self._token_provider = token_provider
        self._session = session
        self._owns_session = session is None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _headers(self) -> Dict[str, str]:
        token = await resolve_token(self._token_provider)
        if not token:
            return {}
        if not token.startswith("Bearer "):
            token = f"Bearer {token}"
        return {"Authorization": token}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        data: aiohttp.FormData | None = None,
        timeout_s: float | None = None,
        authenticated: bool = True,
    ) -> Any:
        session = self._ensure_session()
        headers = await self._headers() if authenticated else {}
        timeout = aiohttp.ClientTimeout(total=timeout_s or self.config.request_timeout_s)
        try:
            async with session.request(
                method, self._url(path), json=json, data=data, headers=headers, timeout=timeout
            ) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = None
                status = response.status
        except asyncio.TimeoutError as exc:
            raise ApiError(CODE_TIMEOUT, f"{method} {path} timed out") from exc
        except aiohttp.ClientConnectionError as exc:
            raise ApiError(CODE_NO_RESPONSE, f"no response from server for {method} {path}") from exc
        except aiohttp.ClientError as exc:
            raise ApiError(CODE_REQUEST_ERROR, f"{method} {path} failed: {exc}") from exc
        return self._unwrap(method, path, status, payload)

    @staticmethod
    def _unwrap(method: str, path: str, status: int, payload: Any) -> Any:
        if not isinstance(payload, dict):
            if status >= 400:
                raise ApiError(CODE_HTTP_ERROR, f"{method} {path} returned {status}", status)
            return payload
        message = str(payload.get("message") or "")
        if status >= 400 or payload.get("success") is False:
            code = str(payload.get("error") or payload.get("code") or CODE_HTTP_ERROR)
            logger.warning("%s %s rejected: %s (%d)", method, path, code, status)
            raise ApiError(code, message or f"{method} {path} failed", status)
        return payload.get("data")

    # Authentication

    async def login(self, email: str, password: str) -> Any:
        return await self._request("POST", "/login", json={"email": email, "password": password}, authenticated=False)

    # Personal messages

    async def get_conversation(self, peer: str) -> Any:
        return await self._request("GET", f"/messages/conversation/{_segment(peer)}")

    async def send_message(
        self,
        receiver: str,
        content: str,
        kind: str,
        metadata: Dict[str, Any] | None = None,
        client_id: str | None = None,
    ) -> Any:
        body: Dict[str, Any] = {"receiverEmail": receiver, "content": content, "type": kind}
        if metadata:
            body["metadata"] = metadata
        if client_id:
            body["clientId"] = client_id
        return await self._request("POST", "/messages/send", json=body)

    async def mark_read(self, message_id: str) -> Any:
        return await self._request("PUT", f"/messages/read/{_segment(message_id)}")

    async def add_reaction(self, message_id: str, reaction: str) -> Any:
        return await self._request("POST", "/messages/reaction", json={"messageId": message_id, "reaction": reaction})

    async def recall_message(self, message_id: str) -> Any:
        return await self._request("PUT", f"/messages/recall/{_segment(message_id)}")

    async def delete_message(self, message_id: str) -> Any:
        return await self._request("DELETE", f"/messages/delete/{_segment(message_id)}")

    async def forward_message(self, message_id: str, receiver: str) -> Any:
        return await self._request(
            "POST", "/messages/forward", json={"messageId": message_id, "receiverEmail": receiver}
        )

    async def get_conversations(self) -> Any:
        return await self._request("GET", "/messages/conversations")

    # Friends

    async def send_friend_request(self, receiver: str) -> Any:
        return await self._request("POST", "/friend-request/send", json={"receiverEmail": receiver})

    async def respond_to_friend_request(self, sender: str, accept: bool) -> Any:
        return await self._request("POST", "/friend-request/respond", json={"senderEmail": sender, "accept": accept})

    async def withdraw_friend_request(self, receiver: str) -> Any:
        return await self._request("POST", "/friend-request/withdraw", json={"receiverEmail": receiver})

    async def get_friend_requests(self) -> Any:
        return await self._request("GET", "/friend-requests")

    async def get_friends(self) -> Any:
        return await self._request("GET", "/friends")

    async def unfriend(self, friend: str) -> Any:
        return await self._request("POST", "/friends/unfriend", json={"friendEmail": friend})

    # Groups

    async def get_groups(self) -> Any:
        return await self._request("GET", "/groups")

    async def get_group_members(self, group_id: str) -> Any:
        return await self._request("GET", f"/groups/{_segment(group_id)}/members")

    async def leave_group(self, group_id: str) -> Any:
        return await self._request("POST", f"/groups/{_segment(group_id)}/leave")

    async def delete_group(self, group_id: str) -> Any:
        return await self._request("DELETE", f"/groups/{_segment(group_id)}")

    async def get_group_messages(self, group_id: str) -> Any:
        return await self._request("GET", f"/groups/{_segment(group_id)}/messages")

    async def send_group_message(
        self,
        group_id: str,
        content: str,
        kind: str,
        metadata: Dict[str, Any] | None = None,
        client_id: str | None = None,
    ) -> Any:
        body: Dict[str, Any] = {"content": content, "type": kind}
        if metadata:
            body["metadata"] = metadata
        if client_id:
            body["clientId"] = client_id
        return await self._request("POST", f"/groups/{_segment(group_id)}/messages", json=body)

    async def add_group_reaction(self, group_id: str, message_id: str, reaction: str) -> Any:
        return await self._request(
            "POST",
            "/groups/messages/reaction",
            json={"groupId": group_id, "messageId": message_id, "reaction": reaction},
        )

    async def recall_group_message(self, group_id: str, message_id: str) -> Any:
        return await self._request("PUT", f"/groups/{_segment(group_id)}/messages/{_segment(message_id)}/recall")

    async def delete_group_message(self, group_id: str, message_id: str) -> Any:
        return await self._request("DELETE", f"/groups/{_segment(group_id)}/messages/{_segment(message_id)}")

    async def update_group(self, group_id: str, *, name: str | None = None, avatar: str | None = None) -> Any:
        body: Dict[str, Any] = {}
        if name is not None:
            body["name"] = name
        if avatar is not None:
            body["avatar"] = avatar
        return await self._request("PUT", f"/groups/{_segment(group_id)}", json=body)

    # Files

    async def upload_file(self, path: Path | str, mime_type: str | None = None) -> Dict[str, Any]:
        """Upload one file; returns ``{"url", "fileName", "fileSize", "fileType"}``."""

        file_path = Path(path)
        size = file_path.stat().st_size
        if size > self.config.max_upload_bytes:
            raise ApiError(CODE_UPLOAD_TOO_LARGE, f"{file_path.name} exceeds {self.config.max_upload_bytes} bytes")
        mime_type = mime_type or mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        with file_path.open("rb") as handle:
            form = aiohttp.FormData()
            form.add_field("file", handle, filename=file_path.name, content_type=mime_type)
            data = await self._request("POST", "/files/upload", data=form, timeout_s=self.config.upload_timeout_s)
        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise ApiError(CODE_REQUEST_ERROR, "upload response carried no url")
        return {"url": url, "fileName": file_path.name, "fileSize": size, "fileType": mime_type}
