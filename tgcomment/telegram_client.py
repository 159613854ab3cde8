"""
Thin, stateless wrapper over the bot HTTP API.

Every call carries an explicit timeout. Failures surface as:
- TransportError: no usable HTTP response (DNS, TLS, timeout, reset)
- ApiError: non-2xx status, malformed JSON, or ok=false
"""

import json
import logging
from typing import Any, Optional

import requests

from tgcomment.errors import ApiError, TransportError
from tgcomment.metrics import record_api_error
from tgcomment.sanitizer import sanitize_html, strip_tags

logger = logging.getLogger(__name__)

# Upload parts: field name -> (filename, bytes, mime type)
FileParts = dict[str, tuple[str, bytes, Optional[str]]]

SINGLE_MEDIA_METHODS = {
    "photo": "sendPhoto",
    "video": "sendVideo",
    "audio": "sendAudio",
    "document": "sendDocument",
}

# Media group sends accept at most this many items
MEDIA_GROUP_LIMIT = 10

REACTION_RECEIVED = "👍"
REACTION_DONE = "👌"
REACTION_FAILED = "❌"


class TelegramClient:
    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 15.0,
        media_timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.media_timeout = media_timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "TelegramClient":
        return cls(
            token=settings.TELEGRAM_BOT_TOKEN,
            api_url=settings.TELEGRAM_API_URL,
            timeout=settings.REQUEST_TIMEOUT,
            media_timeout=settings.MEDIA_REQUEST_TIMEOUT,
        )

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _call(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        files: Optional[FileParts] = None,
        timeout: Optional[float] = None,
        http_method: str = "POST",
    ) -> Any:
        """
        Invoke a bot API method and return its `result`.

        Structured parameters (lists, dicts) are JSON-encoded so the same
        form encoding works for plain and multipart requests.
        """
        if not self.token:
            raise ApiError(method, None, "bot token is not configured")

        url = f"{self.api_url}/bot{self.token}/{method}"
        data = {}
        for key, value in (params or {}).items():
            if value is None:
                continue
            if isinstance(value, (list, dict, bool)):
                value = json.dumps(value, ensure_ascii=False)
            data[key] = value

        try:
            if http_method == "GET":
                response = self.session.get(url, params=data, timeout=timeout or self.timeout)
            else:
                response = self.session.post(url, data=data, files=files or None, timeout=timeout or self.timeout)
        except requests.RequestException as exc:
            record_api_error(method, None)
            logger.warning(f"Bot API {method}: transport error: {exc}")
            raise TransportError(method, str(exc)) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            record_api_error(method, response.status_code)
            raise ApiError(method, response.status_code, f"malformed response: {response.text[:200]}")

        if response.status_code >= 300 or not payload.get("ok"):
            code = payload.get("error_code", response.status_code)
            description = payload.get("description", "unknown error")
            record_api_error(method, code)
            logger.warning(f"Bot API {method}: error {code}: {description}")
            raise ApiError(method, code, description)

        return payload.get("result")

    # -------------------------------------------------------------------------
    # Updates and files
    # -------------------------------------------------------------------------

    def get_updates(self, offset: int, limit: int = 100, timeout: int = 10) -> list[dict[str, Any]]:
        """Long-poll for updates. A 409 means a webhook is active."""
        result = self._call(
            "getUpdates",
            {"offset": offset, "limit": limit, "timeout": timeout},
            timeout=timeout + self.timeout,
            http_method="GET",
        )
        return result or []

    def get_file_url(self, file_id: str) -> str:
        result = self._call("getFile", {"file_id": file_id}, http_method="GET")
        file_path = (result or {}).get("file_path")
        if not file_path:
            raise ApiError("getFile", None, f"no file_path for {file_id}")
        return f"{self.api_url}/file/bot{self.token}/{file_path}"

    def download(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.media_timeout)
        except requests.RequestException as exc:
            record_api_error("download", None)
            raise TransportError("download", str(exc)) from exc
        if response.status_code != 200:
            record_api_error("download", response.status_code)
            raise ApiError("download", response.status_code, "file download failed")
        return response.content

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def send_message(self, chat_id: int, text: str, keyboard: Optional[dict[str, Any]] = None) -> int:
        """
        Send a message in HTML parse mode. The text is sanitized first; when
        the platform still cannot parse the markup, the message is resent
        once as plain text.

        Returns:
            The platform message id
        """
        params = {"chat_id": chat_id, "text": sanitize_html(text), "parse_mode": "HTML", "reply_markup": keyboard}
        try:
            result = self._call("sendMessage", params)
        except ApiError as exc:
            if not exc.is_parse_error:
                raise
            logger.info(f"Markup rejected for chat {chat_id}, resending as plain text: {exc.description}")
            params.update(text=strip_tags(text), parse_mode=None)
            result = self._call("sendMessage", params)
        return result["message_id"]

    def send_media_group(
        self, chat_id: int, media: list[dict[str, Any]], files: Optional[FileParts] = None
    ) -> list[dict[str, Any]]:
        """
        Send 2-10 media items as one album.

        Returns:
            The sent messages, one per item
        """
        result = self._call(
            "sendMediaGroup",
            {"chat_id": chat_id, "media": media},
            files=files,
            timeout=self.media_timeout,
        )
        return result or []

    def send_media(
        self, chat_id: int, item: dict[str, Any], files: Optional[FileParts] = None
    ) -> dict[str, Any]:
        """
        Send one media item with the kind-specific method. `item` has the
        media-group item shape; an `attach://name` reference is uploaded from
        `files` under the kind's field name.
        """
        kind = item["type"]
        method = SINGLE_MEDIA_METHODS.get(kind, "sendDocument")
        field = kind if kind in SINGLE_MEDIA_METHODS else "document"
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "caption": item.get("caption"),
            "parse_mode": item.get("parse_mode"),
        }
        upload = None
        media = item["media"]
        if media.startswith("attach://"):
            upload = {field: (files or {})[media[len("attach://"):]]}
        else:
            params[field] = media
        return self._call(method, params, files=upload, timeout=self.media_timeout)

    def set_reaction(self, chat_id: int, message_id: int, emoji: str) -> bool:
        """Put a reaction on a message. Failures are logged, never raised."""
        try:
            self._call(
                "setMessageReaction",
                {
                    "chat_id": chat_id,
                    "message_id": message_id,
                    "reaction": [{"type": "emoji", "emoji": emoji}],
                },
            )
        except (ApiError, TransportError) as exc:
            logger.info(f"Reaction {emoji} on {chat_id}/{message_id} failed: {exc}")
            return False
        return True

    def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> bool:
        try:
            self._call("answerCallbackQuery", {"callback_query_id": callback_query_id, "text": text})
        except (ApiError, TransportError) as exc:
            logger.info(f"answerCallbackQuery {callback_query_id} failed: {exc}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Bot and webhook management
    # -------------------------------------------------------------------------

    def get_me(self) -> dict[str, Any]:
        return self._call("getMe", http_method="GET")

    def get_webhook_info(self) -> dict[str, Any]:
        return self._call("getWebhookInfo", http_method="GET") or {}

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        return bool(self._call(
            "setWebhook",
            {
                "url": url,
                "secret_token": secret_token or None,
                "allowed_updates": ["message", "edited_message", "callback_query"],
                "drop_pending_updates": True,
            },
        ))

    def delete_webhook(self) -> bool:
        return bool(self._call("deleteWebhook", {"drop_pending_updates": True}))
