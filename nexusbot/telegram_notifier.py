from __future__ import annotations

import httpx

MAX_MESSAGE_LENGTH = 4096


class TelegramError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        description: str = "",
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.description = description
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        # Rate limits and server trouble heal; 400 "chat not found" or 403 "blocked" do not.
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


def send_telegram_message(
    *,
    bot_token: str,
    chat_id: str,
    text: str,
    timeout_seconds: float = 20.0,
    client: httpx.Client | None = None,
) -> None:
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }

    if client is None:
        with httpx.Client(timeout=timeout_seconds) as own_client:
            r = own_client.post(url, json=payload)
    else:
        r = client.post(url, json=payload)

    try:
        data = r.json()
    except ValueError:
        r.raise_for_status()
        raise TelegramError(f"Telegram API returned non-JSON body (status {r.status_code})", status_code=r.status_code)

    if not isinstance(data, dict):
        raise TelegramError(
            f"Telegram API returned unexpected body (status {r.status_code}): {data!r}",
            status_code=r.status_code,
        )

    if not data.get("ok", False):
        # e.g. 403 "bot was blocked by the user", 429 with parameters.retry_after
        description = str(data.get("description", ""))
        retry_after = (data.get("parameters") or {}).get("retry_after")
        raise TelegramError(
            f"Telegram API error: {data.get('error_code', r.status_code)} {description}".strip(),
            status_code=r.status_code,
            description=description,
            retry_after=retry_after,
        )
