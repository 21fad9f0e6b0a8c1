import json
import logging
from urllib import error, request

from medilink.core.errors import (
    ConfigurationError,
    PaymentRequiredError,
    RateLimitError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "https://ai.gateway.lovable.dev/v1/chat/completions"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class LLMClient:
    """Role-tagged chat completion over an OpenAI-compatible gateway or Gemini."""

    def __init__(
        self,
        provider: str,
        api_key: str | None,
        model: str,
        base_url: str = DEFAULT_GATEWAY_URL,
        app_name: str = "MediLink",
        site_url: str = "http://localhost",
        timeout: float = 35,
    ) -> None:
        self._provider = provider.strip().lower()
        self._api_key = api_key.strip() if isinstance(api_key, str) else api_key
        self._model = model.strip() if isinstance(model, str) else model
        self._base_url = base_url.strip() if isinstance(base_url, str) else base_url
        self._app_name = app_name
        self._site_url = site_url
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        if not self._api_key:
            return False
        normalized = self._api_key.strip().lower()
        return normalized != "" and not normalized.startswith("your_")

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    def complete(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str:
        if not self.enabled:
            raise ConfigurationError(f"{self._provider} API key is not configured")

        if self._provider in {"gateway", "openrouter", "lovable"}:
            return self._complete_gateway(messages, temperature, max_tokens)
        if self._provider == "gemini":
            return self._complete_gemini(messages, temperature, max_tokens)
        raise ConfigurationError(f"Unsupported provider: {self._provider}")

    def _complete_gateway(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        payload = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        if self._provider == "openrouter":
            headers["HTTP-Referer"] = self._site_url
            headers["X-Title"] = self._app_name

        parsed = self._post_json(self._base_url, payload, headers)

        choices = parsed.get("choices", [])
        if not choices:
            raise UpstreamError("AI Gateway returned no choices")

        content = self._extract_message_text(choices[0].get("message", {}))
        if not content:
            fallback_text = choices[0].get("text", "")
            content = fallback_text if isinstance(fallback_text, str) else ""
        if not content:
            raise UpstreamError("AI Gateway returned empty content")
        return content

    def _extract_message_text(self, message: dict) -> str:
        if not isinstance(message, dict):
            return ""

        content = message.get("content", "")
        if isinstance(content, str):
            return content

        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, str):
                    parts.append(item)
                elif isinstance(item, dict):
                    text_value = item.get("text") or item.get("content")
                    if isinstance(text_value, str):
                        parts.append(text_value)
            return "".join(parts)

        return ""

    def _complete_gemini(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        endpoint = GEMINI_URL_TEMPLATE.format(model=self._model) + f"?key={self._api_key}"

        system_text = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        contents = [
            {
                "role": "model" if m["role"] == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in messages
            if m["role"] != "system"
        ]

        payload: dict = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}

        parsed = self._post_json(endpoint, payload, {"Content-Type": "application/json"})

        candidates = parsed.get("candidates", [])
        if not candidates:
            raise UpstreamError("Gemini returned no candidates")

        parts = candidates[0].get("content", {}).get("parts", [])
        text_output = "".join(part.get("text", "") for part in parts)
        if not text_output:
            raise UpstreamError("Gemini returned empty content")
        return text_output

    def _post_json(self, url: str, payload: dict, headers: dict[str, str]) -> dict:
        req = request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )

        try:
            with request.urlopen(req, timeout=self._timeout) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            logger.error("%s error: %s %s", self._provider, exc.code, detail)
            if exc.code == 429:
                raise RateLimitError("Rate limit exceeded. Please try again in a moment.") from exc
            if exc.code == 402:
                raise PaymentRequiredError("AI service credits depleted. Please contact support.") from exc
            raise UpstreamError(f"AI Gateway error: {exc.code}") from exc
        except error.URLError as exc:
            raise UpstreamError(f"AI Gateway network error: {exc.reason}") from exc
        except TimeoutError as exc:
            raise UpstreamError("AI Gateway request timed out") from exc

        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise UpstreamError("AI Gateway returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise UpstreamError("AI Gateway returned an unexpected payload")
        return parsed
