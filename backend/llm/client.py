import re
import sys
import time

import requests
from requests.exceptions import ConnectionError, ConnectTimeout, HTTPError, ReadTimeout, Timeout

from backend.config import Settings
from .usage import UsageEvent

CONNECT_TIMEOUT = 10
RESPONSES_MODEL_RE = re.compile(r"^gpt-5", re.IGNORECASE)


class LLMUnavailable(Exception):
    pass


class LLMError(Exception):
    pass


class LLMTimeout(Exception):
    pass


def uses_responses_api(model: str) -> bool:
    return bool(RESPONSES_MODEL_RE.match(model or ""))


def _responses_text(data: dict) -> str:
    if isinstance(data.get("output_text"), str):
        return data["output_text"]
    parts = []
    for item in data.get("output") or []:
        for content in item.get("content") or []:
            if content.get("type") in ("output_text", "text") and content.get("text"):
                parts.append(content["text"])
    return "".join(parts)


class ChatClient:
    """OpenAI-compatible text generation over plain HTTP.

    Every call is timed and reported to the registered observers as a
    ``UsageEvent``; observers only need a ``record(event)`` method.
    """

    name = "xai-grok"

    def __init__(self, settings: Settings, observers=None, session: requests.Session | None = None):
        if not settings.ai_api_key:
            raise LLMUnavailable("Missing GROK_API_KEY or OPENAI_API_KEY")
        self.api_key = settings.ai_api_key
        self.model = settings.ai_model
        self.base_url = settings.ai_base_url.rstrip("/")
        self.max_output_tokens = settings.ai_max_output_tokens
        self.prompt_token_limit = settings.ai_prompt_token_limit
        self.total_token_budget = settings.ai_total_token_budget
        self.timeout = settings.ai_timeout
        self.retries = settings.ai_retries
        self.observers = list(observers or [])
        self._owns_session = session is None
        self.session = session or requests.Session()

    def subscribe(self, observer) -> None:
        self.observers.append(observer)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def _payload(self, system: str, prompt: str, temperature: float) -> tuple[str, dict]:
        if uses_responses_api(self.model):
            return "/responses", {
                "model": self.model,
                "instructions": system,
                "input": prompt,
                "max_output_tokens": self.max_output_tokens,
            }
        return "/chat/completions", {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": temperature,
            "max_tokens": self.max_output_tokens,
        }

    def _post(self, path: str, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        last_exc: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                resp = self.session.post(
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=headers,
                    timeout=(CONNECT_TIMEOUT, self.timeout),
                )
                resp.raise_for_status()
                return resp.json() or {}

            except ReadTimeout as e:
                raise LLMTimeout(f"llm_read_timeout: {e}") from e

            except (ConnectTimeout, ConnectionError) as e:
                last_exc = e
                if attempt < self.retries:
                    time.sleep(0.5)
                    continue
                raise LLMUnavailable(f"llm_connection_error: {e}") from e

            except HTTPError as e:
                last_exc = e
                status = getattr(getattr(e, "response", None), "status_code", None)
                if status and (status >= 500 or status == 429) and attempt < self.retries:
                    time.sleep(1.0 + attempt)
                    continue
                raise LLMError(f"llm_http_error status={status}: {e}") from e

            except Timeout as e:
                raise LLMTimeout(f"llm_timeout: {e}") from e

            except ValueError as e:
                raise LLMError(f"llm_bad_json: {e}") from e

        raise LLMUnavailable(f"llm_failed: {last_exc}") from last_exc

    def complete(self, system: str, prompt: str, temperature: float, label: str) -> str:
        """One model call. Returns the raw text (JSON for chat models)."""
        approx_tokens = (len(system) + len(prompt) + 3) // 4
        if self.prompt_token_limit and approx_tokens > self.prompt_token_limit:
            print(
                f"AI_PROMPT_LIMIT label={label} approx_tokens={approx_tokens} "
                f"limit={self.prompt_token_limit}",
                file=sys.stderr,
            )
        path, payload = self._payload(system, prompt, temperature)
        started = time.monotonic()
        data = self._post(path, payload)
        duration_ms = int((time.monotonic() - started) * 1000)
        self._record(label, temperature, duration_ms, data.get("usage"))

        if path == "/responses":
            return _responses_text(data)
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("llm_protocol_error: no choices in response")
        return (choices[0].get("message") or {}).get("content") or "{}"

    def _record(self, label: str, temperature: float, duration_ms: int, usage: dict | None) -> None:
        event = UsageEvent.from_usage(label, self.model, temperature, duration_ms, usage)
        print(
            f"AI_USAGE label={label} model={self.model} ms={duration_ms} "
            f"prompt={event.prompt_tokens} completion={event.completion_tokens} total={event.total_tokens}"
        )
        if self.total_token_budget and event.total_tokens > self.total_token_budget:
            print(
                f"AI_BUDGET label={label} total_tokens={event.total_tokens} "
                f"budget={self.total_token_budget}",
                file=sys.stderr,
            )
        for observer in self.observers:
            observer.record(event)
