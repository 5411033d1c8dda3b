import logging
import time
from typing import Optional

import requests
from openai import OpenAI

from battle_arena.services.judge import BackendJudge

logger = logging.getLogger(__name__)

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
PERPLEXITY_MODEL = "llama-3.1-sonar-small-128k-online"


class OpenAIJudge(BackendJudge):
    """OpenAI-compatible chat completions (OpenAI itself, or xAI via JUDGE_BASE_URL)."""

    name = "openai"

    def __init__(self, config=None, rng=None):
        super().__init__(config, rng)
        self._client: Optional[OpenAI] = None

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            # The SDK counts retries after the first attempt
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=max(0, self.config.max_attempts - 1),
            )
        return self._client

    def complete(self, messages, max_tokens, temperature, json_mode=False) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        completion = self.client.chat.completions.create(
            model=self.config.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""


class PerplexityJudge(BackendJudge):
    """Perplexity chat completions over plain HTTP."""

    name = "perplexity"

    def __init__(self, config=None, rng=None, session: Optional[requests.Session] = None):
        super().__init__(config, rng)
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        if self.config.base_url:
            return self.config.base_url.rstrip("/") + "/chat/completions"
        return PERPLEXITY_URL

    @property
    def model(self) -> str:
        # JUDGE_MODEL defaults to an OpenAI model name
        if self.config.model.startswith("gpt-"):
            return PERPLEXITY_MODEL
        return self.config.model

    def complete(self, messages, max_tokens, temperature, json_mode=False) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        attempts = max(1, self.config.max_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                resp = self.session.post(
                    self.url,
                    json=payload,
                    headers=headers,
                    timeout=self.config.timeout_seconds,
                )
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise requests.HTTPError(
                        f"Perplexity API responded with status {resp.status_code}", response=resp
                    )
                resp.raise_for_status()
                data = resp.json()
                choices = data.get("choices") or []
                if not choices:
                    return ""
                return (choices[0].get("message") or {}).get("content") or ""
            except requests.HTTPError as e:
                status = getattr(e.response, "status_code", None)
                if status is not None and status < 500 and status != 429:
                    # Client errors (bad key, bad request) will not improve on retry
                    raise
                last_error = e
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
            if attempt < attempts:
                logger.warning(
                    f"Perplexity call failed (attempt {attempt}/{attempts}): {last_error}",
                    extra={"judge_backend": self.name},
                )
                time.sleep(min(2 ** (attempt - 1), 8))
        if last_error is None:
            raise RuntimeError("Perplexity call made no attempts")
        raise last_error
