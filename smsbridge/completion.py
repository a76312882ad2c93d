"""AI text-completion collaborator (Anthropic Messages API)."""

import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class CompletionError(Exception):
    """Raised when the collaborator returns no usable text."""

    pass


class CompletionClient(Protocol):
    def complete(
        self, system: str, messages: list[dict], max_tokens: int, timeout: Optional[float] = None
    ) -> str:
        ...


class AnthropicCompletionClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.model = model
        self.api_url = api_url
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )

    def complete(
        self, system: str, messages: list[dict], max_tokens: int, timeout: Optional[float] = None
    ) -> str:
        """
        Generate a reply.

        Args:
            system: System instruction
            messages: [{"role": "user", "content": "..."}] list
            max_tokens: Output budget
            timeout: Seconds allowed for this call; the client default when None

        Returns:
            Generated text

        Raises:
            CompletionError: On network errors, non-2xx responses or an empty reply
        """
        request_options = {} if timeout is None else {"timeout": timeout}
        try:
            response = self._client.post(
                self.api_url,
                json={
                    "model": self.model,
                    "max_tokens": max_tokens,
                    "system": system,
                    "messages": messages,
                },
                **request_options,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise CompletionError(f"completion API returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise CompletionError(f"completion API unreachable: {e.__class__.__name__}") from e
        except ValueError as e:
            raise CompletionError("completion API returned invalid JSON") from e

        blocks = data.get("content") or []
        text = "".join(
            block.get("text", "") for block in blocks
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ).strip()
        if not text:
            raise CompletionError("completion API returned no text")

        logger.debug(f"Completion generated: {len(text)} chars")
        return text

    def close(self) -> None:
        self._client.close()
