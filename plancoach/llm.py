import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel

from plancoach.config import Settings, get_settings
from plancoach.errors import UpstreamServiceFailure

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

SAFETY_SETTINGS = [
    types.SafetySetting(category="HARM_CATEGORY_HARASSMENT", threshold="BLOCK_NONE"),
    types.SafetySetting(category="HARM_CATEGORY_HATE_SPEECH", threshold="BLOCK_NONE"),
    types.SafetySetting(category="HARM_CATEGORY_SEXUALLY_EXPLICIT", threshold="BLOCK_NONE"),
    types.SafetySetting(category="HARM_CATEGORY_DANGEROUS_CONTENT", threshold="BLOCK_NONE"),
]


class ToolCall(BaseModel):
    name: str
    args: Dict[str, Any] = {}


class Completion(BaseModel):
    """Either free text or a single tool call."""

    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None


class CompletionService(Protocol):
    def complete(
        self,
        system_instructions: str,
        history: List[Dict[str, str]],
        user_message: str,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = "auto",
        allowed_tools: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> Completion: ...


class _EmptyResponse(Exception):
    pass


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay for 1-based `attempt`, capped, with a little jitter."""
    delay = min(cap, base * (2 ** (attempt - 1)))
    return delay + random.uniform(0, delay * 0.25)


class LLMClient:
    """Gemini completion service with tool calling, key rotation and bounded retries."""

    def __init__(self, settings: Optional[Settings] = None, sleep=time.sleep):
        self.settings = settings or get_settings()
        self.api_keys = list(self.settings.gemini_api_keys)
        self.current_key_index = 0
        self.client = None
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="llm")

        if not self.api_keys:
            logger.warning("[LLM] No GEMINI_API_KEY found in environment variables.")
        else:
            self.client = genai.Client(api_key=self.api_keys[0])
            if len(self.api_keys) > 1:
                logger.info("[LLM] Loaded %d API keys for rate limit rotation", len(self.api_keys))
        self.default_model = self.settings.gemini_model
        logger.info("[LLM] Using model: %s", self.default_model)

    def _rotate_api_key(self):
        """Rotate to the next API key if we have multiple."""
        if len(self.api_keys) > 1:
            self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)
            self.client = genai.Client(api_key=self.api_keys[self.current_key_index])
            logger.info("[LLM] Rotated to API key %d/%d", self.current_key_index + 1, len(self.api_keys))

    @staticmethod
    def _build_contents(history: List[Dict[str, str]], user_message: str) -> List[types.Content]:
        contents = []
        for msg in history or []:
            text = msg.get("content") or ""
            if not text:
                continue
            role = "model" if msg.get("role") in ("assistant", "model") else "user"
            contents.append(types.Content(role=role, parts=[types.Part.from_text(text=text)]))
        contents.append(types.Content(role="user", parts=[types.Part.from_text(text=user_message)]))
        return contents

    @staticmethod
    def _build_config(
        model: str,
        system_instructions: str,
        contents: List[types.Content],
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: str,
        allowed_tools: Optional[List[str]],
    ) -> types.GenerateContentConfig:
        system_instruction = system_instructions or None
        # Gemma does not support system_instruction in config, so we prepend it to the first user message
        if "gemma" in model and system_instruction:
            first = contents[0]
            first.parts[0].text = f"System Instruction:\n{system_instruction}\n\nUser Message:\n{first.parts[0].text}"
            system_instruction = None

        config = types.GenerateContentConfig(
            temperature=0.4 if tools else 0.7,
            system_instruction=system_instruction,
            safety_settings=SAFETY_SETTINGS,
        )
        if tools:
            config.tools = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=t["name"], description=t.get("description", ""), parameters=t.get("parameters")
                        )
                        for t in tools
                    ]
                )
            ]
            mode = {"any": "ANY", "none": "NONE"}.get(tool_choice, "AUTO")
            config.tool_config = types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(
                    mode=mode,
                    allowed_function_names=allowed_tools if mode == "ANY" and allowed_tools else None,
                )
            )
            config.automatic_function_calling = types.AutomaticFunctionCallingConfig(disable=True)
        return config

    @staticmethod
    def _parse(response) -> Completion:
        calls = getattr(response, "function_calls", None) or []
        if calls:
            call = calls[0]
            return Completion(tool_call=ToolCall(name=call.name, args=dict(call.args or {})))
        text = response.text
        if not text or not text.strip():
            raise _EmptyResponse()
        return Completion(text=text.strip())

    def complete(
        self,
        system_instructions,
        history,
        user_message,
        tools=None,
        tool_choice="auto",
        allowed_tools=None,
        timeout=None,
    ) -> Completion:
        """Single completion with retries.

        `timeout` is a hard deadline for the whole call (used on deterministic paths);
        when it expires no further attempt is made.
        """
        if self.client is None:
            raise UpstreamServiceFailure("GEMINI_API_KEY not configured")

        model = self.default_model
        deadline = time.monotonic() + timeout if timeout else None
        max_attempts = max(1, self.settings.llm_max_retries + 1)
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            contents = self._build_contents(history, user_message)
            config = self._build_config(model, system_instructions, contents, tools, tool_choice, allowed_tools)
            per_call = self.settings.llm_timeout_seconds
            if deadline is not None:
                per_call = min(per_call, deadline - time.monotonic())
                if per_call <= 0:
                    break
            try:
                future = self._executor.submit(
                    self.client.models.generate_content, model=model, contents=contents, config=config
                )
                return self._parse(future.result(timeout=per_call))
            except FutureTimeout as e:
                last_error = e
                logger.warning("[LLM] Attempt %d timed out after %.1fs", attempt, per_call)
                if deadline is not None:
                    break
            except _EmptyResponse as e:
                last_error = e
                logger.warning("[LLM] Empty or blocked response from %s (attempt %d)", model, attempt)
            except genai_errors.APIError as e:
                last_error = e
                if e.code not in RETRYABLE_STATUS:
                    logger.error("[LLM] Non-retryable error %s: %s", e.code, e)
                    break
                logger.warning("[LLM] Error %s on attempt %d: %s", e.code, attempt, e)
                if e.code == 429:
                    self._rotate_api_key()

            if attempt < max_attempts:
                delay = backoff_delay(attempt, self.settings.llm_backoff_base_seconds, self.settings.llm_backoff_max_seconds)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    break
                self._sleep(delay)

        raise UpstreamServiceFailure(f"completion failed: {last_error}")
