"""Client for the OpenAI-compatible chat-completions gateway."""

import json
import logging
import re
import time
from typing import Any, Dict, Optional, Sequence
from uuid import uuid4

import requests

import db
from env_validation import get_env_bool, get_env_float, get_env_int, get_env_str

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("cleohub.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

SEND_MAX_TOKENS = get_env_bool("SEND_MAX_TOKENS", True)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class LLMError(Exception):
    """Gateway failure carrying the HTTP status the API should answer with."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


def model_id() -> str:
    return get_env_str("MODEL_ID")


def base_params() -> Dict[str, Any]:
    return {"temperature": get_env_float("LLM_TEMPERATURE", 0.3)}


def _headers() -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    api_key = get_env_str("LLM_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _raise_for_gateway_status(response) -> None:
    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise LLMError("Rate limits exceeded, please try again later.", status_code=429)
    if status == 402:
        raise LLMError("Payment required, please add funds to the AI gateway workspace.", status_code=402)
    body = (getattr(response, "text", "") or "")[:300]
    raise LLMError(f"LLM-HTTP {status}: {body}", status_code=502)


def _post(payload: Dict[str, Any], minimal: Dict[str, Any]) -> Dict[str, Any]:
    url = get_env_str("LLM_API_URL")
    timeout = get_env_int("LLM_TIMEOUT", 120)
    try:
        response = requests.post(url, json=payload, headers=_headers(), timeout=timeout)
        if response.status_code == 400 and minimal != payload:
            logger.warning("LLM gateway rejected optional parameters; retrying with minimal payload")
            response = requests.post(url, json=minimal, headers=_headers(), timeout=timeout)
    except requests.RequestException as exc:
        raise LLMError(f"LLM error: {exc}") from exc
    _raise_for_gateway_status(response)
    try:
        data = response.json()
    except ValueError as exc:
        raise LLMError("LLM gateway returned a non-JSON body") from exc
    if not isinstance(data, dict):
        raise LLMError(f"Unexpected LLM response: {data!r}"[:300])
    return data


def _call(
    messages: Sequence[Dict[str, Any]],
    extra: Dict[str, Any],
    *,
    max_tokens: Optional[int],
    temperature: Optional[float],
    user_id: Optional[str],
    prompt_version: Optional[str],
    request_id: Optional[str],
) -> Dict[str, Any]:
    model = model_id()
    params = base_params()
    if temperature is not None:
        params["temperature"] = float(temperature)
    payload: Dict[str, Any] = {"model": model, "messages": list(messages), **params, **extra}
    minimal: Dict[str, Any] = {"model": model, "messages": list(messages), **extra}
    if max_tokens is not None and SEND_MAX_TOKENS:
        payload["max_tokens"] = int(max_tokens)

    call_request_id = request_id or str(uuid4())
    start = time.perf_counter()
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    outcome = "error"
    try:
        data = _post(payload, minimal)
        usage = data.get("usage")
        if isinstance(usage, dict):
            tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))
        try:
            message = data["choices"][0]["message"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError(f"Unexpected LLM response: {data}"[:300]) from exc
        outcome = "ok"
        return message
    except LLMError as exc:
        outcome = f"http_{exc.status_code}"
        raise
    finally:
        latency_ms = int((time.perf_counter() - start) * 1000)
        try:
            db.record_llm_metric(
                user_id,
                model,
                prompt_version or "default",
                latency_ms,
                tokens_in,
                tokens_out,
                outcome=outcome,
            )
        except Exception:
            logger.warning("Failed to record LLM metric", exc_info=True)
        log_record = {
            "event": "llm_call",
            "request_id": call_request_id,
            "user_id": user_id,
            "prompt_version": prompt_version or "default",
            "model": model,
            "latency_ms": latency_ms,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "outcome": outcome,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


def chat_completion(
    messages: Sequence[Dict[str, Any]],
    *,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    user_id: Optional[str] = None,
    prompt_version: Optional[str] = None,
    request_id: Optional[str] = None,
) -> str:
    """Send ``messages`` and return the assistant's text reply."""
    message = _call(
        messages,
        {},
        max_tokens=max_tokens,
        temperature=temperature,
        user_id=user_id,
        prompt_version=prompt_version,
        request_id=request_id,
    )
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise LLMError("LLM reply contained no text content")
    return content


def tool_call(
    messages: Sequence[Dict[str, Any]],
    tool_name: str,
    parameters: Dict[str, Any],
    *,
    description: str = "",
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    user_id: Optional[str] = None,
    prompt_version: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Force a single function tool and return its decoded JSON arguments."""
    extra = {
        "tools": [
            {
                "type": "function",
                "function": {"name": tool_name, "description": description, "parameters": parameters},
            }
        ],
        "tool_choice": {"type": "function", "function": {"name": tool_name}},
    }
    message = _call(
        messages,
        extra,
        max_tokens=max_tokens,
        temperature=temperature,
        user_id=user_id,
        prompt_version=prompt_version or tool_name,
        request_id=request_id,
    )
    for call in (message.get("tool_calls") or []) if isinstance(message, dict) else []:
        function = call.get("function") or {}
        if function.get("name") != tool_name:
            continue
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            return arguments
        try:
            decoded = json.loads(arguments or "")
        except (TypeError, json.JSONDecodeError) as exc:
            raise LLMError(f"Tool {tool_name} returned invalid JSON arguments") from exc
        if not isinstance(decoded, dict):
            raise LLMError(f"Tool {tool_name} arguments must be a JSON object")
        return decoded
    raise LLMError(f"LLM response did not call {tool_name}")


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first JSON object in ``text``, tolerating code fences and prose."""
    if not isinstance(text, str) or not text.strip():
        raise ValueError("No JSON object found in empty reply")
    candidates = [match.group(1) for match in _FENCE_RE.finditer(text)]
    candidates.append(text)
    decoder = json.JSONDecoder()
    for candidate in candidates:
        start = candidate.find("{")
        while start != -1:
            try:
                value, _ = decoder.raw_decode(candidate[start:])
            except json.JSONDecodeError:
                start = candidate.find("{", start + 1)
                continue
            if isinstance(value, dict):
                return value
            start = candidate.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")
