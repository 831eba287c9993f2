# kalina: Requests-based client for the OpenAI Responses and Images APIs (OpenAI or Azure OpenAI, autodetected).
# Strict-JSON calls, plain-text calls, Server-Sent-Event streaming and image generation/edit share one session, one retry policy and one usage logger.

import base64
import json
import logging
import os
import random
import time
from copy import deepcopy
from typing import Any, Dict, Iterator, List, Optional

import requests

from .config import AI_IMAGE_MODEL, HTTP_TIMEOUT_SEC, MAX_COMPLETION_TOKENS
from .errors import ModelAPIError, ModelResponseError

logger = logging.getLogger("kalina.client")

# kalina: Aspect ratios offered to the user mapped onto the sizes the image endpoint accepts.
IMAGE_SIZES = {
    "1:1": "1024x1024",
    "16:9": "1536x1024",
    "4:3": "1536x1024",
    "9:16": "1024x1536",
    "3:4": "1024x1536",
}


def _preprocess_for_openai(schema: dict) -> dict:
    """
    Prepare a JSON Schema for OpenAI strict validation:
    - If a node has "$ref", remove all sibling keys and keep only the $ref.
    - For any object node that defines "properties", ensure:
        * "required" exists and includes every property key (deterministic order)
        * "additionalProperties" is set to False
    The transformation is applied recursively across the schema tree.
    """
    cleaned = deepcopy(schema)

    def _walk(node: Any) -> None:
        if isinstance(node, dict):
            if "$ref" in node:
                for k in list(node.keys()):
                    if k != "$ref":
                        node.pop(k, None)
                return

            props = node.get("properties")
            if isinstance(props, dict):
                existing_req = node.get("required") or []
                try:
                    existing_set = set(existing_req)
                except TypeError:
                    existing_set = set()
                node["required"] = sorted(set(props.keys()) | existing_set)
                node["additionalProperties"] = False
                # kalina: Strict mode rejects "default" next to a property definition.
                for p in props.values():
                    if isinstance(p, dict):
                        p.pop("default", None)

            for v in list(node.values()):
                _walk(v)
        elif isinstance(node, list):
            for item in node:
                _walk(item)

    _walk(cleaned)
    return cleaned


def normalize_usage(usage: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    """
    Normalize a usage block into {"input_tokens", "output_tokens"}.

    Accepts Responses fields and falls back to Chat Completions aliases.
    Returns None when no usage block is present.
    """
    if not isinstance(usage, dict) or not usage:
        return None

    def _as_int(v: Any) -> int:
        try:
            return int(v) if v is not None else 0
        except Exception:
            return 0

    input_tokens = usage.get("input_tokens")
    if input_tokens is None:
        input_tokens = usage.get("prompt_tokens")
    output_tokens = usage.get("output_tokens")
    if output_tokens is None:
        output_tokens = usage.get("completion_tokens")
    return {"input_tokens": _as_int(input_tokens), "output_tokens": _as_int(output_tokens)}


def extract_output_text(resp_obj: Dict[str, Any]) -> str:
    """Stitch the assistant text out of a (non-streamed) Responses API result."""
    output = resp_obj.get("output")
    chunks: List[str] = []
    if isinstance(output, list):
        for o in output:
            if not isinstance(o, dict) or o.get("type") != "message":
                continue
            content = o.get("content")
            if isinstance(content, str):
                chunks.append(content)
            elif isinstance(content, list):
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict) and item.get("type") == "output_text":
                        chunks.append(item.get("text", ""))
    return "\n".join(chunks)


def parse_stream_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Map one Responses streaming event onto a normalized chunk dict:
    {"text": str, "citations": [{"uri", "title"}] | None, "usage": {...} | None}.

    Returns None for events that carry nothing the consumer needs.
    Raises ModelAPIError for error/failed events.
    """
    etype = event.get("type", "")
    if etype == "response.output_text.delta":
        return {"text": event.get("delta") or "", "citations": None, "usage": None}
    if etype == "response.output_text.annotation.added":
        ann = event.get("annotation") or {}
        if ann.get("type") == "url_citation" and ann.get("url"):
            return {"text": "", "citations": [{"uri": ann["url"], "title": ann.get("title") or ""}], "usage": None}
        return None
    if etype == "response.completed":
        usage = normalize_usage((event.get("response") or {}).get("usage"))
        if usage is None:
            return None
        return {"text": "", "citations": None, "usage": usage}
    if etype in ("response.failed", "error"):
        err = (event.get("response") or {}).get("error") or event.get("error") or event
        msg = err.get("message") if isinstance(err, dict) else str(err)
        code = err.get("code") if isinstance(err, dict) else None
        raise ModelAPIError(f"Responses stream error {code or ''}: {msg}".strip(), body=json.dumps(event)[:2000])
    return None


class ResponseStream:
    """An open streaming HTTP response; iterate chunks() and always close()."""

    def __init__(self, response: requests.Response) -> None:
        self.response = response

    def chunks(self) -> Iterator[Dict[str, Any]]:
        # kalina: SSE is UTF-8; a charset-less event-stream would otherwise decode as latin-1.
        for raw in self.response.iter_lines():
            line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            if not line or not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                break
            try:
                event = json.loads(data)
            except Exception:
                # kalina: Skip undecodable keep-alive or partial lines.
                continue
            chunk = parse_stream_event(event)
            if chunk is not None:
                yield chunk

    def close(self) -> None:
        self.response.close()


class ModelClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        image_model: Optional[str] = None,
    ) -> None:
        """
        Initialize a minimal HTTP client for the Responses and Images APIs with provider autodetection.

        Provider selection precedence (highest first):
          1) Constructor args (api_key/model/base_url)
          2) settings['api'] values (provider, api_key, model, base_url, image_model)
          3) Environment
             - OpenAI: OPENAI_API_KEY, AI_MODEL, OPENAI_BASE_URL
             - Azure:  AZURE_OPENAI_API_KEY, AZURE_OPENAI_MODEL, AZURE_OPENAI_ENDPOINT

        Unlike a hard failure at construction, a missing key leaves the client
        unconfigured (has_credentials is False); the orchestrator rejects turns
        until a key is supplied.
        """
        self.session = requests.Session()

        api_cfg = (settings or {}).get("api") if isinstance(settings, dict) else None
        api_cfg = api_cfg if isinstance(api_cfg, dict) else {}

        provider: Optional[str] = str(api_cfg.get("provider") or "").strip().lower() or None

        def _looks_like_azure(url: Optional[str]) -> bool:
            if not url:
                return False
            u = url.lower()
            return ("azure.com" in u) or ("/openai/" in u)

        if provider not in ("azure", "openai"):
            if (os.environ.get("AZURE_OPENAI_API_KEY") or os.environ.get("AZURE_OPENAI_ENDPOINT")) or _looks_like_azure(base_url or api_cfg.get("base_url")):
                provider = "azure"
            else:
                provider = "openai"

        if provider == "azure":
            resolved_api_key = api_key or api_cfg.get("api_key") or os.environ.get("AZURE_OPENAI_API_KEY") or ""
            resolved_model = model or api_cfg.get("model") or os.environ.get("AZURE_OPENAI_MODEL") or ""
            endpoint = base_url or api_cfg.get("base_url") or os.environ.get("AZURE_OPENAI_ENDPOINT")
            if not endpoint:
                raise RuntimeError("Azure provider selected but no endpoint provided (AZURE_OPENAI_ENDPOINT or settings.api.base_url or base_url arg).")
            endpoint = endpoint.rstrip("/")
            if not endpoint.endswith("/openai/v1"):
                endpoint = f"{endpoint}/v1" if endpoint.endswith("/openai") else f"{endpoint}/openai/v1"
            resolved_base_url = endpoint
            auth_headers = {"api-key": resolved_api_key}
        else:
            resolved_api_key = api_key or api_cfg.get("api_key") or os.environ.get("OPENAI_API_KEY") or ""
            resolved_model = model or api_cfg.get("model") or os.environ.get("AI_MODEL") or "gpt-5-mini"
            resolved_base_url = base_url or api_cfg.get("base_url") or os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com/v1"
            resolved_base_url = resolved_base_url.rstrip("/")
            if not resolved_base_url.endswith("/v1"):
                resolved_base_url = f"{resolved_base_url}/v1"
            auth_headers = {"Authorization": f"Bearer {resolved_api_key}"}

        self.session.headers.update({**auth_headers, "Content-Type": "application/json"})
        self.api_key = resolved_api_key
        self.model = resolved_model
        self.image_model = image_model or api_cfg.get("image_model") or AI_IMAGE_MODEL
        self.base_url = resolved_base_url
        self.provider = provider

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    # ---------- Transport ----------

    def _post(self, url: str, *, timeout: int = HTTP_TIMEOUT_SEC, stream: bool = False, **kwargs) -> requests.Response:
        """
        POST with a bounded retry loop for transient failures (timeouts, connection
        errors, HTTP 5xx). 4xx errors are not retried.

        Raises:
            ModelAPIError: on non-200 responses or exhausted retries.
        """
        max_retries = 3
        attempt = 0
        while True:
            attempt += 1
            try:
                r = self.session.post(url, timeout=timeout, stream=stream, **kwargs)
            except requests.exceptions.Timeout as e:
                if attempt <= max_retries:
                    delay = [1.0, 2.0, 4.0][min(attempt - 1, 2)] * random.uniform(0.5, 1.5)
                    logger.warning("Model API timeout on attempt %d; retrying in %.2fs...", attempt, delay)
                    time.sleep(delay)
                    continue
                raise ModelAPIError(f"Model API request timed out after {attempt} attempt(s): {e}")
            except requests.exceptions.ConnectionError as e:
                if attempt <= max_retries:
                    delay = [1.0, 2.0, 4.0][min(attempt - 1, 2)] * random.uniform(0.5, 1.5)
                    logger.warning("Model API connection failed on attempt %d; retrying in %.2fs...", attempt, delay)
                    time.sleep(delay)
                    continue
                raise ModelAPIError(f"Network error contacting the model API: {e}")

            if r.status_code == 200:
                return r
            if r.status_code >= 500 and attempt <= max_retries:
                # kalina: Retry on server errors with exponential backoff and jitter to smooth contention.
                delay = [1.0, 2.0, 4.0][min(attempt - 1, 2)] * random.uniform(0.5, 1.5)
                logger.warning("Model API attempt %d received %d; retrying in %.2fs...", attempt, r.status_code, delay)
                r.close()
                time.sleep(delay)
                continue
            body = r.text[:2000]
            r.close()
            raise ModelAPIError(f"Model API error {r.status_code}: {body}", status_code=r.status_code, body=body)

    def _log_usage(self, call_type: str, usage: Optional[Dict[str, Any]]) -> None:
        norm = normalize_usage(usage)
        if norm is not None:
            logger.info(
                "Model usage (%s): input_tokens=%d, output_tokens=%d",
                call_type,
                norm["input_tokens"],
                norm["output_tokens"],
            )

    def _payload(
        self,
        input_items: List[Dict[str, Any]],
        instructions: Optional[str],
        model: Optional[str],
        reasoning_effort: str,
        web_search: bool,
        max_completion_tokens: Optional[int],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "input": input_items,
            "max_output_tokens": max_completion_tokens or MAX_COMPLETION_TOKENS,
            "reasoning": {"effort": reasoning_effort},
        }
        if instructions:
            payload["instructions"] = instructions
        if web_search:
            payload["tools"] = [{"type": "web_search"}]
            payload["tool_choice"] = "auto"
        return payload

    # ---------- Responses API ----------

    def call_responses(
        self,
        input_items: List[Dict[str, Any]],
        response_schema: Dict[str, Any],
        instructions: Optional[str] = None,
        call_type: str = "minimal",
        model: Optional[str] = None,
        max_completion_tokens: Optional[int] = None,
        schema_name: str = "KalinaSchema",
    ) -> Dict[str, Any]:
        """
        Invoke the Responses API and parse the result into a strict JSON object.

        Args:
            input_items: Responses input items (role/content form).
            response_schema: JSON schema that the final response must satisfy.
            instructions: Optional system instructions for this call.
            call_type: Label used for logging and reasoning effort ("plan" gets "low").
            model: Optional model override for this call.

        Raises:
            ModelAPIError: On non-200 HTTP responses.
            ModelResponseError: If the output is not valid JSON.
        """
        payload = self._payload(
            input_items,
            instructions,
            model,
            "low" if call_type == "plan" else "minimal",
            False,
            max_completion_tokens,
        )
        payload["text"] = {
            "format": {
                "type": "json_schema",
                "name": schema_name,
                "schema": _preprocess_for_openai(response_schema),
                "strict": True,
            }
        }
        r = self._post(f"{self.base_url}/responses", json=payload)
        resp = r.json()
        self._log_usage(call_type, resp.get("usage"))
        final_text = extract_output_text(resp)
        try:
            return json.loads(final_text)
        except Exception as e:
            raise ModelResponseError(f"Failed to parse strict JSON from model output: {e}\nOutput:\n{final_text[:1000]}")

    def call_text(
        self,
        input_items: List[Dict[str, Any]],
        instructions: Optional[str] = None,
        call_type: str = "text",
        model: Optional[str] = None,
    ) -> str:
        """Invoke the Responses API and return the plain assistant text."""
        payload = self._payload(input_items, instructions, model, "minimal", False, None)
        r = self._post(f"{self.base_url}/responses", json=payload)
        resp = r.json()
        self._log_usage(call_type, resp.get("usage"))
        return extract_output_text(resp)

    def open_stream(
        self,
        input_items: List[Dict[str, Any]],
        instructions: Optional[str] = None,
        model: Optional[str] = None,
        reasoning_effort: str = "minimal",
        web_search: bool = False,
    ) -> ResponseStream:
        """Open a streamed Responses call; the caller iterates chunks() and must close()."""
        payload = self._payload(input_items, instructions, model, reasoning_effort, web_search, None)
        payload["stream"] = True
        r = self._post(f"{self.base_url}/responses", json=payload, stream=True)
        return ResponseStream(r)

    # ---------- Images API ----------

    def generate_images(self, prompt: str, count: int = 1, aspect_ratio: str = "1:1") -> List[str]:
        """Generate images and return them as base64 strings."""
        payload = {
            "model": self.image_model,
            "prompt": prompt,
            "n": count,
            "size": IMAGE_SIZES.get(aspect_ratio, "1024x1024"),
        }
        r = self._post(f"{self.base_url}/images/generations", json=payload)
        resp = r.json()
        self._log_usage("image_generation", resp.get("usage"))
        images = [d.get("b64_json") for d in resp.get("data") or [] if isinstance(d, dict) and d.get("b64_json")]
        if not images:
            raise ModelResponseError("The image service returned no images.")
        return images

    def edit_image(self, prompt: str, image_b64: str, mime_type: str) -> Dict[str, Any]:
        """
        Edit an image. Returns {"image": base64 | None, "text": str | None, "usage": {...} | None}.

        The multipart upload drops the session's JSON Content-Type so requests can
        set the multipart boundary itself.
        """
        ext = (mime_type.split("/")[-1] or "png").replace("jpeg", "jpg")
        files = {"image": (f"image.{ext}", base64.b64decode(image_b64), mime_type)}
        data = {"model": self.image_model, "prompt": prompt}
        r = self._post(f"{self.base_url}/images/edits", files=files, data=data, headers={"Content-Type": None})
        resp = r.json()
        self._log_usage("image_edit", resp.get("usage"))
        first = next((d for d in resp.get("data") or [] if isinstance(d, dict)), {})
        return {
            "image": first.get("b64_json"),
            "text": first.get("revised_prompt"),
            "usage": normalize_usage(resp.get("usage")),
        }
