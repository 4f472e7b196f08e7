"""HTTP client for the Cloud Code internal API: model quotas, project lookup, keep-alive."""

import json
import logging
import secrets
import time
from typing import Any, TypedDict, cast

import httpx

from quotawake.errors import TransportError
from quotawake.models import KeepAliveReply, ModelQuotaSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
USER_AGENT = "antigravity/1.11.3 quotawake/0.1.0"
NO_REPLY = "(no reply)"
SYSTEM_PROMPT = "You are a concise assistant. Answer in one short sentence."


# --- Cloud Code response types ---


class QuotaInfo(TypedDict, total=False):
    remainingFraction: float
    resetTime: str


class AvailableModel(TypedDict, total=False):
    displayName: str
    model: str
    quotaInfo: QuotaInfo


class AvailableModelsResponse(TypedDict, total=False):
    models: dict[str, AvailableModel]


def _random_suffix(length: int = 6) -> str:
    return secrets.token_hex(length)[:length]


def random_project_id() -> str:
    return f"projects/random-{secrets.token_hex(4)}/locations/global"


def parse_available_models(data: AvailableModelsResponse) -> list[ModelQuotaSnapshot]:
    snapshots: list[ModelQuotaSnapshot] = []
    for model_id, info in (data.get("models") or {}).items():
        quota = info.get("quotaInfo") or {}
        snapshots.append(
            ModelQuotaSnapshot(
                id=model_id,
                display_name=info.get("displayName") or model_id,
                model_constant=info.get("model"),
                remaining_fraction=quota.get("remainingFraction"),
                reset_time=quota.get("resetTime"),
            )
        )
    return snapshots


def build_keep_alive_body(
    project_id: str,
    model: str,
    prompt: str,
    max_output_tokens: int,
) -> dict[str, Any]:
    now_ms = int(time.time() * 1000)
    generation_config: dict[str, Any] = {"temperature": 0}
    # 0 means no limit, so the field is left out
    if max_output_tokens > 0:
        generation_config["maxOutputTokens"] = max_output_tokens

    return {
        "project": project_id,
        "requestId": f"req_{now_ms}_{_random_suffix()}",
        "model": model,
        "userAgent": "antigravity",
        "requestType": "agent",
        "request": {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "session_id": f"sess_{now_ms}_{_random_suffix()}",
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "generationConfig": generation_config,
        },
    }


def parse_stream(text: str) -> KeepAliveReply:
    """Fold an SSE ``streamGenerateContent`` body into one reply.

    Thought parts are skipped.  Usage and trace ids are taken from the first
    chunk that carries them.
    """
    reply_parts: list[str] = []
    usage_seen: dict[str, int] = {}
    trace_id: str | None = None
    response_id: str | None = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if line.startswith("data:"):
            line = line[len("data:") :].strip()
        if not line or line == "[DONE]":
            continue
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(chunk, dict):
            continue

        response = chunk.get("response") or chunk
        candidates = response.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            for part in parts:
                if part.get("thought") is True:
                    continue
                if isinstance(part.get("text"), str) and part["text"]:
                    reply_parts.append(part["text"])

        usage = response.get("usageMetadata") or {}
        for field in ("promptTokenCount", "candidatesTokenCount", "totalTokenCount"):
            if field in usage and field not in usage_seen:
                usage_seen[field] = usage[field]

        trace_id = trace_id or chunk.get("traceId")
        response_id = response_id or response.get("responseId")

    return KeepAliveReply(
        reply="".join(reply_parts) or NO_REPLY,
        prompt_tokens=usage_seen.get("promptTokenCount"),
        completion_tokens=usage_seen.get("candidatesTokenCount", 0),
        total_tokens=usage_seen.get("totalTokenCount"),
        trace_id=trace_id,
        response_id=response_id,
    )


class CloudCodeClient:
    """Implements both the model catalog source and the keep-alive transport."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, access_token: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=self._headers(access_token), json=payload)
                _ = response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            raise TransportError(f"Cloud Code API error: HTTP {e.response.status_code} - {e.response.text[:500]}") from e
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to Cloud Code at {self.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Cloud Code request timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Cloud Code request failed: {type(e).__name__}: {e}") from e

    async def _post_json(self, path: str, access_token: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._post(path, access_token, payload)
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Cloud Code returned invalid JSON from {path}: {response.text[:200]}") from e
        if not isinstance(data, dict):
            raise TransportError(f"Cloud Code returned unexpected JSON from {path}: {type(data).__name__}")
        return data

    async def fetch_available_models(self, access_token: str, project_id: str | None) -> list[ModelQuotaSnapshot]:
        payload: dict[str, Any] = {"project": project_id} if project_id else {}
        data = await self._post_json("/v1internal:fetchAvailableModels", access_token, payload)
        snapshots = parse_available_models(cast(AvailableModelsResponse, data))
        logger.debug("Fetched %d models from Cloud Code", len(snapshots))
        return snapshots

    async def resolve_project_id(self, access_token: str) -> str | None:
        data = await self._post_json(
            "/v1internal:loadCodeAssist",
            access_token,
            {"metadata": {"ideType": "ANTIGRAVITY"}},
        )
        project = data.get("cloudaicompanionProject")
        if isinstance(project, dict):
            project = project.get("id")
        return project or None

    async def send_keep_alive(
        self,
        access_token: str,
        project_id: str,
        model: str,
        prompt: str,
        max_output_tokens: int,
    ) -> KeepAliveReply:
        body = build_keep_alive_body(project_id, model, prompt, max_output_tokens)
        response = await self._post("/v1internal:streamGenerateContent?alt=sse", access_token, body)
        logger.debug("streamGenerateContent response for %s: %s", model, response.text[:2000])
        return parse_stream(response.text)
