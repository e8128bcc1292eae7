from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from doklad.utils.forensic_context import forensic_scope
from doklad.utils.logging_setup import log_event

log = logging.getLogger(__name__)

_RETRYABLE_HTTP_STATUSES = {408, 409, 429, 500, 502, 503, 504}
_MAX_HTTP_RETRIES = 2
_RETRY_BASE_DELAY_SEC = 0.5
_SENSITIVE_KEYS = {
    "iban",
    "account",
    "bank_account",
    "bankAccount",
    "counterpartyAccount",
    "ico",
    "dic",
    "email",
    "phone",
}


@dataclass
class LLMConfig:
    api_key: str
    model: str = "gpt-4o-mini"
    vision_model: str | None = "gpt-4o"
    base_url: str = "https://api.openai.com/v1"
    timeout_sec: float = 30.0
    temperature: float = 0.0
    max_output_tokens: int = 1500


class LLMError(RuntimeError):
    """Volání LLM selhalo (HTTP, transport, timeout, nečitelná odpověď)."""


class LLMNotConfigured(LLMError):
    pass


@dataclass
class ToolCall:
    name: str
    arguments: Dict[str, Any]
    raw_arguments: str = ""


@dataclass
class ChatReply:
    content: Optional[str]
    tool_call: Optional[ToolCall] = None
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _redact_value(val: Any) -> Dict[str, Any]:
    s = "" if val is None else str(val)
    return {"hash": _sha256_bytes(s.encode("utf-8")), "mask": f"***{s[-4:]}" if len(s) >= 4 else None, "redaction": True}


def redact(obj: Any) -> Any:
    """Nahradí citlivé hodnoty hashem/maskou; jen pro logování."""
    if isinstance(obj, dict):
        return {k: (_redact_value(v) if k in _SENSITIVE_KEYS else redact(v)) for k, v in obj.items()}
    if isinstance(obj, list):
        return [redact(x) for x in obj]
    if isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj
    return str(obj)


def b64_data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def parse_json_object(text: str) -> Dict[str, Any]:
    """Vyřízne JSON mezi první '{' a poslední '}' a naparsuje ho; jinak LLMError."""
    start = (text or "").find("{")
    end = (text or "").rfind("}")
    parse_error = None
    obj: Any = None
    if start != -1 and end > start:
        try:
            obj = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            parse_error = str(e)
    else:
        parse_error = "no_braces"
    log_event(
        log,
        "structured_output.parse",
        "Structured output parse",
        status="ok" if isinstance(obj, dict) else "fail",
        strategy="first_last_brace",
        length=len(text or ""),
        error=parse_error,
    )
    if not isinstance(obj, dict):
        raise LLMError(f"LLM nevrátil JSON objekt: {parse_error or type(obj).__name__}")
    return obj


class LLMClient:
    """
    Tenký klient nad OpenAI Chat Completions (requests):
    JSON mód, tool calling a vision vstupy, retry s backoffem a forenzní logování.
    """

    def __init__(self, cfg: LLMConfig | None):
        self.cfg = cfg

    @property
    def configured(self) -> bool:
        return bool(self.cfg and self.cfg.api_key)

    def _require_cfg(self) -> LLMConfig:
        if not self.configured:
            raise LLMNotConfigured("LLM není nakonfigurováno (chybí API klíč)")
        assert self.cfg is not None
        return self.cfg

    # --- HTTP -----------------------------------------------------------

    def _post_once(self, payload: Dict[str, Any], *, timeout: float, mode: str, attempt: int) -> Tuple[requests.Response, float]:
        cfg = self._require_cfg()
        req_id_client = str(uuid.uuid4())
        body_hash = _sha256_bytes(json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str).encode("utf-8"))
        images = 0
        for msg in payload.get("messages", []):
            if isinstance(msg.get("content"), list):
                images += sum(1 for part in msg["content"] if part.get("type") == "image_url")

        with forensic_scope(llm_request_id_client=req_id_client, attempt=attempt):
            log_event(
                log,
                "llm.request",
                "LLM request",
                endpoint="/chat/completions",
                model=payload.get("model"),
                mode=mode,
                timeout_sec=timeout,
                messages=len(payload.get("messages", [])),
                images=images,
                tools=len(payload.get("tools", []) or []),
                request_body_hash=body_hash,
            )
            start = time.perf_counter()
            try:
                r = requests.post(
                    f"{cfg.base_url.rstrip('/')}/chat/completions",
                    headers={"Authorization": f"Bearer {cfg.api_key}", "Content-Type": "application/json"},
                    json=payload,
                    timeout=timeout,
                )
            except requests.RequestException as exc:
                log_event(
                    log,
                    "llm.error",
                    "LLM request exception",
                    latency_ms=int((time.perf_counter() - start) * 1000.0),
                    retryable=True,
                    error_type=type(exc).__name__,
                    safe_excerpt=str(exc)[:500],
                )
                raise
            latency_ms = (time.perf_counter() - start) * 1000.0
            if r.status_code >= 400:
                try:
                    err = redact(r.json())
                except ValueError:
                    err = (r.text or "")[:500]
                log_event(
                    log,
                    "llm.error",
                    "LLM HTTP error",
                    http_status=r.status_code,
                    latency_ms=int(latency_ms),
                    retryable=r.status_code in _RETRYABLE_HTTP_STATUSES,
                    error=err,
                    llm_request_id=r.headers.get("x-request-id"),
                )
            return r, latency_ms

    def _post_with_retry(self, payload: Dict[str, Any], *, timeout: float, mode: str) -> Tuple[requests.Response, float]:
        attempt = 1
        while True:
            try:
                resp, latency_ms = self._post_once(payload, timeout=timeout, mode=mode, attempt=attempt)
            except requests.RequestException as exc:
                if attempt > _MAX_HTTP_RETRIES:
                    raise LLMError(f"LLM nedostupné po {attempt} pokusech: {exc}") from exc
                reason = "timeout" if isinstance(exc, requests.Timeout) else "request_exception"
            else:
                if resp.status_code not in _RETRYABLE_HTTP_STATUSES or attempt > _MAX_HTTP_RETRIES:
                    return resp, latency_ms
                reason = f"http_{resp.status_code}"
            backoff = _RETRY_BASE_DELAY_SEC * (2 ** (attempt - 1))
            log_event(
                log,
                "llm.retry",
                "LLM retry",
                attempt_from=attempt,
                attempt_to=attempt + 1,
                reason=reason,
                backoff_ms=int(backoff * 1000),
            )
            time.sleep(backoff)
            attempt += 1

    def _chat(self, payload: Dict[str, Any], *, timeout: float | None, mode: str) -> Dict[str, Any]:
        cfg = self._require_cfg()
        payload.setdefault("temperature", float(cfg.temperature or 0.0))
        payload.setdefault("max_tokens", int(cfg.max_output_tokens or 1500))
        t = float(timeout or cfg.timeout_sec or 30.0)

        resp, latency_ms = self._post_with_retry(payload, timeout=t, mode=mode)
        if resp.status_code == 400 and "response_format" in payload:
            # některé modely JSON mód nepodporují; zkusíme bez něj, prompt JSON stejně vyžaduje
            log_event(
                log,
                "llm.retry",
                "LLM retry without response_format",
                reason="http_400",
                backoff_ms=0,
                mutated_params="response_format json_object -> none",
            )
            payload = {k: v for k, v in payload.items() if k != "response_format"}
            resp, latency_ms = self._post_with_retry(payload, timeout=t, mode=mode)
        if resp.status_code >= 400:
            raise LLMError(f"LLM HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise LLMError("LLM vrátil nečitelnou odpověď") from exc

        log_event(
            log,
            "llm.response",
            "LLM response",
            http_status=resp.status_code,
            latency_ms=int(latency_ms),
            model=data.get("model"),
            usage=data.get("usage"),
            llm_request_id=resp.headers.get("x-request-id"),
        )
        return data

    @staticmethod
    def _first_message(data: Dict[str, Any]) -> Dict[str, Any]:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise LLMError("LLM odpověď neobsahuje choices")
        return choices[0].get("message") or {}

    # --- veřejné API --------------------------------------------------------

    def complete_json(
        self,
        system: str,
        user: str,
        *,
        images: Optional[Sequence[Tuple[str, bytes]]] = None,
        timeout: float | None = None,
    ) -> Dict[str, Any]:
        """System+user prompt v JSON módu; vrací naparsovaný objekt nebo vyhodí LLMError."""
        cfg = self._require_cfg()
        model = cfg.model
        user_content: Any = user
        if images:
            model = cfg.vision_model or cfg.model
            user_content = [{"type": "text", "text": user}]
            for mime, data in images:
                if data:
                    user_content.append({"type": "image_url", "image_url": {"url": b64_data_url(mime, data)}})
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user_content},
            ],
            "response_format": {"type": "json_object"},
        }
        data = self._chat(payload, timeout=timeout, mode="vision" if images else "json")
        return parse_json_object(str(self._first_message(data).get("content") or ""))

    def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        *,
        timeout: float | None = None,
    ) -> ChatReply:
        """Function calling: vrací první tool call (pokud nějaký je) a textový obsah."""
        cfg = self._require_cfg()
        payload: Dict[str, Any] = {
            "model": cfg.model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
        }
        data = self._chat(payload, timeout=timeout, mode="tools")
        msg = self._first_message(data)
        call = None
        for tc in msg.get("tool_calls") or []:
            fn = (tc or {}).get("function") or {}
            raw = fn.get("arguments") or "{}"
            try:
                args = json.loads(raw) if isinstance(raw, str) else dict(raw)
            except json.JSONDecodeError as exc:
                raise LLMError(f"Nečitelné argumenty funkce {fn.get('name')!r}") from exc
            if not isinstance(args, dict):
                raise LLMError(f"Argumenty funkce {fn.get('name')!r} nejsou objekt")
            call = ToolCall(name=str(fn.get("name") or ""), arguments=args, raw_arguments=raw if isinstance(raw, str) else "")
            break
        return ChatReply(content=msg.get("content"), tool_call=call, model=data.get("model"), usage=data.get("usage") or {})
