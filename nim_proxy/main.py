from __future__ import annotations

import json
import sys
import time
from collections import deque
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .abort import AbortCoordinator, OutcomeStatus, StreamOutcome, UpstreamAborted
from .config import settings
from .router import build_upstream_payload, public_model_ids
from .schemas.openai import (
    ChatCompletionRequest,
    HealthResponse,
    ModelCard,
    ModelList,
    error_payload,
)
from .stream import relay_stream
from .transform import openai_completion_response


app = FastAPI(title="NVIDIA NIM Proxy")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # h2 not installed
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


_RECENT = deque(maxlen=64)


def _auth_headers(authorization: str | None = None) -> Dict[str, str]:
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    # Prefer the configured key, else pass the inbound bearer through
    if settings.nim_api_key:
        headers["Authorization"] = f"Bearer {settings.nim_api_key}"
    elif authorization:
        if authorization.lower().startswith("bearer "):
            headers["Authorization"] = authorization
        else:
            headers["Authorization"] = f"Bearer {authorization}"
    return headers


def _upstream_message(resp: httpx.Response, body: bytes | None = None) -> str:
    raw = body if body is not None else resp.content
    text = raw.decode("utf-8", errors="ignore") if raw else ""
    try:
        data = json.loads(text) if text else {}
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict) and err.get("message"):
                return str(err["message"])
            if data.get("detail"):
                return str(data["detail"])
            if data.get("message"):
                return str(data["message"])
        return text or f"Upstream returned HTTP {resp.status_code}"
    except ValueError:
        return text or f"Upstream returned HTTP {resp.status_code}"


def _error_response(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=error_payload(message))


def _record_outcome(rec: Dict[str, Any]):
    def _on_outcome(outcome: StreamOutcome) -> None:
        rec["outcome"] = outcome.status.value
        if outcome.http_status is not None:
            rec["upstream_status"] = outcome.http_status
        if outcome.message:
            rec["message"] = outcome.message
        _RECENT.append(rec)
        if outcome.status is OutcomeStatus.CANCELLED:
            print(f"[proxy] Request cancelled by client ({rec.get('phase')})", file=sys.stderr)
        elif settings.debug:
            print(f"[proxy] Request finished: {outcome.status.value}", file=sys.stderr)

    return _on_outcome


@app.get("/health")
async def health():
    return HealthResponse(models=public_model_ids()).model_dump()


@app.get("/v1/models")
async def list_models():
    created = int(time.time() * 1000)
    cards = [ModelCard(id=mid, created=created) for mid in public_model_ids()]
    return ModelList(data=cards).model_dump()


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    authorization: str | None = Header(default=None, alias="authorization"),
    x_enable_thinking: str | None = Header(default=None, alias="X-Enable-Thinking"),
):
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except Exception as e:
        return JSONResponse(status_code=400, content=error_payload(str(e), "invalid_request_error"))

    nim_payload = build_upstream_payload(parsed.model_dump(), thinking_header=x_enable_thinking)
    print(f"[proxy] Routing: {parsed.model} -> {nim_payload['model']}", file=sys.stderr)
    _rec: Dict[str, Any] = {
        "phase": "start",
        "request_model": parsed.model,
        "resolved_model": nim_payload["model"],
        "stream": nim_payload["stream"],
        "thinking": "chat_template_kwargs" in nim_payload,
    }
    if settings.debug:
        try:
            print(
                "[proxy] upstream payload:",
                json.dumps({"url": settings.chat_completions_url, **{k: v for k, v in nim_payload.items() if k != "messages"}}),
                file=sys.stderr,
            )
        except Exception:
            ...

    coordinator = AbortCoordinator(
        request.is_disconnected,
        poll_interval=settings.disconnect_poll_interval,
        on_outcome=_record_outcome(_rec),
    )
    client = _get_httpx_client()
    headers = _auth_headers(authorization)

    if not nim_payload["stream"]:
        _rec["phase"] = "non_stream"
        coordinator.start()
        try:
            resp = await coordinator.run(
                client.post(
                    settings.chat_completions_url,
                    json=nim_payload,
                    headers=headers,
                    timeout=httpx.Timeout(settings.timeout_seconds),
                )
            )
        except UpstreamAborted:
            coordinator.report(StreamOutcome(OutcomeStatus.CANCELLED, message="client disconnected"))
            # Nobody is listening; status mirrors nginx's "client closed request"
            return Response(status_code=499)
        except Exception as e:
            print(f"[proxy] Proxy error: {type(e).__name__}: {e}", file=sys.stderr)
            coordinator.report(StreamOutcome(OutcomeStatus.FAILED, http_status=502, message=str(e)))
            return _error_response(502, f"Upstream error: {e}")
        finally:
            await coordinator.stop()

        if resp.status_code >= 400:
            message = _upstream_message(resp)
            print(f"[proxy] Proxy error: upstream HTTP {resp.status_code}: {message}", file=sys.stderr)
            coordinator.report(StreamOutcome(OutcomeStatus.FAILED, http_status=resp.status_code, message=message))
            return _error_response(resp.status_code, message)
        try:
            data = resp.json()
        except ValueError:
            coordinator.report(StreamOutcome(OutcomeStatus.FAILED, http_status=502, message="invalid JSON"))
            return _error_response(502, "Upstream returned invalid JSON")
        coordinator.mark_finished()
        coordinator.report(StreamOutcome(OutcomeStatus.COMPLETED, http_status=resp.status_code))
        return JSONResponse(content=openai_completion_response(
            data,
            # Always echo the public model name outward
            requested_model=parsed.model,
            show_reasoning=settings.show_reasoning,
        ))

    # Streaming path: open upstream before committing to a 200 so errors keep their status
    _rec["phase"] = "stream"
    upstream_request = client.build_request(
        "POST",
        settings.chat_completions_url,
        json=nim_payload,
        headers={**headers, "Accept": "text/event-stream"},
        timeout=httpx.Timeout(settings.timeout_seconds, read=None),
    )
    coordinator.start()
    try:
        upstream = await coordinator.run(client.send(upstream_request, stream=True))
    except UpstreamAborted:
        coordinator.report(StreamOutcome(OutcomeStatus.CANCELLED, message="client disconnected"))
        return Response(status_code=499)
    except Exception as e:
        print(f"[proxy] Proxy error: {type(e).__name__}: {e}", file=sys.stderr)
        coordinator.report(StreamOutcome(OutcomeStatus.FAILED, http_status=502, message=str(e)))
        return _error_response(502, f"Upstream error: {e}")
    finally:
        await coordinator.stop()

    if upstream.status_code >= 400:
        try:
            body_bytes = await upstream.aread()
        except Exception:
            body_bytes = b""
        finally:
            await upstream.aclose()
        message = _upstream_message(upstream, body_bytes)
        print(f"[proxy] Proxy error: upstream HTTP {upstream.status_code}: {message}", file=sys.stderr)
        coordinator.report(StreamOutcome(OutcomeStatus.FAILED, http_status=upstream.status_code, message=message))
        return _error_response(upstream.status_code, message)

    return StreamingResponse(
        relay_stream(
            upstream.aiter_bytes(),
            coordinator,
            show_reasoning=settings.show_reasoning,
            debug=settings.debug,
            close=upstream.aclose,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"])
async def fallback(path: str):
    return JSONResponse(status_code=404, content={"error": "Endpoint not found"})


@app.on_event("startup")
async def _startup_noop():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    return None


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception:
            ...
        _HTTPX_CLIENT = None
