"""AI run traces (aiRunTraces/{sessionId}) and flow audit logs (aiFlowLogs).

A run trace aggregates every LLM call made while building one story:
prompt, model settings, output, token usage, cost, latency. Audit logs
record single image-generation attempts that are not tied to a session.
"""

import logging
import time
import uuid
from typing import Any

from .core import now_iso
from .documents import add_doc, get_doc, set_doc, update_doc

logger = logging.getLogger(__name__)

# USD per 1M tokens
TOKEN_COSTS_PER_MILLION: dict[str, dict[str, float]] = {
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00, "thinking": 3.75, "cached": 0.32},
    "gemini-2.5-flash": {"input": 0.075, "output": 0.30, "thinking": 0.19, "cached": 0.02},
    "default": {"input": 1.00, "output": 5.00, "thinking": 2.50, "cached": 0.25},
}

_EMPTY_SUMMARY: dict[str, Any] = {
    "totalCalls": 0,
    "totalInputTokens": 0,
    "totalOutputTokens": 0,
    "totalThinkingTokens": 0,
    "totalCachedTokens": 0,
    "totalTokens": 0,
    "totalCost": 0.0,
    "totalLatencyMs": 0,
    "averageLatencyMs": 0,
    "callsByFlow": {},
    "errorCount": 0,
}


def calculate_token_cost(model: str, usage: dict[str, Any]) -> dict[str, Any]:
    pricing = TOKEN_COSTS_PER_MILLION.get(model, TOKEN_COSTS_PER_MILLION["default"])
    input_tokens = usage.get("inputTokens") or 0
    output_tokens = usage.get("outputTokens") or 0
    thinking = usage.get("thoughtsTokens") or 0
    cached = usage.get("cachedContentTokens") or 0

    input_cost = max(0, input_tokens - cached) / 1_000_000 * pricing["input"]
    output_cost = output_tokens / 1_000_000 * pricing["output"]
    thinking_cost = thinking / 1_000_000 * pricing["thinking"]
    savings = cached / 1_000_000 * (pricing["input"] - pricing["cached"])
    return {
        "inputCost": round(input_cost, 5),
        "outputCost": round(output_cost, 5),
        "thinkingCost": round(thinking_cost, 5),
        "cachedSavings": round(savings, 5),
        "totalCost": round(input_cost + output_cost + thinking_cost, 5),
        "currency": "USD",
    }


def initialize_run_trace(session_id: str, parent_uid: str, **fields: Any) -> None:
    """Create the trace for a session, or touch it if it already exists."""
    path = f"aiRunTraces/{session_id}"
    if get_doc(path) is not None:
        update_doc(path, {"lastUpdatedAt": now_iso()})
        return
    set_doc(path, {
        "sessionId": session_id,
        "parentUid": parent_uid,
        **fields,
        "startedAt": now_iso(),
        "lastUpdatedAt": now_iso(),
        "status": "in_progress",
        "calls": [],
        "summary": dict(_EMPTY_SUMMARY, callsByFlow={}),
    })


def log_ai_call(
    session_id: str,
    flow_name: str,
    model: str,
    prompt: str,
    started: float,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    output_text: str = "",
    structured_output: Any = None,
    finish_reason: str = "",
    usage: dict[str, Any] | None = None,
    error: str | None = None,
) -> None:
    """Append one call to the session's trace and update the summary.

    `started` is a time.monotonic() value taken before the call. Never raises.
    """
    path = f"aiRunTraces/{session_id}"
    try:
        trace = get_doc(path)
        if trace is None:
            logger.warning(f"[traces] No run trace for session {session_id}; call not logged")
            return
        usage = usage or {}
        latency = int((time.monotonic() - started) * 1000)
        cost = calculate_token_cost(model, usage)
        call = {
            "callId": f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}",
            "flowName": flow_name,
            "timestamp": now_iso(),
            "modelName": model,
            "temperature": temperature,
            "maxOutputTokens": max_output_tokens,
            "systemPrompt": prompt,
            "promptTokenEstimate": len(prompt) // 4,
            "outputText": output_text,
            "structuredOutput": structured_output,
            "finishReason": finish_reason,
            "usage": usage,
            "cost": cost,
            "latencyMs": latency,
            "status": "error" if error else "success",
        }
        if error:
            call["errorMessage"] = error

        summary = trace.get("summary") or dict(_EMPTY_SUMMARY, callsByFlow={})
        summary["totalCalls"] += 1
        summary["totalInputTokens"] += usage.get("inputTokens") or 0
        summary["totalOutputTokens"] += usage.get("outputTokens") or 0
        summary["totalThinkingTokens"] += usage.get("thoughtsTokens") or 0
        summary["totalCachedTokens"] += usage.get("cachedContentTokens") or 0
        summary["totalTokens"] += usage.get("totalTokens") or 0
        summary["totalCost"] = round(summary["totalCost"] + cost["totalCost"], 5)
        summary["totalLatencyMs"] += latency
        summary["averageLatencyMs"] = summary["totalLatencyMs"] // summary["totalCalls"]
        summary["callsByFlow"][flow_name] = summary["callsByFlow"].get(flow_name, 0) + 1
        if error:
            summary["errorCount"] += 1

        update_doc(path, {
            "calls": trace.get("calls", []) + [call],
            "summary": summary,
            "lastUpdatedAt": now_iso(),
        })
    except Exception as e:
        logger.warning(f"[traces] Failed to log AI call for {session_id}: {e}")


def complete_run_trace(session_id: str, error: str | None = None) -> None:
    """Mark the trace completed (or error). Never raises."""
    fields: dict[str, Any] = {
        "status": "error" if error else "completed",
        "lastUpdatedAt": now_iso(),
    }
    if error:
        fields["errorMessage"] = error
    try:
        update_doc(f"aiRunTraces/{session_id}", fields)
    except Exception as e:
        logger.warning(f"[traces] Failed to complete run trace {session_id}: {e}")


def log_ai_flow(flow_name: str, prompt: str, **fields: Any) -> None:
    """Record one audit entry in aiFlowLogs. Never raises."""
    try:
        add_doc("aiFlowLogs", {
            "flowName": flow_name,
            "prompt": prompt,
            **fields,
            "createdAt": now_iso(),
        })
    except Exception as e:
        logger.warning(f"[traces] Failed to write flow log for {flow_name}: {e}")
