"""Restore tool call / tool result pairing in a transcript.

Scanning left to right, each assistant message that issues tool calls owns
the *span* of messages up to the next assistant message.  Within the span:

* the first result for each of its call ids is kept, later ones are dropped
  as duplicates (also when the id was already answered earlier);
* results for ids the assistant did not issue are dropped as orphans;
* everything else is kept in its original relative order after the results.

Calls without a result get a synthetic error result.  Top-level results with
no assistant before them are orphans.  When nothing changes the input list
itself is returned, so callers can detect a no-op with ``is``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Set

from toolgate.domain.transcript import (
    ROLE_TOOL_RESULT,
    AssistantMessage,
    ToolCallRef,
    ToolResultMessage,
    TranscriptMessage,
    parse_transcript,
    to_raw_transcript,
)
from toolgate.observability.structured_log import log_json

logger = logging.getLogger(__name__)

SYNTHETIC_RESULT_NOTICE = "[toolgate] missing tool result in transcript; inserted synthetic error result."


@dataclass
class ToolUseRepairReport:
    messages: Sequence[TranscriptMessage]
    added: List[ToolResultMessage] = field(default_factory=list)
    dropped_duplicate_count: int = 0
    dropped_orphan_count: int = 0
    moved: bool = False
    reordered: bool = False

    @property
    def changed(self) -> bool:
        return (
            bool(self.added)
            or self.dropped_duplicate_count > 0
            or self.dropped_orphan_count > 0
            or self.moved
            or self.reordered
        )


def make_missing_tool_result(call: ToolCallRef) -> ToolResultMessage:
    raw: Dict[str, Any] = {
        "role": ROLE_TOOL_RESULT,
        "toolCallId": call.id,
        "toolName": call.name or "unknown",
        "content": [{"type": "text", "text": SYNTHETIC_RESULT_NOTICE}],
        "isError": True,
        "timestamp": int(time.time() * 1000),
    }
    return ToolResultMessage(raw=raw, tool_call_id=call.id, is_error=True)


def repair_tool_use_result_pairing(messages: Sequence[TranscriptMessage]) -> ToolUseRepairReport:
    out: List[TranscriptMessage] = []
    report = ToolUseRepairReport(messages=messages)
    emitted_ids: Set[str] = set()

    i = 0
    total = len(messages)
    while i < total:
        msg = messages[i]
        if isinstance(msg, ToolResultMessage):
            report.dropped_orphan_count += 1
            i += 1
            continue
        if not isinstance(msg, AssistantMessage) or not msg.tool_calls:
            out.append(msg)
            i += 1
            continue

        call_ids = {call.id for call in msg.tool_calls}
        matched: Dict[str, ToolResultMessage] = {}
        matched_pos: Dict[str, int] = {}
        remainder: List[TranscriptMessage] = []

        j = i + 1
        while j < total and not isinstance(messages[j], AssistantMessage):
            nxt = messages[j]
            if isinstance(nxt, ToolResultMessage):
                rid = nxt.tool_call_id
                if rid is not None and rid in call_ids:
                    if rid in emitted_ids or rid in matched:
                        report.dropped_duplicate_count += 1
                    else:
                        matched[rid] = nxt
                        matched_pos[rid] = j
                else:
                    report.dropped_orphan_count += 1
            else:
                remainder.append(nxt)
            j += 1

        out.append(msg)
        for call in msg.tool_calls:
            result = matched.get(call.id)
            if result is None:
                result = make_missing_tool_result(call)
                report.added.append(result)
            emitted_ids.add(call.id)
            out.append(result)
        if matched and remainder:
            report.moved = True
        positions = [matched_pos[call.id] for call in msg.tool_calls if call.id in matched_pos]
        if positions != sorted(positions):
            report.reordered = True
        out.extend(remainder)
        i = j

    if report.changed:
        report.messages = out
        log_json(
            logger,
            "transcript_repaired",
            level=logging.DEBUG,
            added=len(report.added),
            dropped_duplicates=report.dropped_duplicate_count,
            dropped_orphans=report.dropped_orphan_count,
            moved=report.moved,
            reordered=report.reordered,
        )
    return report


def repair_raw_transcript(raws: Sequence[Any]) -> ToolUseRepairReport:
    """Boundary helper: validate raw dict messages, repair, and return raw dicts.

    ``report.messages`` is ``raws`` itself when nothing changed.
    """
    report = repair_tool_use_result_pairing(parse_transcript(raws))
    report.messages = to_raw_transcript(report.messages) if report.changed else raws
    return report
