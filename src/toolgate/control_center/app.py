from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from toolgate.app_container import ToolGate
from toolgate.services.error_codes import ERROR_CATALOG, detect_error_code, get_catalog_entry
from toolgate.services.tool_policy import filter_tool_metas_by_policy
from toolgate.tools.registry import normalize_tool_name


class ApproveToolRequest(BaseModel):
    chat_id: str
    tool: str


class RepairTranscriptRequest(BaseModel):
    messages: List[Any]


class ClassifyErrorRequest(BaseModel):
    text: str


def _catalog_to_dict() -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for entry in ERROR_CATALOG:
        out.append(
            {
                "code": entry.code,
                "title": entry.title,
                "user_message": entry.user_message,
                "actions": [
                    {
                        "action_id": action.action_id,
                        "label": action.label,
                        "description": action.description,
                    }
                    for action in entry.actions
                ],
            }
        )
    return out


def create_app(gate: ToolGate) -> FastAPI:
    app = FastAPI(title="toolgate control center")

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "tools": len(gate.registry.list()),
            "conflicts": len(gate.registry.conflicts()),
            "rate_limit_rules": len(gate.rate_limiter.rules()),
            "approval_ttl_ms": gate.approval_store.ttl_ms,
        }

    @app.get("/api/tools")
    async def api_tools(group: bool = False) -> Dict[str, Any]:
        config = gate.config
        registered = gate.registry.list()
        visible = filter_tool_metas_by_policy(registered, config.policies.for_chat(group), config.tool_groups)
        visible_names = {normalize_tool_name(meta.name) for meta in visible}
        required = set(config.approval_required)
        return {
            "tools": [
                dict(
                    asdict(meta),
                    allowed=normalize_tool_name(meta.name) in visible_names,
                    approval_required=normalize_tool_name(meta.name) in required,
                )
                for meta in registered
            ],
            "suppressed": [meta.name for meta in registered if normalize_tool_name(meta.name) not in visible_names],
        }

    @app.get("/api/tools/conflicts")
    async def api_tool_conflicts() -> List[Dict[str, Any]]:
        return [
            {
                "tool": asdict(conflict.tool),
                "existing": asdict(conflict.existing),
                "normalized_name": conflict.normalized_name,
                "reason": conflict.reason,
            }
            for conflict in gate.registry.conflicts()
        ]

    @app.get("/api/rate-limits")
    async def api_rate_limits() -> List[Dict[str, Any]]:
        return [asdict(rule) for rule in gate.rate_limiter.rules()]

    @app.get("/api/approvals/{chat_id}")
    async def api_list_approvals(chat_id: str) -> List[Dict[str, Any]]:
        return [asdict(entry) for entry in gate.approval_store.list_approvals(chat_id)]

    @app.post("/api/approvals")
    async def api_approve(body: ApproveToolRequest) -> Dict[str, Any]:
        tool = normalize_tool_name(body.tool)
        if tool not in gate.config.approval_required:
            raise HTTPException(status_code=400, detail=f"{tool} does not require approval")
        expires_at = gate.approval_store.approve(body.chat_id, tool)
        if expires_at is None:
            raise HTTPException(status_code=400, detail="chat_id and tool are required")
        return {"chat_id": body.chat_id, "tool": tool, "expires_at": expires_at}

    @app.delete("/api/approvals/{chat_id}")
    async def api_revoke(chat_id: str, tool: Optional[str] = None) -> Dict[str, Any]:
        gate.approval_store.clear(chat_id, tool)
        return {"ok": True, "remaining": [asdict(entry) for entry in gate.approval_store.list_approvals(chat_id)]}

    @app.post("/api/transcripts/repair")
    async def api_repair_transcript(body: RepairTranscriptRequest) -> Dict[str, Any]:
        prepared = gate.prepare_transcript(body.messages)
        report = prepared.repair
        return {
            "messages": prepared.messages,
            "changed": report.changed or prepared.ids_rewritten,
            "added": len(report.added),
            "dropped_duplicate_count": report.dropped_duplicate_count,
            "dropped_orphan_count": report.dropped_orphan_count,
            "moved": report.moved,
            "reordered": report.reordered,
            "ids_rewritten": prepared.ids_rewritten,
        }

    @app.get("/api/error-catalog")
    async def api_error_catalog() -> List[Dict[str, Any]]:
        return _catalog_to_dict()

    @app.post("/api/error-catalog/classify")
    async def api_classify_error(body: ClassifyErrorRequest) -> Dict[str, Any]:
        entry = get_catalog_entry(detect_error_code(body.text))
        return {"code": entry.code, "title": entry.title, "user_message": entry.user_message}

    return app
