import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from .config import CONFIG_PATH, AppSettings, load_settings
from .confidence import response_confidence
from .db import Database
from .errors import DuplicateWorkflowError
from .events import relay
from .llm import ChatClient
from .model_policy import ModelInvocationPolicy
from .multimodal import MultimodalPreprocessor
from .orchestrator import WorkflowOrchestrator
from .planner import PlanBuilder
from .retrieval import KnowledgeIndex, KnowledgeRetriever, Retriever
from .schemas import AgentResponse, ChatStreamRequest, RagQueryRequest, Workflow
from .tools import ToolRegistry, build_default_registry


logger = logging.getLogger("uvicorn.error")

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
INGEST_EXTENSIONS = (".txt", ".md", ".json")
INGEST_MIME_TYPES = {"text/plain", "text/markdown", "application/json"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return request.app.state.orchestrator


def get_tools(request: Request) -> ToolRegistry:
    return request.app.state.tools


def get_retriever(request: Request) -> Retriever:
    return request.app.state.retriever


def workflow_snapshot(workflow: Workflow) -> Dict[str, Any]:
    data = workflow.model_dump(mode="json")
    plan = workflow.context.plan
    if plan is not None:
        data["context"]["plan"]["steps"] = [step.to_event_data() for step in plan.steps]
    return data


async def start_workflow(orchestrator: WorkflowOrchestrator, payload: ChatStreamRequest) -> str:
    workflow_id = payload.message_id or str(uuid.uuid4())
    try:
        await orchestrator.initialize(
            workflow_id,
            payload.user_id,
            payload.platform,
            payload.message,
            payload.metadata,
        )
    except DuplicateWorkflowError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return workflow_id


router = APIRouter()


@router.post("/api/chat/stream")
async def chat_stream(
    payload: ChatStreamRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    workflow_id = await start_workflow(orchestrator, payload)
    run = orchestrator.execute(workflow_id)
    return StreamingResponse(relay(workflow_id, run), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/api/agent")
async def agent_routes():
    return {
        "ok": True,
        "routes": {
            "agent": "/api/agent",
            "chatStream": "/api/chat/stream",
            "workflow": "/api/workflows/{workflow_id}",
            "cancel": "/api/workflows/{workflow_id}/cancel",
            "tools": "/api/tools",
            "rag": "/api/agent/rag",
            "ingest": "/api/ingest",
        },
    }


@router.post("/api/agent", response_model=AgentResponse)
async def run_agent(
    payload: ChatStreamRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
    db: Database = Depends(get_db),
):
    conversation_id = await db.get_or_create_conversation(
        payload.platform, payload.user_id, payload.metadata.get("username")
    )
    workflow_id = await start_workflow(orchestrator, payload)
    events = await orchestrator.execute(workflow_id).collect()
    workflow = orchestrator.get_workflow(workflow_id)

    complete = next((ev for ev in events if ev.type == "complete"), None)
    failure = next((ev for ev in events if ev.type == "error"), None)
    if complete is not None:
        response_text = complete.data.get("response") or ""
    else:
        message = failure.data.get("message") if failure is not None else "no response produced"
        logger.warning("Agent workflow %s failed: %s", workflow_id, message)
        response_text = "I apologize, but I couldn't complete that request."

    docs = list(workflow.context.retrieved_docs) if workflow is not None else []
    used_multimodal = bool(workflow is not None and workflow.context.multimodal_data)
    sources: Optional[List[str]] = [doc.source for doc in docs] or None

    await db.save_message(conversation_id, "user", payload.message, {"message_id": workflow_id, **payload.metadata})
    await db.save_message(conversation_id, "assistant", response_text, {"workflow_id": workflow_id})

    return AgentResponse(
        conversation_id=str(conversation_id),
        response=response_text,
        sources=sources,
        confidence=response_confidence(
            used_retrieval=bool(docs),
            used_multimodal=used_multimodal,
            failed=complete is None,
        ),
        used_rag=bool(docs),
    )


@router.post("/api/agent/rag")
async def rag_query(payload: RagQueryRequest, retriever: Retriever = Depends(get_retriever)):
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Missing query")
    docs = await retriever.retrieve(query, top_k=payload.top_k)
    return {"query": query, "results": [doc.model_dump() for doc in docs]}


@router.get("/api/agent/rag")
async def rag_health():
    return {"ok": True, "endpoint": "/api/agent/rag"}


def validate_ingest_file(file: UploadFile) -> str:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    safe_name = Path(file.filename).name
    if safe_name != file.filename or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    if not safe_name.endswith(INGEST_EXTENSIONS) and file.content_type not in INGEST_MIME_TYPES:
        raise HTTPException(status_code=400, detail="Only .txt, .md, or .json files allowed")
    return safe_name


@router.post("/api/ingest")
async def ingest_document(
    file: UploadFile = File(...),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    retriever: KnowledgeIndex = Depends(get_retriever),
):
    safe_name = validate_ingest_file(file)
    data = await file.read()
    if len(data) > settings.ingest_max_mb * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.ingest_max_mb} MB).")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File is not UTF-8 text") from exc
    if not text.strip():
        raise HTTPException(status_code=400, detail="File is empty")
    try:
        chunks = await retriever.ingest(text, safe_name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except httpx.HTTPError as exc:
        logger.warning("Ingest of %s failed: %s", safe_name, exc)
        raise HTTPException(status_code=502, detail=f"Upload failed: {exc}") from exc
    document_id = await db.add_document(safe_name, chunks)
    return {
        "success": True,
        "id": document_id,
        "message": f"Processed {chunks} chunks from {safe_name}",
        "filename": safe_name,
        "chunks": chunks,
    }


@router.get("/api/workflows/{workflow_id}")
async def get_workflow(workflow_id: str, orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
    workflow = orchestrator.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow_snapshot(workflow)


@router.post("/api/workflows/{workflow_id}/cancel")
async def cancel_workflow(workflow_id: str, orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
    if not orchestrator.cancel(workflow_id):
        raise HTTPException(status_code=404, detail="Workflow not found")
    workflow = orchestrator.get_workflow(workflow_id)
    return {"ok": True, "status": workflow.status if workflow is not None else "failed"}


@router.get("/api/tools")
async def list_tools(tools: ToolRegistry = Depends(get_tools)):
    return {"tools": tools.catalogue()}


@router.get("/api/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return settings.to_safe_dict()


def build_policy(settings: AppSettings, client: ChatClient) -> ModelInvocationPolicy:
    tiers = {
        "classification": settings.classification_models,
        "planning": settings.planning_models,
        "fast": settings.fast_models,
        "vision": settings.vision_models,
    }
    return ModelInvocationPolicy(client, tiers, secondary_tier="fast", call_timeout_s=settings.call_timeout_s)


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    chat_client: Optional[ChatClient] = None,
    retriever: Optional[Retriever] = None,
    tools: Optional[ToolRegistry] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        sweeper = asyncio.create_task(app.state.orchestrator.run_sweeper(app.state.settings.sweep_interval_s))
        logger.info("agentflow ready: %s", app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await app.state.chat_client.close()
            closer = getattr(app.state.retriever, "close", None)
            if closer is not None:
                await closer()

    app = FastAPI(title="agentflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.db = db or Database(settings.database_path)
    app.state.chat_client = chat_client or ChatClient(
        settings.llm_base_url,
        api_key=settings.llm_api_key,
        max_output_tokens=settings.max_output_tokens,
    )
    app.state.retriever = retriever or KnowledgeRetriever(
        settings.retrieval_url,
        api_key=settings.retrieval_api_key,
        ingest_url=settings.ingest_url,
    )
    app.state.tools = tools or build_default_registry(app.state.db)
    app.state.policy = build_policy(settings, app.state.chat_client)
    planner = PlanBuilder(app.state.policy, app.state.tools, tool_timeout_s=settings.call_timeout_s)
    multimodal = MultimodalPreprocessor(
        app.state.policy,
        app.state.chat_client,
        vision_tier="vision",
        transcription_models=settings.transcription_models,
    )
    app.state.orchestrator = WorkflowOrchestrator(
        planner,
        app.state.retriever,
        app.state.db,
        multimodal,
        workflow_ttl_s=settings.workflow_ttl_s,
        retrieval_top_k=settings.retrieval_top_k,
        history_limit=settings.history_limit,
        deadline_s=settings.workflow_deadline_s,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("AGENTFLOW_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "agentflow.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
