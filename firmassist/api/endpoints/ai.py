import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from sqlalchemy.ext.asyncio import async_sessionmaker

from firmassist.core import models, schemas
from firmassist.core.config import settings
from firmassist.core.database import get_session_factory
from firmassist.core.security import get_current_user
from firmassist.ai_feature.errors import AIServiceError
from firmassist.ai_feature.llm.base import LLMAdapter
from firmassist.ai_feature.llm.gemini_adapter import GeminiAdapter
from firmassist.ai_feature.scope import Principal
from firmassist.ai_feature.service import ChatService
from firmassist.ai_feature.time_utils import utc_now
from firmassist.ai_feature.turns import Attachment

router = APIRouter(prefix="/ai", tags=["AI Assistant"])

logger = logging.getLogger(__name__)


class AdmissionTicket:
    """One admitted run. Releasing twice is a no-op."""

    def __init__(self, semaphore: asyncio.Semaphore):
        self._semaphore = semaphore
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._semaphore.release()

    # A streaming response dropped before its body starts never runs the
    # body's finally, so the slot is handed back when the ticket is collected
    def __del__(self):
        self.release()


class AdmissionLimiter:
    """Process-wide cap on assistant runs in flight. Full means 429, no queueing."""

    def __init__(self, limit: int):
        self._semaphore = asyncio.Semaphore(limit)

    def full(self) -> bool:
        return self._semaphore.locked()

    async def admit(self) -> AdmissionTicket:
        if self.full():
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many assistant requests in progress, please retry shortly",
            )
        await self._semaphore.acquire()
        return AdmissionTicket(self._semaphore)

    @asynccontextmanager
    async def slot(self):
        ticket = await self.admit()
        try:
            yield
        finally:
            ticket.release()


run_admission = AdmissionLimiter(settings.AI_MAX_CONCURRENT_RUNS)


@lru_cache
def _gemini_adapter() -> GeminiAdapter:
    return GeminiAdapter(
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
        timeout_ms=settings.GEMINI_TIMEOUT_MS,
    )


# None when no key is configured; every run then fails with 503
def get_llm_adapter() -> Optional[LLMAdapter]:
    if not settings.ai_configured:
        return None
    return _gemini_adapter()


def get_chat_service(
    adapter: Annotated[Optional[LLMAdapter], Depends(get_llm_adapter)],
    session_factory: Annotated[async_sessionmaker, Depends(get_session_factory)],
) -> ChatService:
    return ChatService(adapter=adapter, session_factory=session_factory)


async def get_principal(
    current_user: Annotated[models.User, Depends(get_current_user)],
) -> Principal:
    return Principal.from_user(current_user)


principal_dep = Annotated[Principal, Depends(get_principal)]
service_dep = Annotated[ChatService, Depends(get_chat_service)]


def _http_error(error: AIServiceError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


@router.get("/status", response_model=schemas.AIStatusResponse)
async def ai_status(
    principal: principal_dep,
    adapter: Annotated[Optional[LLMAdapter], Depends(get_llm_adapter)],
):
    if adapter is None:
        return {
            "configured": False,
            "message": "AI service is not configured. Please add GEMINI_API_KEY to the environment.",
        }
    return {"configured": True, "message": "AI service is ready"}


@router.post("/chat", response_model=schemas.ChatResponse)
async def chat(request: schemas.ChatRequest, principal: principal_dep, service: service_dep):
    async with run_admission.slot():
        try:
            answer = await service.run_chat(
                principal, request.prompt, continuity=request.continuity
            )
        except AIServiceError as error:
            logger.warning(f"[User {principal.id}] /ai/chat failed: {error.kind}")
            raise _http_error(error)
    return {"response": answer}


@router.post("/chat/stream")
async def chat_stream(
    principal: principal_dep,
    service: service_dep,
    prompt: Annotated[str, Form()],
    continuity: Annotated[bool, Form()] = True,
    attachments: Annotated[Optional[List[UploadFile]], File()] = None,
):
    """
    Stream the answer as plain text.

    Tool calls show up inline as "[Called tool: name]" markers. Errors after
    the first byte cannot change the status code, so they end the stream
    with an "[Error: ...]" line instead.
    """
    files = []
    for upload in attachments or []:
        files.append(
            Attachment(
                data=await upload.read(),
                mime_type=upload.content_type or "application/octet-stream",
                filename=upload.filename or "",
            )
        )

    ticket = await run_admission.admit()
    try:
        chunks = service.run_chat_stream(principal, prompt, continuity, files)
    except AIServiceError as error:
        ticket.release()
        raise _http_error(error)

    async def body():
        try:
            async for chunk in chunks:
                if chunk.kind == "tool":
                    yield f"\n\n[Called tool: {chunk.text}]\n\n"
                else:
                    yield chunk.text
        except AIServiceError as error:
            logger.warning(f"[User {principal.id}] /ai/chat/stream failed: {error.kind}")
            yield f"\n\n[Error: {error.message}]"
        finally:
            try:
                await chunks.aclose()
            finally:
                ticket.release()

    return StreamingResponse(
        body(),
        media_type="text/plain; charset=utf-8",
        background=BackgroundTask(ticket.release),
    )


@router.post("/summary", response_model=schemas.SummaryResponse)
async def summary(principal: principal_dep, service: service_dep):
    async with run_admission.slot():
        try:
            text = await service.run_summary(principal)
        except AIServiceError as error:
            raise _http_error(error)
    return {"success": True, "summary": text, "timestamp": utc_now()}


@router.get("/history", response_model=schemas.HistoryResponse)
async def get_history(principal: principal_dep, service: service_dep):
    return {"success": True, "history": await service.get_history(principal)}


@router.delete("/history")
async def clear_history(principal: principal_dep, service: service_dep):
    removed = await service.clear_history(principal)
    return {"success": True, "deleted": removed}


@router.get("/analytics", response_model=schemas.UsageReportResponse)
async def usage_analytics(
    principal: principal_dep,
    service: service_dep,
    time_range: schemas.UsageWindow = schemas.UsageWindow.DAYS_30,
):
    try:
        return await service.get_usage_analytics(principal, time_range)
    except AIServiceError as error:
        raise _http_error(error)
