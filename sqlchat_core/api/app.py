"""HTTP 入口（FastAPI）。

所有端点都是同步函数：FastAPI 在线程池中执行它们，流式响应的同步迭代器
同样在线程池中逐个拉取，每个请求各自占用一个工作线程。

错误处理：
- 开流之前的 BusinessError → JSON 错误体 {error, code, message}，状态码取 http_status；
- 开流之后的错误由流水线转换为终止帧，不在这里处理。
"""

from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from sqlchat_core.api import service
from sqlchat_core.api.protocol import NDJSON_MEDIA_TYPE, encode_conversation, encode_query
from sqlchat_core.api.schemas import (
    CancelQueryRequest,
    CancelSqlRequest,
    ClassifySqlRequest,
    QueryRequest,
    RunSqlRequest,
)
from sqlchat_core.config.settings import settings
from sqlchat_core.domain.exceptions import BusinessError, ValidationError
from sqlchat_core.engine.orchestrator import ConversationOrchestrator
from sqlchat_core.engine.query_engine import QueryExecutionEngine
from sqlchat_core.infrastructure.logging.logger import logger
from sqlchat_core.providers.registry import provider_config_from_payload


orchestrator_dep = Annotated[ConversationOrchestrator, Depends(service.get_orchestrator)]
query_engine_dep = Annotated[QueryExecutionEngine, Depends(service.get_query_engine)]


def get_caller(x_user_id: Annotated[Optional[str], Header()] = None) -> str:
    """调用方身份由上层（网关/鉴权中间件）通过 X-User-Id 传入，这里不做校验。"""
    return (x_user_id or "").strip() or settings.default_caller


caller_dep = Annotated[str, Depends(get_caller)]

router = APIRouter(prefix="/api", tags=["sqlchat"])


@router.post("/query")
def query(payload: QueryRequest, orchestrator: orchestrator_dep, caller: caller_dep):
    """自然语言 → 生成流。首帧 meta，随后 token 帧，最后 done 或 error。"""
    provider_config = provider_config_from_payload(payload.providerConfig)
    run = service.start_conversation(
        orchestrator,
        utterance=payload.query,
        provider_config=provider_config,
        connection_id=payload.connectionId,
        conversation_id=payload.conversationId,
        user_id=caller,
    )
    return StreamingResponse(
        encode_conversation(run.events()),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Conversation-Id": run.conversation_id},
        background=BackgroundTask(run.close),
    )


@router.post("/query/cancel")
def cancel_query(payload: CancelQueryRequest, orchestrator: orchestrator_dep):
    return {"cancelled": orchestrator.cancel(payload.conversationId)}


@router.post("/run-sql")
def run_sql(payload: RunSqlRequest, engine: query_engine_dep, caller: caller_dep):
    """执行 SQL 并逐行流式返回。带副作用的语句需要 confirmed=true。"""
    run = service.start_query(
        engine,
        sql=payload.sql,
        connection_id=payload.connectionId,
        execution_id=payload.executionId,
        confirmed=payload.confirmed,
        user_id=caller,
    )
    return StreamingResponse(
        encode_query(run.events()),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Execution-Id": run.execution_id},
        background=BackgroundTask(run.close),
    )


@router.post("/run-sql/cancel")
def cancel_sql(payload: CancelSqlRequest, engine: query_engine_dep):
    return {"cancelled": engine.cancel(payload.executionId)}


@router.post("/classify-sql")
def classify_sql(payload: ClassifySqlRequest):
    return service.classify_sql(payload.sql)


@router.get("/connections/{connection_id}/schema")
def connection_schema(connection_id: str, engine: query_engine_dep, caller: caller_dep):
    return {"schema": engine.introspect_schema(connection_id, user_id=caller)}


@router.get("/provider/ollama/models")
def ollama_models(endpoint: Optional[str] = None):
    return {"models": service.list_models("Ollama", endpoint)}


@router.get("/provider/lmstudio/models")
def lmstudio_models(endpoint: Optional[str] = None):
    return {"models": service.list_models("LM Studio", endpoint)}


@router.get("/health")
def health():
    return {"status": "ok"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Service starting", extra={"extra": {"storage_root": settings.storage_root}})
    yield
    logger.info("Service stopped")


def create_app() -> FastAPI:
    app = FastAPI(title="SQL Chat Core", lifespan=lifespan)
    app.include_router(router)

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError):
        level = "error" if exc.http_status >= 500 else "warning"
        getattr(logger, level)(
            f"Request failed: {exc.message}",
            extra={"extra": {"path": request.url.path, "code": exc.code, "status": exc.http_status}},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        err = ValidationError(f"Invalid request: {problems}")
        return JSONResponse(status_code=err.http_status, content=err.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={"extra": {"path": request.url.path}},
        )
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "code": "INTERNAL_ERROR", "message": str(exc)},
        )

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
