"""
SQL Guard API
=============

HTTP surface of the NL-query policy engine. No policy logic lives here:
every decision comes from SecurityInterceptor, every execution goes through
GuardedSQLExecutor.

Endpoints:
- GET  /                     service info
- GET  /health               catalog/executor status
- POST /api/intercept        intent text + caller -> InterceptDecision
- POST /api/intercept/batch  several intents for one caller
- POST /api/security-log     human-readable audit lines for one intent
- POST /api/rewrite-sql      generated SQL + caller id -> rewritten SQL
- POST /api/execute          rewrite, re-verify and run generated SQL
- GET  /api/catalog          indicator catalog summary
- POST /api/catalog/reload   reload the configured catalog file (atomic swap)

Denied decisions are returned with HTTP 403 and the full decision body.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from caller_context import CallerContext
from guard_config import load_settings
from guard_errors import (
    CatalogLoadError,
    GuardError,
    OwnershipPredicateMissing,
    QueryExecutionError,
    StatementNotAllowed,
)
from guarded_executor import GuardedSQLExecutor
from security_interceptor import Denied, InterceptDecision, SecurityInterceptor
from semantic_catalog import CatalogStore

settings = load_settings()

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Every module that owns a logger; LOG_LEVEL applies to all of them
ENGINE_LOGGERS = (
    __name__, "guard_config", "semantic_catalog", "injection_guard", "intent_classifier",
    "sensitive_scanner", "permission_evaluator", "query_rewriter", "security_interceptor",
    "guarded_executor",
)
for _name in ENGINE_LOGGERS:
    logging.getLogger(_name).setLevel(settings.log_level)

VERSION = "1.0"

# Global instances, populated on startup
store: Optional[CatalogStore] = None
interceptor: Optional[SecurityInterceptor] = None
executor: Optional[GuardedSQLExecutor] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the catalog (fail closed) and the optional executor."""
    global store, interceptor, executor

    try:
        logger.info(f"Loading indicator catalog from {settings.catalog_path}")
        store = CatalogStore.from_path(settings.catalog_path)
        interceptor = SecurityInterceptor(store, settings)
    except CatalogLoadError as e:
        logger.error(f"Startup failed, refusing to serve: {e}")
        raise

    if settings.database_url:
        executor = GuardedSQLExecutor.from_settings(settings)
    else:
        logger.warning("DATABASE_URL not set - /api/execute disabled")

    logger.info("=" * 60)
    logger.info(f"SQL Guard {VERSION} ready")
    logger.info(f"Catalog: v{store.current.version} ({len(store.current.indicators)} indicators)")
    logger.info(f"Ownership column: {settings.owner_column}")
    logger.info(f"Default time window: {settings.default_time_label}")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down SQL Guard...")
    if executor is not None:
        executor.dispose()


app = FastAPI(
    title="SQL Guard API",
    description="Interception and rewrite policy engine for natural-language SQL queries",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic Models
class CallerModel(BaseModel):
    role: str
    id: str
    row_filter_expr: Optional[str] = None
    department: Optional[str] = None
    username: Optional[str] = None


class InterceptRequest(BaseModel):
    intent_text: str
    caller: CallerModel


class BatchInterceptRequest(BaseModel):
    intent_texts: List[str] = Field(min_length=1)
    caller: CallerModel


class SQLRequest(BaseModel):
    sql: str
    caller_id: str


# =============================================================================
# HELPERS
# =============================================================================

def _require_interceptor() -> SecurityInterceptor:
    if interceptor is None:
        raise HTTPException(status_code=503, detail="Policy engine not initialized")
    return interceptor


def _caller_from(model: CallerModel) -> CallerContext:
    try:
        return CallerContext(
            role=model.role,
            caller_id=model.id,
            row_filter_expr=model.row_filter_expr,
            department=model.department,
            username=model.username,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={"success": False, "error": "参数错误", "message": str(e)},
        )


def _decision_response(decision: InterceptDecision) -> JSONResponse:
    status = 403 if isinstance(decision, Denied) else 200
    return JSONResponse(status_code=status, content=decision.to_dict())


def friendly_error(error: Exception, sql: Optional[str] = None) -> Dict[str, Any]:
    """Map executor/driver failures to user-facing messages."""
    if isinstance(error, (OwnershipPredicateMissing, StatementNotAllowed)):
        return {
            "success": False,
            "error": "权限验证错误",
            "message": "系统权限验证失败",
            "sql": sql,
            "suggestion": "请重新登录或联系系统管理员",
        }
    if isinstance(error, QueryExecutionError) and "syntax error" in error.detail.lower():
        return {
            "success": False,
            "error": "SQL 语法错误",
            "message": "查询语句存在语法问题，请尝试修改您的提问",
            "sql": sql,
            "suggestion": "可以尝试使用更简单的表达方式，比如'查询销售额'而不是复杂的计算",
        }
    return {
        "success": False,
        "error": "查询执行失败",
        "message": "执行查询时发生错误",
        "sql": sql,
        "suggestion": "请检查查询内容或稍后重试",
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    return {
        "message": f"SQL Guard API v{VERSION}",
        "version": VERSION,
        "features": [
            "Injection pattern screening of intent text",
            "Indicator classification against a versioned catalog",
            "Sensitive field and formula paraphrase detection",
            "Allow / partial / deny permission decisions",
            "Ownership, time-window and null-safety SQL rewriting",
        ],
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    if store is None or interceptor is None:
        return {"status": "unhealthy", "error": "Catalog not loaded"}
    return {
        "status": "healthy",
        "version": VERSION,
        "catalog_version": store.current.version,
        "indicators": len(store.current.indicators),
        "executor": executor is not None,
    }


@app.post("/api/intercept")
async def intercept(request: InterceptRequest):
    engine = _require_interceptor()
    caller = _caller_from(request.caller)
    return _decision_response(engine.intercept(request.intent_text, caller))


@app.post("/api/intercept/batch")
async def intercept_batch(request: BatchInterceptRequest):
    engine = _require_interceptor()
    caller = _caller_from(request.caller)
    decisions = engine.batch_intercept(request.intent_texts, caller)
    return {"results": [d.to_dict() for d in decisions]}


@app.post("/api/security-log")
async def security_log(request: InterceptRequest):
    engine = _require_interceptor()
    caller = _caller_from(request.caller)
    return {"lines": engine.security_log(request.intent_text, caller)}


@app.post("/api/rewrite-sql")
async def rewrite_sql(request: SQLRequest):
    engine = _require_interceptor()
    return _decision_response(engine.rewrite_generated_sql(request.sql, request.caller_id))


@app.post("/api/execute")
async def execute_sql(request: SQLRequest):
    engine = _require_interceptor()
    if executor is None:
        raise HTTPException(status_code=503, detail="Database not configured")

    decision = engine.rewrite_generated_sql(request.sql, request.caller_id)
    if isinstance(decision, Denied):
        return _decision_response(decision)

    sql = decision.rewritten_query
    try:
        rows = executor.execute(sql, request.caller_id)
    except GuardError as e:
        logger.warning(f"Execution refused for {request.caller_id}: {e.code.value}")
        status = 403 if isinstance(e, (OwnershipPredicateMissing, StatementNotAllowed)) else 500
        return JSONResponse(status_code=status, content=friendly_error(e, sql))

    return {
        "success": True,
        "data": rows,
        "sql": sql,
        "row_count": len(rows),
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/api/catalog")
async def get_catalog():
    if store is None:
        raise HTTPException(status_code=503, detail="Catalog not loaded")
    catalog = store.current
    return {
        "version": catalog.version,
        "indicators": [
            {
                "key": ind.key,
                "name": ind.name,
                "level": ind.level.value,
                "synonyms": sorted(ind.synonyms),
                "unit": ind.unit,
            }
            for ind in catalog.indicators.values()
        ],
        "dimensions": {k: dict(v) for k, v in catalog.dimensions.items()},
    }


@app.post("/api/catalog/reload")
async def reload_catalog():
    """Re-read the configured catalog file; the current catalog stays on failure."""
    if store is None:
        raise HTTPException(status_code=503, detail="Catalog not loaded")
    try:
        fresh = store.reload()
    except CatalogLoadError as e:
        logger.error(f"Catalog reload failed, keeping v{store.current.version}: {e}")
        raise HTTPException(
            status_code=400,
            detail={
                "error": "目录加载失败",
                "message": "指标目录校验未通过，已保留当前版本",
                "version": store.current.version,
            },
        )
    return {"success": True, "version": fresh.version, "indicators": len(fresh.indicators)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
