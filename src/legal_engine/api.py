"""
HTTP surface.

    GET  /health              {"status": "ok", "version": ..., "busy": ...}
    POST /analyze             {"case_id": 14753}
    POST /search              {"keyword": "特許", "limit": 10}
    GET  /artifact/{case_id}  compiled PDF

The engine is built once by the caller and handed in through the pipeline;
handlers only read it from app state.
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import AliasChoices, BaseModel, Field

from . import __version__
from .errors import LegalEngineError
from .pipeline import Case, CasePipeline, SearchResult

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10


class AnalyzeRequest(BaseModel):
    case_id: int


class SearchRequest(BaseModel):
    keyword: Optional[str] = None
    # "kenri" is the right-type filter name the IP Force front end sends
    filter: Optional[str] = Field(default=None, validation_alias=AliasChoices("filter", "kenri"))
    limit: Optional[int] = Field(default=None, ge=0)


class SearchResponse(BaseModel):
    success: bool
    results: List[SearchResult] = Field(default_factory=list)
    error: Optional[str] = None


def create_app(pipeline: CasePipeline) -> FastAPI:
    app = FastAPI(title="legal-engine", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.pipeline = pipeline

    @app.get("/health")
    async def health():
        engine = app.state.pipeline.engine
        return {
            "status": "ok",
            "version": __version__,
            "busy": getattr(engine, "in_flight", 0) > 0,
        }

    @app.post("/analyze")
    async def analyze(req: AnalyzeRequest, request: Request):
        logger.info(f"Received analyze request: case_id={req.case_id}")
        outcome = await request.app.state.pipeline.analyze(req.case_id)
        status = 200 if outcome.success else 500
        return JSONResponse(status_code=status, content=outcome.model_dump())

    @app.post("/search")
    async def search(req: SearchRequest, request: Request):
        try:
            results = await request.app.state.pipeline.source.search(
                keyword=req.keyword,
                filter=req.filter,
                limit=req.limit if req.limit is not None else DEFAULT_SEARCH_LIMIT,
            )
        except LegalEngineError as e:
            logger.error(f"Search failed: {e}")
            payload = SearchResponse(success=False, error=str(e))
            return JSONResponse(status_code=500, content=payload.model_dump())
        return SearchResponse(success=True, results=results).model_dump()

    @app.get("/artifact/{case_id}")
    async def artifact(case_id: int, request: Request):
        path = request.app.state.pipeline.artifact_path(Case(case_id=case_id))
        if not path.is_file():
            return Response(status_code=404)
        return FileResponse(path, media_type="application/pdf", filename="report.pdf")

    return app
